"""Collaborator services: history persistence and identity."""
