"""Request, transcript, and job schemas."""
