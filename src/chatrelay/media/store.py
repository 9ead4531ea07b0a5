"""Persistence for in-flight media job descriptors."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Dict, Optional, Protocol

from pydantic import ValidationError

from ..schemas.media import JobDescriptor

logger = logging.getLogger(__name__)


class DescriptorStore(Protocol):
    """Key-value store holding at most one descriptor per job kind."""

    async def load(self, kind: str) -> Optional[JobDescriptor]:
        ...

    async def save(self, descriptor: JobDescriptor) -> None:
        ...

    async def delete(self, kind: str) -> None:
        ...


class InMemoryDescriptorStore:
    """Process-local store, mainly for tests and ephemeral deployments."""

    def __init__(self) -> None:
        self._items: Dict[str, JobDescriptor] = {}

    async def load(self, kind: str) -> Optional[JobDescriptor]:
        return self._items.get(kind)

    async def save(self, descriptor: JobDescriptor) -> None:
        self._items[descriptor.kind] = descriptor

    async def delete(self, kind: str) -> None:
        self._items.pop(kind, None)


class JsonFileDescriptorStore:
    """Keep descriptors in a small JSON document keyed by job kind."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._lock = asyncio.Lock()
        self._items: Dict[str, JobDescriptor] = {}
        self._load_from_disk()

    @property
    def path(self) -> Path:
        return self._path

    def _load_from_disk(self) -> None:
        """Load descriptors, skipping entries that no longer validate."""
        if not self._path.exists():
            self._items = {}
            return

        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Failed to read job store %s: %s", self._path, exc)
            self._items = {}
            return

        entries = raw.get("jobs", {}) if isinstance(raw, dict) else {}
        loaded: Dict[str, JobDescriptor] = {}
        for kind, item in entries.items() if isinstance(entries, dict) else ():
            try:
                descriptor = JobDescriptor.model_validate(item)
            except ValidationError as exc:
                logger.warning("Skipping invalid job descriptor for %s: %s", kind, exc)
                continue
            loaded[descriptor.kind] = descriptor
        self._items = loaded

    def _save_to_disk(self) -> None:
        payload = {
            "jobs": {
                kind: descriptor.model_dump(mode="json", by_alias=True)
                for kind, descriptor in self._items.items()
            }
        }
        self._path.parent.mkdir(parents=True, exist_ok=True)
        serialized = json.dumps(payload, indent=2, sort_keys=True)
        self._path.write_text(serialized + "\n", encoding="utf-8")

    async def load(self, kind: str) -> Optional[JobDescriptor]:
        async with self._lock:
            self._load_from_disk()
            return self._items.get(kind)

    async def save(self, descriptor: JobDescriptor) -> None:
        async with self._lock:
            self._items[descriptor.kind] = descriptor
            self._save_to_disk()

    async def delete(self, kind: str) -> None:
        async with self._lock:
            self._load_from_disk()
            if self._items.pop(kind, None) is not None:
                self._save_to_disk()


__all__ = ["DescriptorStore", "InMemoryDescriptorStore", "JsonFileDescriptorStore"]
