from __future__ import annotations

import json
from datetime import datetime, timezone

import pytest

from chatrelay.media.store import JsonFileDescriptorStore
from chatrelay.schemas.media import JobDescriptor

pytestmark = pytest.mark.anyio


def descriptor(**overrides) -> JobDescriptor:
    values = {
        "request_id": "req-1",
        "correlation_id": "conv-1",
        "attempts_made": 2,
        "created_at": datetime(2025, 1, 1, tzinfo=timezone.utc),
    }
    values.update(overrides)
    return JobDescriptor(**values)


async def test_descriptor_survives_a_new_store_instance(tmp_path) -> None:
    path = tmp_path / "nested" / "jobs.json"
    await JsonFileDescriptorStore(path).save(descriptor())

    loaded = await JsonFileDescriptorStore(path).load("media")

    assert loaded == descriptor()
    on_disk = json.loads(path.read_text())
    assert on_disk["jobs"]["media"]["requestId"] == "req-1"
    assert on_disk["jobs"]["media"]["attemptsMade"] == 2


async def test_save_overwrites_the_single_slot_per_kind(tmp_path) -> None:
    store = JsonFileDescriptorStore(tmp_path / "jobs.json")

    await store.save(descriptor())
    await store.save(descriptor(request_id="req-2", attempts_made=0))

    loaded = await store.load("media")
    assert loaded.request_id == "req-2"


async def test_delete_removes_descriptor(tmp_path) -> None:
    path = tmp_path / "jobs.json"
    store = JsonFileDescriptorStore(path)
    await store.save(descriptor())

    await store.delete("media")

    assert await store.load("media") is None
    assert json.loads(path.read_text()) == {"jobs": {}}


async def test_corrupt_or_invalid_entries_are_ignored(tmp_path) -> None:
    path = tmp_path / "jobs.json"
    path.write_text("{not json")
    assert await JsonFileDescriptorStore(path).load("media") is None

    path.write_text(json.dumps({"jobs": {"media": {"requestId": "missing fields"}}}))
    assert await JsonFileDescriptorStore(path).load("media") is None
