"""Tests for the JSON conversation store."""

import errno
import json
import os
from pathlib import Path

import pytest

from desmond_chat.domain.errors import StorageError, StorageQuotaExceeded
from desmond_chat.domain.models import InlineImage, Message, ModelId
from desmond_chat.repositories.storage import LocalConversationStore

from conftest import exchange, make_conversation


@pytest.mark.asyncio
async def test_generated_images_are_not_persisted(store):
    image_reply = Message(
        sender="ai",
        text="Generated 1 image successfully.",
        timestamp="now",
        generated_images=[InlineImage(base64="aW1hZ2U=")],
        code_execution_images=[InlineImage(base64="Y2hhcnQ=")],
    )
    conversation = make_conversation(messages=[*exchange("draw a cat", "ok"), image_reply])

    await store.save([conversation])
    loaded = await store.load()

    assert loaded[0].messages[-1].generated_images is None
    assert loaded[0].messages[-1].code_execution_images[0].base64 == "Y2hhcnQ="
    assert "generated_images" not in store.path.read_text()
    assert loaded[0].messages[0].text == "draw a cat"


@pytest.mark.asyncio
async def test_missing_file_loads_empty(store):
    assert await store.load() == []


@pytest.mark.asyncio
async def test_saving_empty_list_removes_file(store):
    await store.save([make_conversation()])
    assert store.path.exists()

    await store.save([])
    assert not store.path.exists()


@pytest.mark.asyncio
async def test_corrupt_payload_is_erased(store):
    store.path.write_text("{not json")

    assert await store.load() == []
    assert not store.path.exists()


@pytest.mark.asyncio
async def test_load_fills_missing_fields(store):
    store.path.write_text(json.dumps([
        {"model": "gemini-1.0-retired", "messages": [{"sender": "user", "text": "hi", "timestamp": "t"}]},
        {"id": "keep", "title": "Trip plan", "model": "gemini-2.5-flash-lite-maps"},
    ]))

    first, second = await store.load()

    assert first.id
    assert first.title == "Untitled Chat"
    assert first.model == ModelId.PRO
    assert first.messages[0].text == "hi"
    assert second.id == "keep"
    assert second.model == ModelId.MAPS
    assert second.messages == []


@pytest.mark.asyncio
async def test_quota_exceeded_leaves_previous_file(tmp_path):
    store = LocalConversationStore(tmp_path / "chat_history.json", quota_bytes=400)
    small = make_conversation(title="small")
    await store.save([small])
    previous = store.path.read_text()

    big = make_conversation(messages=exchange("x" * 500, "y"))
    with pytest.raises(StorageQuotaExceeded):
        await store.save([big, small])

    assert store.path.read_text() == previous


@pytest.mark.asyncio
async def test_disk_full_maps_to_quota_error(store, monkeypatch):
    def disk_full(*args, **kwargs):
        raise OSError(errno.ENOSPC, "No space left on device")

    monkeypatch.setattr(os, "replace", disk_full)

    with pytest.raises(StorageQuotaExceeded):
        await store.save([make_conversation()])
    assert list(store.path.parent.iterdir()) == []


@pytest.mark.asyncio
async def test_other_write_failures_are_generic(store, monkeypatch):
    def denied(*args, **kwargs):
        raise OSError(errno.EACCES, "Permission denied")

    monkeypatch.setattr(os, "replace", denied)

    with pytest.raises(StorageError) as excinfo:
        await store.save([make_conversation()])
    assert not isinstance(excinfo.value, StorageQuotaExceeded)


@pytest.mark.asyncio
async def test_partial_write_leaves_no_temp_file(store, monkeypatch):
    original = Path.write_bytes

    def short_write(path, data):
        original(path, data[:8])
        raise OSError(errno.ENOSPC, "No space left on device")

    monkeypatch.setattr(Path, "write_bytes", short_write)

    with pytest.raises(StorageQuotaExceeded):
        await store.save([make_conversation()])
    assert not store.path.with_suffix(".json.tmp").exists()
    assert not store.path.exists()


@pytest.mark.asyncio
async def test_corrupt_payload_that_cannot_be_erased_still_loads_empty(store, monkeypatch):
    store.path.write_text("{not json")

    def locked(path, missing_ok=False):
        raise PermissionError(errno.EACCES, "Permission denied")

    monkeypatch.setattr(Path, "unlink", locked)

    assert await store.load() == []
    assert store.path.exists()
