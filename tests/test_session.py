"""Tests for session and context cache lifecycle."""

import pytest

from desmond_chat.domain.catalog import MODELS, Tool, coerce_model_id, resolve
from desmond_chat.domain.models import HistoryTurn, Message, ModelId
from desmond_chat.services.session import map_history

from conftest import exchange


def test_catalog_maps_logical_models():
    maps = resolve(ModelId.MAPS)
    assert maps.backend_model == "gemini-2.5-flash-lite"
    assert maps.tools == (Tool.GOOGLE_MAPS,)
    assert resolve(ModelId.IMAGE).tools == ()
    assert Tool.URL_CONTEXT in resolve(ModelId.PRO).tools
    assert all(spec.name and spec.description for spec in MODELS.values())


def test_unknown_model_falls_back_to_default():
    assert coerce_model_id("gemini-1.0-pro") == ModelId.PRO
    assert coerce_model_id(None) == ModelId.PRO
    assert coerce_model_id("gemini-2.5-flash") == ModelId.FLASH


def test_map_history_skips_greeting_and_empty_messages():
    greeting = Message(id="initial-1", sender="ai", text="Hello!", timestamp="t")
    empty = Message(sender="ai", text="", timestamp="t")
    history = map_history([greeting, *exchange("question", "answer"), empty])

    assert history == [HistoryTurn(role="user", text="question"), HistoryTurn(role="model", text="answer")]


@pytest.mark.asyncio
async def test_system_instruction_only_for_fresh_uncached_session(sessions, transport):
    await sessions.start_session(ModelId.FLASH)
    await sessions.start_session(ModelId.FLASH, [HistoryTurn(role="user", text="hi")])
    await sessions.start_session(ModelId.FLASH, cache_name="cachedContents/1")

    fresh, replayed, cached = [details["config"] for details in transport.calls_named("create_session")]
    assert fresh.system_instruction
    assert fresh.cached_content is None
    assert replayed.system_instruction is None
    assert cached.system_instruction is None
    assert cached.cached_content == "cachedContents/1"


@pytest.mark.asyncio
async def test_maps_session_uses_maps_persona_and_backend(sessions, transport):
    handle = await sessions.start_session(ModelId.MAPS)

    details = transport.calls_named("create_session")[0]
    assert handle.model == ModelId.MAPS.value
    assert details["backend_model"] == "gemini-2.5-flash-lite"
    assert details["config"].tools == (Tool.GOOGLE_MAPS,)
    assert "Maps" in details["config"].system_instruction


@pytest.mark.asyncio
async def test_ensure_session_only_rebuilds_on_change(sessions, transport):
    first = await sessions.ensure_session(ModelId.FLASH, conversation_id="a")
    same = await sessions.ensure_session(ModelId.FLASH, conversation_id="a")
    assert same is first
    assert transport.names().count("create_session") == 1

    await sessions.ensure_session(ModelId.PRO, conversation_id="a")
    await sessions.ensure_session(ModelId.PRO, conversation_id="b")
    assert transport.names().count("create_session") == 3
    assert sessions.current_model == ModelId.PRO
    assert sessions.conversation_id == "b"


@pytest.mark.asyncio
async def test_installing_a_cache_deletes_the_previous_one(sessions, transport):
    await sessions.install_cache("cachedContents/1")
    await sessions.install_cache("cachedContents/2")

    assert transport.calls_named("delete_cache") == ["cachedContents/1"]
    assert sessions.active_cache == "cachedContents/2"


@pytest.mark.asyncio
async def test_failed_cache_delete_still_clears_handle(sessions, transport):
    transport.delete_error = RuntimeError("backend unavailable")
    await sessions.install_cache("cachedContents/1")

    await sessions.teardown_cache()

    assert transport.calls_named("delete_cache") == ["cachedContents/1"]
    assert sessions.active_cache is None

    await sessions.teardown_cache()
    assert transport.calls_named("delete_cache") == ["cachedContents/1"]


@pytest.mark.asyncio
async def test_uncached_session_tears_down_active_cache(sessions, transport):
    await sessions.install_cache("cachedContents/1")
    await sessions.start_session(ModelId.PRO, cache_name="cachedContents/1")
    assert transport.calls_named("delete_cache") == []

    await sessions.start_session(ModelId.PRO)

    assert transport.calls_named("delete_cache") == ["cachedContents/1"]
    assert sessions.active_cache is None
    assert transport.names().index("delete_cache") < len(transport.names()) - 1


@pytest.mark.asyncio
async def test_reset_drops_session_and_cache(sessions, transport):
    await sessions.start_session(ModelId.FLASH)
    await sessions.install_cache("cachedContents/9")

    await sessions.reset()

    assert sessions.session is None
    assert sessions.current_model is None
    assert sessions.active_cache is None
    assert transport.calls_named("delete_cache") == ["cachedContents/9"]
