"""Backend session and context cache lifecycle."""

from typing import List, Optional

import structlog

from ..domain.catalog import resolve
from ..domain.models import HistoryTurn, Message, ModelId
from ..prompts import system_instruction
from .transport import SessionConfig, SessionHandle, Transport

logger = structlog.get_logger()


def map_history(messages: List[Message]) -> List[HistoryTurn]:
    """Replayable history: greeting and empty messages are skipped."""
    return [
        HistoryTurn(role="user" if msg.sender == "user" else "model", text=msg.text)
        for msg in messages
        if not msg.is_greeting and msg.text and msg.text.strip()
    ]


class SessionManager:
    """Owns the current backend session and the active context cache.

    Nothing else reads or replaces these handles; callers go through
    ``start_session``/``ensure_session``/``install_cache``/``teardown_cache``.
    """

    def __init__(self, transport: Transport) -> None:
        self.transport = transport
        self._session: Optional[SessionHandle] = None
        self._active_cache: Optional[str] = None

    @property
    def session(self) -> Optional[SessionHandle]:
        return self._session

    @property
    def current_model(self) -> Optional[ModelId]:
        return ModelId(self._session.model) if self._session else None

    @property
    def conversation_id(self) -> Optional[str]:
        return self._session.conversation_id if self._session else None

    @property
    def active_cache(self) -> Optional[str]:
        return self._active_cache

    async def start_session(
        self,
        model: ModelId,
        history: Optional[List[HistoryTurn]] = None,
        cache_name: Optional[str] = None,
        conversation_id: Optional[str] = None,
    ) -> SessionHandle:
        """Replace the current session with a fresh one for ``model``."""
        history = history or []
        spec = resolve(model)

        if self._active_cache and self._active_cache != cache_name:
            await self.teardown_cache()

        session_config = SessionConfig(tools=spec.tools)
        if cache_name:
            session_config.cached_content = cache_name
        elif not history:
            session_config.system_instruction = system_instruction(spec.persona)

        chat = await self.transport.create_session(spec.backend_model, session_config, history)
        self._session = SessionHandle(
            model=ModelId(model).value,
            backend_model=spec.backend_model,
            cache_name=cache_name,
            conversation_id=conversation_id,
            chat=chat,
        )
        logger.info(
            "session_started",
            model=self._session.model,
            backend_model=spec.backend_model,
            cache_name=cache_name,
            conversation_id=conversation_id,
            history_turns=len(history),
        )
        return self._session

    async def ensure_session(
        self,
        model: ModelId,
        history: Optional[List[HistoryTurn]] = None,
        cache_name: Optional[str] = None,
        conversation_id: Optional[str] = None,
    ) -> SessionHandle:
        """Start a new session only if the model, cache or conversation no longer match."""
        current = self._session
        if (
            current is None
            or current.model != ModelId(model).value
            or current.cache_name != cache_name
            or current.conversation_id != conversation_id
        ):
            return await self.start_session(model, history, cache_name, conversation_id)
        return current

    async def install_cache(self, cache_name: str) -> None:
        """Make ``cache_name`` the active cache, deleting the one it replaces."""
        if self._active_cache and self._active_cache != cache_name:
            await self.teardown_cache()
        self._active_cache = cache_name
        logger.info("cache_installed", cache_name=cache_name)

    async def teardown_cache(self) -> None:
        """Delete the active cache if there is one; the handle is always cleared."""
        cache_name = self._active_cache
        if cache_name is None:
            return
        try:
            await self.transport.delete_cache(cache_name)
            logger.info("cache_deleted", cache_name=cache_name)
        except Exception as e:
            logger.error("cache_delete_failed", cache_name=cache_name, error=str(e))
        finally:
            self._active_cache = None

    async def reset(self) -> None:
        """Drop the session and cache ahead of a credential change."""
        await self.teardown_cache()
        self._session = None
        logger.info("session_reset")
