"""Application facade tying the repository, store, sessions and streaming together."""

from typing import List, Optional
from uuid import uuid4

import structlog

from .. import config
from ..domain.catalog import DEFAULT_MODEL
from ..domain.errors import (
    ConversationNotFound,
    CredentialMissing,
    CredentialRejected,
    StorageError,
    TitleGenerationInProgress,
)
from ..domain.models import Conversation, LocalFile, Message, ModelId, SendResult
from ..prompts import (
    GENERIC_FAILURE,
    GREETING_FULL_TEXT,
    GREETING_WITH_KEY,
    GREETING_WITHOUT_KEY,
    SUGGESTIONS,
    format_timestamp,
)
from ..repositories.base import ConversationStore
from ..repositories.memory import ConversationRepository
from .session import SessionManager, map_history
from .streaming import StreamingCoordinator
from .titles import TitleService
from .transport import Transport

logger = structlog.get_logger()


def greeting_message(has_credential: bool) -> Message:
    """Opening message of a new chat; it is dropped on the first send."""
    return Message(
        id=f"initial-{uuid4().hex}",
        sender="ai",
        text=GREETING_WITH_KEY if has_credential else GREETING_WITHOUT_KEY,
        full_text=GREETING_FULL_TEXT,
        suggestions=list(SUGGESTIONS),
        timestamp=format_timestamp(),
    )


def settle_interrupted(conversations: List[Conversation]) -> List[Conversation]:
    """Stamp placeholders left empty by a process that stopped mid-stream."""
    settled = []
    for convo in conversations:
        if not any(msg.is_streaming for msg in convo.messages):
            settled.append(convo)
            continue
        messages = [
            msg.model_copy(update={"text": msg.text or GENERIC_FAILURE, "timestamp": format_timestamp()})
            if msg.is_streaming
            else msg
            for msg in convo.messages
        ]
        settled.append(convo.model_copy(update={"messages": messages}))
    return settled


class ChatService:
    """Conversation-level operations exposed to the boundary."""

    def __init__(
        self,
        transport: Transport,
        store: ConversationStore,
        repository: Optional[ConversationRepository] = None,
        poll_interval: float = config.POLL_INTERVAL,
    ) -> None:
        self.transport = transport
        self.store = store
        self.repository = repository or ConversationRepository()
        self.sessions = SessionManager(transport)
        self.titles = TitleService(transport)
        self.credential: Optional[str] = None
        self.active_conversation_id: Optional[str] = None
        self.selected_model: ModelId = DEFAULT_MODEL
        self._renaming: Optional[str] = None
        self.coordinator = StreamingCoordinator(
            repository=self.repository,
            store=self.store,
            sessions=self.sessions,
            transport=self.transport,
            credential=lambda: self.credential,
            titles=self.titles,
            on_credential_rejected=self._credential_rejected,
            poll_interval=poll_interval,
        )

    # -- lifecycle --------------------------------------------------------------

    async def startup(self, stored_credential: Optional[str] = None) -> bool:
        """Load persisted conversations and reuse a stored credential if it still verifies."""
        conversations = settle_interrupted(await self.store.load())
        await self.repository.optimistic_set(conversations)
        logger.info("chat_service_loaded", conversations=len(conversations))

        if not stored_credential:
            return False
        if not await self.transport.verify(stored_credential):
            logger.warning("stored_credential_invalid")
            return False

        await self._activate(stored_credential)
        await self._open_latest()
        return True

    async def shutdown(self) -> None:
        await self.coordinator.drain()
        await self.sessions.teardown_cache()
        logger.info("chat_service_shutdown")

    async def set_credential(self, credential: str) -> None:
        """Verify and adopt a new credential."""
        credential = (credential or "").strip()
        if not await self.transport.verify(credential):
            logger.warning("credential_rejected")
            raise CredentialRejected()

        await self._activate(credential)
        if self.active_conversation_id is None:
            await self._open_latest()

    async def _activate(self, credential: str) -> None:
        # The old client owns the active cache, so clean it up first
        await self.sessions.reset()
        self.transport.configure(credential)
        self.credential = credential
        logger.info("credential_activated")

    def _credential_rejected(self) -> None:
        self.credential = None
        logger.warning("credential_cleared_after_rejection")

    async def _open_latest(self) -> None:
        conversations = self.repository.read()
        if conversations:
            await self.select_conversation(conversations[0].id)
        else:
            await self.new_chat()

    def _require_credential(self) -> None:
        if not self.credential:
            raise CredentialMissing()

    # -- conversations ----------------------------------------------------------

    def list_conversations(self) -> List[Conversation]:
        return self.repository.read()

    def get_conversation(self, conversation_id: str) -> Conversation:
        conversation = self.repository.get(conversation_id)
        if conversation is None:
            logger.warning("conversation_not_found", conversation_id=conversation_id)
            raise ConversationNotFound(conversation_id)
        return conversation

    async def new_chat(self, model: Optional[ModelId] = None) -> Conversation:
        self._require_credential()
        model = ModelId(model or self.selected_model)
        conversation = Conversation(model=model, messages=[greeting_message(True)])

        await self._commit([conversation, *self.repository.read()])
        self.active_conversation_id = conversation.id
        self.selected_model = model
        await self.sessions.start_session(model, conversation_id=conversation.id)
        logger.info("conversation_created", conversation_id=conversation.id, model=model.value)
        return conversation

    async def select_conversation(self, conversation_id: str) -> Conversation:
        conversation = self.get_conversation(conversation_id)
        self.active_conversation_id = conversation.id
        self.selected_model = ModelId(conversation.model)
        await self.sessions.start_session(
            conversation.model, map_history(conversation.messages), conversation_id=conversation.id
        )
        return conversation

    async def change_model(self, model: ModelId) -> Conversation:
        """Switch the active conversation to ``model`` and restart its session."""
        model = ModelId(model)
        self.selected_model = model
        conversation = self.repository.get(self.active_conversation_id or "")
        if conversation is None:
            return await self.new_chat(model)

        updated = conversation.model_copy(update={"model": model})
        await self._commit([updated if convo.id == updated.id else convo for convo in self.repository.read()])
        await self.sessions.start_session(
            model, map_history(conversation.messages), conversation_id=conversation.id
        )
        logger.info("model_changed", conversation_id=conversation.id, model=model.value)
        return updated

    async def delete_conversation(self, conversation_id: str) -> None:
        self.get_conversation(conversation_id)
        remaining = [convo for convo in self.repository.read() if convo.id != conversation_id]
        await self._commit(remaining)
        await self.coordinator.cancel(conversation_id)
        self.coordinator.forget(conversation_id)
        if self.sessions.conversation_id == conversation_id:
            await self.sessions.teardown_cache()
        logger.info("conversation_deleted", conversation_id=conversation_id)

        if self.active_conversation_id != conversation_id:
            return
        self.active_conversation_id = None
        if remaining:
            await self.select_conversation(remaining[0].id)
        elif self.credential:
            await self.new_chat()

    async def regenerate_title(self, conversation_id: str) -> str:
        """Regenerate a title from history; one regeneration runs at a time."""
        if self._renaming is not None:
            raise TitleGenerationInProgress(self._renaming)
        conversation = self.get_conversation(conversation_id)

        self._renaming = conversation_id
        try:
            title = await self.titles.generate_title_from_history(conversation.messages)
            current = self.get_conversation(conversation_id)
            updated = current.model_copy(update={"title": title})
            try:
                await self._commit(
                    [updated if convo.id == updated.id else convo for convo in self.repository.read()]
                )
            except StorageError as e:
                logger.error("title_save_failed", conversation_id=conversation_id, error=str(e))
            return title
        finally:
            self._renaming = None

    async def optimize_prompt(self, prompt: str) -> str:
        self._require_credential()
        return await self.titles.optimize_prompt(prompt)

    async def send_message(
        self,
        text: str,
        files: Optional[List[LocalFile]] = None,
        conversation_id: Optional[str] = None,
        aspect_ratio: str = config.DEFAULT_ASPECT_RATIO,
    ) -> SendResult:
        target = conversation_id or self.active_conversation_id
        if target is None:
            self._require_credential()
            raise ConversationNotFound("")
        return await self.coordinator.send_message(target, text, files, aspect_ratio)

    async def _commit(self, conversations: List[Conversation]) -> List[Conversation]:
        """Optimistically apply ``conversations`` and persist, rolling back on failure."""
        token = await self.repository.optimistic_set(conversations)
        try:
            return await self.store.save(conversations)
        except StorageError as e:
            await self.repository.rollback(token)
            logger.error("conversations_save_failed", error=str(e))
            raise
