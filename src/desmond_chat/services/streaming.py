"""Streaming coordination: one generation at a time, folded into a placeholder.

A send appends the user message and an empty-timestamp AI placeholder
optimistically, makes sure the backend session matches the resolved model,
then folds every response chunk into the placeholder. Success stamps the
placeholder and persists; failure restores that conversation's pre-send
messages and resolves the placeholder as an error message.

Only one conversation streams at a time. The single-slot ``active_stream``
token names it, and chunks arriving for anything else are dropped. A
cancelled stream no longer writes to the repository when it ends.
"""

import asyncio
import re
import time
from typing import Callable, List, Optional, Set, Tuple

import structlog

from .. import config
from ..domain.catalog import ESCALATION_MODEL, IMAGE_MODEL, resolve
from ..domain.errors import (
    ConversationNotFound,
    CredentialMissing,
    StorageError,
    StorageQuotaExceeded,
    StreamInProgress,
)
from ..domain.models import (
    Conversation,
    LocalFile,
    Message,
    ModelId,
    Part,
    ResponseChunk,
    SendResult,
    Source,
    StreamDelta,
    UsageMetadata,
)
from ..prompts import CREDENTIAL_FAILURE, GENERIC_FAILURE, format_timestamp, system_instruction
from ..repositories.base import ConversationStore
from ..repositories.memory import ConversationRepository, Snapshot
from .files import (
    build_inline_parts,
    is_cacheable_document,
    to_attachment,
    to_inline_image,
    upload_and_wait,
    validate_files,
)
from .session import SessionManager, map_history
from .titles import FILES_ONLY_TITLE, TitleService
from .transport import Transport

logger = structlog.get_logger()

URL_PATTERN = re.compile(r"https?://[^\s/$.?#].[^\s]*", re.IGNORECASE)
CREDENTIAL_SIGNATURES = ("API_KEY_INVALID", "API key not valid")


def requires_escalation(text: str, files: List[LocalFile]) -> bool:
    """Attachments and URLs need the most capable model."""
    return bool(files) or bool(URL_PATTERN.search(text or ""))


def is_credential_error(error: BaseException) -> bool:
    message = str(error)
    return any(signature in message for signature in CREDENTIAL_SIGNATURES)


def extract_sources(chunk: ResponseChunk) -> List[Source]:
    """Citations from URL context and grounding metadata, unique by uri."""
    sources: List[Source] = []
    seen: Set[str] = set()

    def add(source: Source) -> None:
        if source.uri not in seen:
            seen.add(source.uri)
            sources.append(source)

    for uri in chunk.retrieved_urls:
        add(Source(uri=uri, title=uri.split("//")[-1] or uri))

    for ref in chunk.grounding:
        if not (ref.uri and ref.title):
            continue
        if ref.kind == "maps":
            add(Source(uri=ref.uri, title=ref.title, place_id=ref.place_id))
        else:
            add(Source(uri=ref.uri, title=ref.title))
    return sources


def fold_chunk(chunk: ResponseChunk) -> StreamDelta:
    """Turn one response chunk into the delta applied to the placeholder."""
    thought = []
    code = []
    output = []
    text = []
    images = []
    for part in chunk.parts:
        if part.thought:
            if part.text:
                thought.append(part.text)
            continue
        if part.executable_code:
            code.append(part.executable_code)
        if part.code_execution_output:
            output.append(part.code_execution_output)
        if part.inline_image is not None:
            images.append(part.inline_image)
        if part.text and not part.executable_code and not part.code_execution_output:
            text.append(part.text)

    return StreamDelta(
        text="".join(text) or None,
        thought="".join(thought) or None,
        executable_code="".join(code) or None,
        code_execution_result="".join(output) or None,
        code_execution_images=images or None,
        sources=extract_sources(chunk) or None,
    )


def _is_empty(delta: StreamDelta) -> bool:
    return not any(getattr(delta, name) for name in StreamDelta.model_fields)


class StreamingCoordinator:
    """Runs sends against the backend, one conversation at a time."""

    def __init__(
        self,
        repository: ConversationRepository,
        store: ConversationStore,
        sessions: SessionManager,
        transport: Transport,
        credential: Callable[[], Optional[str]],
        titles: Optional[TitleService] = None,
        on_credential_rejected: Optional[Callable[[], None]] = None,
        poll_interval: float = config.POLL_INTERVAL,
        clock: Callable[[], float] = time.perf_counter,
    ) -> None:
        self.repository = repository
        self.store = store
        self.sessions = sessions
        self.transport = transport
        self.titles = titles
        self.poll_interval = poll_interval
        self.active_stream: Optional[str] = None
        self._stream_task: Optional[asyncio.Task] = None
        self._credential = credential
        self._on_credential_rejected = on_credential_rejected
        self._clock = clock
        self._escalated: Set[str] = set()
        self._background: Set[asyncio.Task] = set()

    # -- escalation -----------------------------------------------------------

    def is_escalated(self, conversation_id: str) -> bool:
        return conversation_id in self._escalated

    def forget(self, conversation_id: str) -> None:
        """Drop per-conversation state for a deleted conversation."""
        self._escalated.discard(conversation_id)

    async def cancel(self, conversation_id: str) -> bool:
        """Release the stream token and stamp the abandoned placeholder.

        The stream keeps running, but its chunks are dropped and its outcome
        no longer touches the repository.
        """
        if self.active_stream != conversation_id:
            return False
        self.active_stream = None
        self._stream_task = None
        await self.repository.finalize_streaming_message(conversation_id, timestamp=format_timestamp())
        logger.info("stream_cancelled", conversation_id=conversation_id)
        return True

    def _owns_stream(self, conversation_id: str) -> bool:
        # A cancelled send must not claim a newer stream for the same conversation
        return self.active_stream == conversation_id and self._stream_task is asyncio.current_task()

    def resolve_target_model(self, conversation: Conversation) -> ModelId:
        if conversation.model == IMAGE_MODEL:
            return IMAGE_MODEL
        if conversation.id in self._escalated:
            return ESCALATION_MODEL
        return ModelId(conversation.model)

    # -- sending --------------------------------------------------------------

    async def send_message(
        self,
        conversation_id: str,
        text: str,
        files: Optional[List[LocalFile]] = None,
        aspect_ratio: str = config.DEFAULT_ASPECT_RATIO,
    ) -> SendResult:
        """Send one user turn and stream the reply into the conversation."""
        if not self._credential():
            raise CredentialMissing()
        if self.active_stream is not None:
            logger.warning(
                "send_rejected_stream_active",
                conversation_id=conversation_id,
                active_stream=self.active_stream,
            )
            raise StreamInProgress()

        conversation = self.repository.get(conversation_id)
        if conversation is None:
            raise ConversationNotFound(conversation_id)

        text = text or ""
        validation = validate_files(files or [])
        if not text.strip() and not validation.valid:
            return SendResult(conversation_id=conversation_id, rejected_files=validation.errors)

        user_message = Message(sender="user", text=text, timestamp=format_timestamp())
        if validation.valid:
            user_message.files = [to_attachment(file) for file in validation.valid]
        placeholder = Message(id=f"{user_message.id}-ai", sender="ai", text="", thoughts="", timestamp="")

        token: Optional[Snapshot] = None
        self.active_stream = conversation_id
        self._stream_task = asyncio.current_task()
        try:
            first_turn = not any(msg.sender == "user" for msg in conversation.messages)
            title = conversation.title
            if first_turn and not text.strip():
                title = FILES_ONLY_TITLE
            token = await self.repository.optimistic_set(
                self._with_turn(conversation, [user_message, placeholder], title)
            )
            if first_turn and text.strip() and self.titles is not None:
                self._spawn(self._title_first_message(conversation_id, text))

            started = self._clock()
            usage = await self._generate(conversation, text, validation.valid, aspect_ratio)
            if not self._owns_stream(conversation_id):
                logger.info("cancelled_stream_finished", conversation_id=conversation_id)
                return SendResult(conversation_id=conversation_id, rejected_files=validation.errors)
            message = await self.repository.finalize_streaming_message(
                conversation_id,
                usage_metadata=usage,
                thinking_time=(self._clock() - started) * 1000,
                timestamp=format_timestamp(),
            )
            logger.info(
                "message_streamed",
                conversation_id=conversation_id,
                response_length=len(message.text) if message else 0,
                total_tokens=usage.total_token_count if usage else None,
            )
            return SendResult(
                conversation_id=conversation_id,
                message=message,
                rejected_files=validation.errors,
                storage_error=await self._persist(),
            )
        except Exception as e:
            logger.error("send_message_error", conversation_id=conversation_id, error=str(e))
            if not self._owns_stream(conversation_id):
                self._check_credential_error(e)
                logger.info("cancelled_stream_failed", conversation_id=conversation_id)
                return SendResult(conversation_id=conversation_id, rejected_files=validation.errors)
            message, error_text = await self._resolve_failure(
                conversation_id, token, user_message, placeholder, e
            )
            return SendResult(
                conversation_id=conversation_id,
                message=message,
                error=error_text,
                rejected_files=validation.errors,
                storage_error=await self._persist(),
            )
        finally:
            if self._owns_stream(conversation_id):
                self.active_stream = None
                self._stream_task = None

    async def _generate(
        self,
        conversation: Conversation,
        text: str,
        files: List[LocalFile],
        aspect_ratio: str,
    ) -> Optional[UsageMetadata]:
        conversation_id = conversation.id

        if requires_escalation(text, files) and conversation_id not in self._escalated:
            self._escalated.add(conversation_id)
            logger.info("conversation_escalated", conversation_id=conversation_id)

        target = self.resolve_target_model(conversation)
        if target == IMAGE_MODEL:
            return await self._generate_image(conversation_id, text, files, aspect_ratio)

        if self.sessions.current_model != target or self.sessions.conversation_id != conversation_id:
            await self.sessions.ensure_session(
                target, map_history(conversation.messages), conversation_id=conversation_id
            )

        parts = await self._build_parts(conversation_id, target, text, files)
        usage: Optional[UsageMetadata] = None
        async for chunk in self.transport.send_streaming(self.sessions.session.chat, parts):
            if chunk.usage_metadata is not None:
                usage = chunk.usage_metadata
            await self._apply(conversation_id, fold_chunk(chunk))
        return usage

    async def _generate_image(
        self, conversation_id: str, text: str, files: List[LocalFile], aspect_ratio: str
    ) -> Optional[UsageMetadata]:
        for file in files:
            await self._status(conversation_id, f"Processing {file.name}...")
        result = await self.transport.generate_image(
            resolve(IMAGE_MODEL).backend_model,
            text,
            [to_inline_image(file) for file in files],
            aspect_ratio,
        )

        count = len(result.images)
        if count:
            delta = StreamDelta(
                generated_images=result.images,
                text=f"Generated {count} image{'s' if count > 1 else ''} successfully.",
            )
        else:
            delta = StreamDelta(
                text="Image generation completed but no images were returned. "
                "Please try again with a different prompt."
            )
        await self._apply(conversation_id, delta)
        return result.usage_metadata

    async def _build_parts(
        self, conversation_id: str, model: ModelId, text: str, files: List[LocalFile]
    ) -> List[Part]:
        async def status(message: str) -> None:
            await self._status(conversation_id, message)

        if is_cacheable_document(files):
            remote = await upload_and_wait(
                self.transport, files[0], status, self.poll_interval, status_prefix="file"
            )
            await status("Creating context cache for PDF...")
            spec = resolve(model)
            cache_name = await self.transport.create_cache(
                spec.backend_model, system_instruction(spec.persona), remote
            )
            await self.sessions.install_cache(cache_name)
            await status("Starting new cached session...")
            await self.sessions.start_session(model, cache_name=cache_name, conversation_id=conversation_id)
            # The document lives in the cache, only the prompt is sent
            return [Part(text=text)]

        parts = await build_inline_parts(self.transport, files, status, self.poll_interval)
        parts.append(Part(text=text))
        return parts

    async def _apply(self, conversation_id: str, delta: StreamDelta) -> None:
        if not self._owns_stream(conversation_id):
            logger.debug("chunk_discarded", conversation_id=conversation_id, active_stream=self.active_stream)
            return
        if _is_empty(delta):
            return
        await self.repository.patch_streaming_message(conversation_id, delta)

    async def _status(self, conversation_id: str, message: str) -> None:
        # Coarse progress is surfaced through the reasoning trace
        await self._apply(conversation_id, StreamDelta(thought=message))

    # -- failure and persistence ------------------------------------------------

    def _check_credential_error(self, error: Exception) -> str:
        """Pick the error text, clearing the credential on a rejection signature."""
        if not is_credential_error(error):
            return GENERIC_FAILURE
        if self._on_credential_rejected is not None:
            self._on_credential_rejected()
        return CREDENTIAL_FAILURE

    async def _resolve_failure(
        self,
        conversation_id: str,
        token: Optional[Snapshot],
        user_message: Message,
        placeholder: Message,
        error: Exception,
    ) -> Tuple[Optional[Message], str]:
        """Undo this conversation's pre-send changes and append the error turn.

        Only the failed conversation is restored from ``token``; every other
        conversation keeps its current state.
        """
        error_text = self._check_credential_error(error)

        current = self.repository.get(conversation_id)
        if current is None:
            return None, error_text

        previous = next((convo for convo in token or () if convo.id == conversation_id), None)
        base = current.model_copy(update={"messages": previous.messages}) if previous is not None else current
        resolved = placeholder.model_copy(
            update={"text": error_text, "thoughts": "", "timestamp": format_timestamp()}
        )
        await self.repository.optimistic_set(self._with_turn(base, [user_message, resolved], current.title))
        return resolved, error_text

    async def _persist(self) -> Optional[str]:
        """Write the current snapshot; storage failures do not undo the turn."""
        try:
            await self.store.save(self.repository.read())
            return None
        except StorageError as e:
            logger.error(
                "persist_failed",
                error=str(e),
                quota_exceeded=isinstance(e, StorageQuotaExceeded),
            )
            return str(e)

    def _with_turn(self, conversation: Conversation, messages: List[Message], title: str) -> List[Conversation]:
        """Snapshot with ``messages`` appended and the conversation moved to the front."""
        existing = conversation.messages
        if existing and existing[0].is_greeting:
            existing = []
        updated = conversation.model_copy(
            update={"messages": [*existing, *messages], "title": title}
        )
        others = [convo for convo in self.repository.read() if convo.id != conversation.id]
        return [updated, *others]

    # -- background work -------------------------------------------------------

    async def _title_first_message(self, conversation_id: str, text: str) -> None:
        title = await self.titles.generate_chat_title(text)
        conversation = self.repository.get(conversation_id)
        if conversation is None:
            return
        await self.repository.replace_conversation(conversation.model_copy(update={"title": title}))
        await self._persist()
        logger.info("conversation_titled", conversation_id=conversation_id, title=title)

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def drain(self) -> None:
        """Wait for background work such as title generation."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
