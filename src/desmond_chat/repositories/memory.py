"""In-memory conversation repository."""

import asyncio
from typing import List, Optional, Tuple

import structlog

from ..domain.models import Conversation, Message, StreamDelta

logger = structlog.get_logger()

Snapshot = Tuple[Conversation, ...]


def merge_delta(message: Message, delta: StreamDelta) -> Message:
    """Fold a streaming delta into a message without mutating it."""
    changes = {}
    if delta.text:
        changes["text"] = message.text + delta.text
    if delta.thought:
        changes["thoughts"] = (message.thoughts or "") + delta.thought
    if delta.executable_code:
        changes["executable_code"] = (message.executable_code or "") + delta.executable_code
    if delta.code_execution_result:
        changes["code_execution_result"] = (
            (message.code_execution_result or "") + delta.code_execution_result
        )
    if delta.code_execution_images:
        changes["code_execution_images"] = list(delta.code_execution_images)
    if delta.generated_images:
        changes["generated_images"] = list(delta.generated_images)
    if delta.usage_metadata is not None:
        changes["usage_metadata"] = delta.usage_metadata
    if delta.sources:
        existing = list(message.sources or [])
        seen = {source.uri for source in existing}
        for source in delta.sources:
            if source.uri not in seen:
                existing.append(source)
                seen.add(source.uri)
        changes["sources"] = existing

    if not changes:
        return message
    return message.model_copy(update=changes)


class ConversationRepository:
    """Authoritative in-memory snapshot of every conversation.

    Snapshots are immutable tuples and every update is copy-on-write, so the
    token returned by ``optimistic_set`` can always be restored verbatim.
    """

    def __init__(self, conversations: Optional[List[Conversation]] = None) -> None:
        self._snapshot: Snapshot = tuple(conversations or ())
        self._async_lock = asyncio.Lock()
        logger.info("repository_initialized", conversations=len(self._snapshot))

    def read(self) -> List[Conversation]:
        """Return the current snapshot."""
        return list(self._snapshot)

    def get(self, conversation_id: str) -> Optional[Conversation]:
        for conversation in self._snapshot:
            if conversation.id == conversation_id:
                return conversation
        return None

    async def optimistic_set(self, conversations: List[Conversation]) -> Snapshot:
        """Replace the snapshot and return the previous one as a rollback token."""
        async with self._async_lock:
            previous = self._snapshot
            self._snapshot = tuple(conversations)
            return previous

    async def rollback(self, token: Snapshot) -> None:
        """Restore a snapshot returned by ``optimistic_set``."""
        async with self._async_lock:
            self._snapshot = token
            logger.info("repository_rolled_back", conversations=len(token))

    async def replace_conversation(self, conversation: Conversation) -> Snapshot:
        """Swap one conversation in place, keeping list order."""
        async with self._async_lock:
            previous = self._snapshot
            self._snapshot = tuple(
                conversation if convo.id == conversation.id else convo
                for convo in previous
            )
            return previous

    async def patch_streaming_message(self, conversation_id: str, delta: StreamDelta) -> Optional[Message]:
        """Merge ``delta`` into the streaming placeholder of a conversation.

        Returns the updated message, or None when nothing is streaming (a late
        chunk after finalization or rollback).
        """
        async with self._async_lock:
            return self._update_placeholder(conversation_id, lambda msg: merge_delta(msg, delta))

    async def finalize_streaming_message(self, conversation_id: str, **fields) -> Optional[Message]:
        """Apply final fields (including ``timestamp``) to the streaming placeholder."""
        async with self._async_lock:
            message = self._update_placeholder(
                conversation_id, lambda msg: msg.model_copy(update=fields)
            )
            if message is None:
                logger.warning("placeholder_not_found", conversation_id=conversation_id)
            return message

    def _update_placeholder(self, conversation_id, update) -> Optional[Message]:
        for index, conversation in enumerate(self._snapshot):
            if conversation.id != conversation_id:
                continue
            for position, message in enumerate(conversation.messages):
                if not message.is_streaming:
                    continue
                updated = update(message)
                messages = list(conversation.messages)
                messages[position] = updated
                snapshot = list(self._snapshot)
                snapshot[index] = conversation.model_copy(update={"messages": messages})
                self._snapshot = tuple(snapshot)
                return updated
            return None
        return None
