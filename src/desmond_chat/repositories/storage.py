"""JSON file store for the conversation list."""

import errno
import json
import os
from pathlib import Path
from typing import Any, List, Optional

import structlog
from pydantic import ValidationError

from ..domain.catalog import coerce_model_id
from ..domain.errors import StorageError, StorageQuotaExceeded
from ..domain.models import Conversation
from .base import ConversationStore

logger = structlog.get_logger()

_QUOTA_ERRNOS = {errno.ENOSPC, getattr(errno, "EDQUOT", errno.ENOSPC)}


class LocalConversationStore(ConversationStore):
    """Keeps the whole conversation list in one JSON file.

    Generated images are never written. Saving an empty list removes the
    file, and a file that cannot be parsed is erased on load.
    """

    def __init__(self, path: Path, quota_bytes: Optional[int] = None) -> None:
        self.path = path
        self.quota_bytes = quota_bytes
        logger.info("store_initialized", path=str(path), quota_bytes=quota_bytes)

    async def load(self) -> List[Conversation]:
        """Read the persisted conversations, discarding a corrupt payload."""
        if not self.path.exists():
            return []

        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
            if not isinstance(raw, list):
                raise ValueError("chat history is not a list")
            conversations = [self._coerce(item) for item in raw]
        except (OSError, ValueError, TypeError, ValidationError) as e:
            logger.error("chat_history_corrupt", path=str(self.path), error=str(e))
            try:
                self._remove()
            except OSError as remove_error:
                logger.error("chat_history_remove_failed", path=str(self.path), error=str(remove_error))
            return []

        logger.info("chat_history_loaded", conversations=len(conversations))
        return conversations

    async def save(self, conversations: List[Conversation]) -> List[Conversation]:
        """Write the durable projection of ``conversations``."""
        if not conversations:
            try:
                self._remove()
            except OSError as e:
                logger.error("chat_history_remove_failed", error=str(e))
                raise StorageError("Failed to clear chat history.") from e
            return conversations

        payload = json.dumps(
            [self._durable(convo) for convo in conversations],
            ensure_ascii=False,
        )
        encoded = payload.encode("utf-8")
        if self.quota_bytes is not None and len(encoded) > self.quota_bytes:
            logger.warning("storage_quota_exceeded", size=len(encoded), quota_bytes=self.quota_bytes)
            raise StorageQuotaExceeded()

        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_bytes(encoded)
            os.replace(tmp_path, self.path)
        except OSError as e:
            logger.error("chat_history_save_failed", path=str(self.path), error=str(e))
            try:
                tmp_path.unlink(missing_ok=True)
            except OSError as cleanup_error:
                logger.warning("chat_history_tmp_cleanup_failed", path=str(tmp_path), error=str(cleanup_error))
            if e.errno in _QUOTA_ERRNOS:
                raise StorageQuotaExceeded() from e
            raise StorageError() from e

        logger.debug("chat_history_saved", conversations=len(conversations), size=len(encoded))
        return conversations

    def _remove(self) -> None:
        if self.path.exists():
            self.path.unlink()

    @staticmethod
    def _durable(conversation: Conversation) -> dict:
        data = conversation.model_dump(mode="json", exclude_none=True)
        for message in data.get("messages", []):
            message.pop("generated_images", None)
        return data

    @staticmethod
    def _coerce(item: Any) -> Conversation:
        if not isinstance(item, dict):
            raise TypeError("conversation record is not an object")
        return Conversation(
            **{
                **item,
                "id": item.get("id") or Conversation().id,
                "title": item.get("title") or "Untitled Chat",
                "model": coerce_model_id(item.get("model")),
                "messages": item.get("messages") or [],
            }
        )
