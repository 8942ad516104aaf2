"""Single-shot generation helpers: chat titles and prompt rewriting."""

from typing import List

import structlog

from ..domain.catalog import UTILITY_MODEL
from ..domain.models import Message
from ..prompts import (
    PROMPT_OPTIMIZATION_INSTRUCTION,
    TITLE_FROM_HISTORY_INSTRUCTION,
    TITLE_INSTRUCTION,
)
from .transport import Transport

logger = structlog.get_logger()

UNTITLED = "Untitled Chat"
FILES_ONLY_TITLE = "Chat with Files"


def _first_words(text: str, count: int = 5) -> str:
    return " ".join(text.split(" ")[:count]).strip()


def _clean_title(text: str) -> str:
    return text.strip().replace('"', "")


def format_history_snippet(messages: List[Message], limit: int = 4) -> str:
    """Render the opening turns of a conversation for title generation."""
    lines = []
    for msg in messages:
        if msg.is_greeting or not ((msg.text and msg.text.strip()) or msg.files):
            continue
        text_part = msg.text.strip() if msg.text else ""
        file_part = f"[{len(msg.files)} file(s) attached]" if msg.files else ""
        content = " ".join(part for part in (text_part, file_part) if part)
        speaker = "User" if msg.sender == "user" else "AI"
        lines.append(f"{speaker}: {content}")
        if len(lines) == limit:
            break
    return "\n\n".join(lines)


class TitleService:
    """Titles and prompt rewrites on the lightweight backend model."""

    def __init__(self, transport: Transport) -> None:
        self.transport = transport

    async def generate_chat_title(self, prompt: str) -> str:
        """Short title from the first prompt of a conversation."""
        try:
            result = await self.transport.generate_once(UTILITY_MODEL, prompt, TITLE_INSTRUCTION)
            title = _clean_title(result.text)
            if title:
                return title
        except Exception as e:
            logger.error("title_generation_error", error=str(e))
        return _first_words(prompt) or UNTITLED

    async def generate_title_from_history(self, messages: List[Message]) -> str:
        """Short title from the opening turns of a conversation."""
        snippet = format_history_snippet(messages)
        if not snippet:
            return UNTITLED

        try:
            result = await self.transport.generate_once(UTILITY_MODEL, snippet, TITLE_FROM_HISTORY_INSTRUCTION)
            title = _clean_title(result.text)
            if title:
                return title
        except Exception as e:
            logger.error("title_from_history_error", error=str(e))

        first_user = next((msg for msg in messages if msg.sender == "user"), None)
        if first_user and first_user.text:
            return _first_words(first_user.text) or UNTITLED
        return UNTITLED

    async def optimize_prompt(self, prompt: str) -> str:
        """Rewrite a prompt for clarity; the original is returned on failure."""
        try:
            result = await self.transport.generate_once(
                UTILITY_MODEL,
                f"Rewrite the following user prompt to be more effective for an AI assistant:\n\n---\n\n{prompt}",
                PROMPT_OPTIMIZATION_INSTRUCTION,
            )
            return result.text.strip() or prompt
        except Exception as e:
            logger.error("prompt_optimization_error", error=str(e))
            return prompt
