"""Transport contract consumed by the session and streaming layers."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, List, Optional, Tuple

from ..domain.catalog import Tool
from ..domain.models import (
    GenerationResult,
    HistoryTurn,
    ImageResult,
    InlineImage,
    LocalFile,
    Part,
    RemoteFile,
    ResponseChunk,
)


@dataclass
class SessionConfig:
    """Per-session generation settings."""

    tools: Tuple[Tool, ...] = ()
    system_instruction: Optional[str] = None
    cached_content: Optional[str] = None


@dataclass
class SessionHandle:
    """A backend chat session tagged with what it was built from."""

    model: str  # logical model id
    backend_model: str
    cache_name: Optional[str] = None
    conversation_id: Optional[str] = None
    chat: Any = field(default=None, repr=False)


class Transport(ABC):
    """Abstract base class for generative backends."""

    @abstractmethod
    def configure(self, credential: str) -> None:
        """Bind the transport to a credential."""
        pass

    @abstractmethod
    async def verify(self, credential: str) -> bool:
        """Check a credential with one lightweight round trip."""
        pass

    @abstractmethod
    async def create_session(
        self, backend_model: str, session_config: SessionConfig, history: List[HistoryTurn]
    ) -> Any:
        """Create a backend chat object seeded with ``history``."""
        pass

    @abstractmethod
    def send_streaming(self, chat: Any, parts: List[Part]) -> AsyncIterator[ResponseChunk]:
        """Send a message and yield response chunks as they arrive."""
        pass

    @abstractmethod
    async def upload_file(self, file: LocalFile) -> RemoteFile:
        pass

    @abstractmethod
    async def get_file(self, name: str) -> RemoteFile:
        """Fetch the current processing state of an uploaded file."""
        pass

    @abstractmethod
    async def create_cache(
        self, backend_model: str, system_instruction: Optional[str], file: RemoteFile
    ) -> str:
        """Create a server-side context cache and return its name."""
        pass

    @abstractmethod
    async def delete_cache(self, name: str) -> None:
        pass

    @abstractmethod
    async def generate_once(
        self, backend_model: str, prompt: str, system_instruction: Optional[str] = None
    ) -> GenerationResult:
        """Single-shot text generation for titles and prompt rewriting."""
        pass

    @abstractmethod
    async def generate_image(
        self, backend_model: str, prompt: str, images: List[InlineImage], aspect_ratio: str
    ) -> ImageResult:
        pass
