"""Domain models for the chat application."""

from enum import Enum
from typing import List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field


class ModelId(str, Enum):
    """Logical model identifiers a conversation can select."""

    PRO = "gemini-2.5-pro"
    FLASH = "gemini-2.5-flash"
    FLASH_LITE = "gemini-2.5-flash-lite"
    MAPS = "gemini-2.5-flash-lite-maps"
    IMAGE = "gemini-2.5-flash-image"


class UsageMetadata(BaseModel):
    """Token accounting reported by the backend."""

    prompt_token_count: Optional[int] = None
    candidates_token_count: Optional[int] = None
    total_token_count: Optional[int] = None
    thoughts_token_count: Optional[int] = None
    cached_content_token_count: Optional[int] = None
    tool_use_prompt_token_count: Optional[int] = None


class Attachment(BaseModel):
    """File descriptor stored on a user message."""

    name: str
    mime_type: str
    base64: str = ""


class InlineImage(BaseModel):
    base64: str
    mime_type: str = "image/png"


class Source(BaseModel):
    """Citation attached to an AI message."""

    uri: str
    title: str
    place_id: Optional[str] = None


class Message(BaseModel):
    """Message model.

    An empty ``timestamp`` marks an AI message that is still streaming.
    """

    id: str = Field(default_factory=lambda: uuid4().hex)
    sender: str = "user"  # "user" or "ai"
    text: str = ""
    timestamp: str = ""
    full_text: Optional[str] = None
    thoughts: Optional[str] = None
    thinking_time: Optional[float] = None
    files: Optional[List[Attachment]] = None
    sources: Optional[List[Source]] = None
    suggestions: Optional[List[str]] = None
    usage_metadata: Optional[UsageMetadata] = None
    executable_code: Optional[str] = None
    code_execution_result: Optional[str] = None
    code_execution_images: Optional[List[InlineImage]] = None
    generated_images: Optional[List[InlineImage]] = None

    @property
    def is_streaming(self) -> bool:
        return self.sender == "ai" and not self.timestamp

    @property
    def is_greeting(self) -> bool:
        return self.id.startswith("initial-")


class Conversation(BaseModel):
    """Conversation model."""

    id: str = Field(default_factory=lambda: uuid4().hex)
    title: str = "New Chat"
    model: ModelId = ModelId.PRO
    messages: List[Message] = []


class StreamDelta(BaseModel):
    """Additive update folded into the streaming placeholder."""

    text: Optional[str] = None
    thought: Optional[str] = None
    sources: Optional[List[Source]] = None
    executable_code: Optional[str] = None
    code_execution_result: Optional[str] = None
    code_execution_images: Optional[List[InlineImage]] = None
    generated_images: Optional[List[InlineImage]] = None
    usage_metadata: Optional[UsageMetadata] = None


class HistoryTurn(BaseModel):
    """One replayed turn of chat history."""

    role: str  # "user" or "model"
    text: str


class LocalFile(BaseModel):
    """A file handed to the client for sending."""

    name: str
    mime_type: str
    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)


class RemoteFile(BaseModel):
    """Backend view of an uploaded file."""

    name: str
    uri: Optional[str] = None
    mime_type: Optional[str] = None
    state: str = "PROCESSING"  # PROCESSING | ACTIVE | FAILED


class Part(BaseModel):
    """One part of an outbound message payload."""

    text: Optional[str] = None
    inline_data: Optional[str] = None  # base64
    file_uri: Optional[str] = None
    mime_type: Optional[str] = None


class ChunkPart(BaseModel):
    """One part of a streamed response chunk."""

    text: Optional[str] = None
    thought: bool = False
    executable_code: Optional[str] = None
    code_execution_output: Optional[str] = None
    inline_image: Optional[InlineImage] = None


class GroundingRef(BaseModel):
    kind: str = "web"  # "web" or "maps"
    uri: Optional[str] = None
    title: Optional[str] = None
    place_id: Optional[str] = None


class ResponseChunk(BaseModel):
    """Transport-neutral view of one streamed response chunk."""

    parts: List[ChunkPart] = []
    retrieved_urls: List[str] = []
    grounding: List[GroundingRef] = []
    usage_metadata: Optional[UsageMetadata] = None


class GenerationResult(BaseModel):
    text: str = ""
    usage_metadata: Optional[UsageMetadata] = None


class ImageResult(BaseModel):
    images: List[InlineImage] = []
    usage_metadata: Optional[UsageMetadata] = None


class SendResult(BaseModel):
    """Outcome of one send, as handed back to the boundary."""

    conversation_id: str
    message: Optional[Message] = None
    error: Optional[str] = None
    rejected_files: List[str] = []
    storage_error: Optional[str] = None
