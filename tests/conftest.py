"""Shared fixtures: an in-memory transport that records every call."""

import asyncio
from dataclasses import dataclass, field
from typing import Any, List, Optional

import pytest

from desmond_chat.domain.models import (
    ChunkPart,
    Conversation,
    GenerationResult,
    GroundingRef,
    HistoryTurn,
    ImageResult,
    InlineImage,
    LocalFile,
    Message,
    ModelId,
    RemoteFile,
    ResponseChunk,
    UsageMetadata,
)
from desmond_chat.repositories.memory import ConversationRepository
from desmond_chat.repositories.storage import LocalConversationStore
from desmond_chat.services.session import SessionManager
from desmond_chat.services.streaming import StreamingCoordinator
from desmond_chat.services.titles import TitleService
from desmond_chat.services.transport import SessionConfig, Transport

VALID_KEY = "valid-key"


@dataclass
class FakeChat:
    backend_model: str
    session_config: SessionConfig
    history: List[HistoryTurn] = field(default_factory=list)


class FakeTransport(Transport):
    """Scripted transport; ``calls`` keeps (name, details) in call order."""

    def __init__(self) -> None:
        self.calls: List[tuple] = []
        self.credential: Optional[str] = None
        self.valid_credentials = {VALID_KEY}
        self.chunks: List[ResponseChunk] = []
        self.stream_error: Optional[Exception] = None
        self.stream_started = asyncio.Event()
        self.release: Optional[asyncio.Event] = None
        self.file_states: List[str] = ["ACTIVE"]
        self.delete_error: Optional[Exception] = None
        self.generated_text = "Generated Title"
        self.generate_error: Optional[Exception] = None
        self.generate_gate: Optional[asyncio.Event] = None
        self.image_result = ImageResult(images=[InlineImage(base64="aW1hZ2U=")])
        self._caches = 0

    def names(self) -> List[str]:
        return [name for name, _ in self.calls]

    def calls_named(self, name: str) -> List[Any]:
        return [details for call, details in self.calls if call == name]

    def hold(self) -> asyncio.Event:
        """Pause streaming after the request is sent until the event is set."""
        self.release = asyncio.Event()
        return self.release

    def configure(self, credential: str) -> None:
        self.calls.append(("configure", credential))
        self.credential = credential

    async def verify(self, credential: str) -> bool:
        self.calls.append(("verify", credential))
        return credential in self.valid_credentials

    async def create_session(self, backend_model, session_config, history):
        self.calls.append(("create_session", {
            "backend_model": backend_model,
            "config": session_config,
            "history": list(history),
        }))
        return FakeChat(backend_model, session_config, list(history))

    async def send_streaming(self, chat, parts):
        self.calls.append(("send_streaming", {"chat": chat, "parts": list(parts)}))
        self.stream_started.set()
        if self.release is not None:
            await self.release.wait()
        for chunk in self.chunks:
            yield chunk
        if self.stream_error is not None:
            raise self.stream_error

    async def upload_file(self, file: LocalFile) -> RemoteFile:
        self.calls.append(("upload_file", file.name))
        return RemoteFile(
            name=f"files/{file.name}",
            uri=f"https://files.example/{file.name}",
            mime_type=file.mime_type,
        )

    async def get_file(self, name: str) -> RemoteFile:
        self.calls.append(("get_file", name))
        state = self.file_states.pop(0) if len(self.file_states) > 1 else self.file_states[0]
        return RemoteFile(
            name=name,
            uri=f"https://files.example/{name.split('/')[-1]}",
            mime_type="application/pdf",
            state=state,
        )

    async def create_cache(self, backend_model, system_instruction, file):
        self._caches += 1
        name = f"cachedContents/{self._caches}"
        self.calls.append(("create_cache", {
            "backend_model": backend_model,
            "system_instruction": system_instruction,
            "file": file,
            "name": name,
        }))
        return name

    async def delete_cache(self, name: str) -> None:
        self.calls.append(("delete_cache", name))
        if self.delete_error is not None:
            raise self.delete_error

    async def generate_once(self, backend_model, prompt, system_instruction=None):
        self.calls.append(("generate_once", {
            "backend_model": backend_model,
            "prompt": prompt,
            "system_instruction": system_instruction,
        }))
        if self.generate_gate is not None:
            await self.generate_gate.wait()
        if self.generate_error is not None:
            raise self.generate_error
        return GenerationResult(text=self.generated_text)

    async def generate_image(self, backend_model, prompt, images, aspect_ratio):
        self.calls.append(("generate_image", {
            "backend_model": backend_model,
            "prompt": prompt,
            "images": list(images),
            "aspect_ratio": aspect_ratio,
        }))
        return self.image_result


def text_chunk(text: str = None, thought: str = None, usage: UsageMetadata = None) -> ResponseChunk:
    parts = []
    if thought:
        parts.append(ChunkPart(text=thought, thought=True))
    if text:
        parts.append(ChunkPart(text=text))
    return ResponseChunk(parts=parts, usage_metadata=usage)


def web_chunk(*refs) -> ResponseChunk:
    return ResponseChunk(grounding=[GroundingRef(kind="web", uri=uri, title=title) for uri, title in refs])


def make_conversation(model: ModelId = ModelId.FLASH, messages: List[Message] = None, **kwargs) -> Conversation:
    return Conversation(model=model, messages=messages or [], **kwargs)


def exchange(user_text: str, ai_text: str) -> List[Message]:
    user = Message(sender="user", text=user_text, timestamp="Mon, Jan 01, 2024, 10:00:00 AM")
    ai = Message(id=f"{user.id}-ai", sender="ai", text=ai_text, timestamp="Mon, Jan 01, 2024, 10:00:05 AM")
    return [user, ai]


def streaming_messages(conversation: Conversation) -> List[Message]:
    return [msg for msg in conversation.messages if msg.is_streaming]


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def store(tmp_path):
    return LocalConversationStore(tmp_path / "chat_history.json")


@pytest.fixture
def repository():
    return ConversationRepository()


@pytest.fixture
def sessions(transport):
    return SessionManager(transport)


@pytest.fixture
def credential():
    """Mutable holder so tests can clear the credential."""
    return {"value": VALID_KEY}


@pytest.fixture
def coordinator(repository, store, sessions, transport, credential):
    return StreamingCoordinator(
        repository=repository,
        store=store,
        sessions=sessions,
        transport=transport,
        credential=lambda: credential["value"],
        titles=TitleService(transport),
        on_credential_rejected=lambda: credential.update(value=None),
        poll_interval=0,
    )
