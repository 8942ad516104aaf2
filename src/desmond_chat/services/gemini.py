"""Gemini transport built on the google-genai SDK."""

import asyncio
import base64
import io
from typing import Any, AsyncIterator, List, Optional

import structlog
from google import genai
from google.genai import types

from .. import config
from ..domain.catalog import UTILITY_MODEL, Tool
from ..domain.errors import CredentialMissing
from ..domain.models import (
    ChunkPart,
    GenerationResult,
    GroundingRef,
    HistoryTurn,
    ImageResult,
    InlineImage,
    LocalFile,
    Part,
    RemoteFile,
    ResponseChunk,
    UsageMetadata,
)
from .transport import SessionConfig, Transport

logger = structlog.get_logger()

_HARM_CATEGORIES = (
    types.HarmCategory.HARM_CATEGORY_HARASSMENT,
    types.HarmCategory.HARM_CATEGORY_HATE_SPEECH,
    types.HarmCategory.HARM_CATEGORY_SEXUALLY_EXPLICIT,
    types.HarmCategory.HARM_CATEGORY_DANGEROUS_CONTENT,
)

CHAT_SAFETY = [
    types.SafetySetting(category=category, threshold=types.HarmBlockThreshold.BLOCK_MEDIUM_AND_ABOVE)
    for category in _HARM_CATEGORIES
]

UTILITY_SAFETY = [
    types.SafetySetting(category=category, threshold=types.HarmBlockThreshold.BLOCK_ONLY_HIGH)
    for category in _HARM_CATEGORIES
]

_USAGE_FIELDS = tuple(UsageMetadata.model_fields)


def build_tool(tool: Tool) -> types.Tool:
    if tool == Tool.GOOGLE_SEARCH:
        return types.Tool(google_search=types.GoogleSearch())
    if tool == Tool.URL_CONTEXT:
        return types.Tool(url_context=types.UrlContext())
    if tool == Tool.CODE_EXECUTION:
        return types.Tool(code_execution=types.ToolCodeExecution())
    return types.Tool(google_maps=types.GoogleMaps())


def build_chat_config(session_config: SessionConfig) -> types.GenerateContentConfig:
    """Translate a session config into SDK generation settings.

    Cached content already carries the system instruction, and the API refuses
    tools alongside it, so a cached session sends neither.
    """
    chat_config = types.GenerateContentConfig(
        thinking_config=types.ThinkingConfig(thinking_budget=-1, include_thoughts=True),
        safety_settings=CHAT_SAFETY,
    )
    if session_config.cached_content:
        chat_config.cached_content = session_config.cached_content
        return chat_config

    chat_config.tools = [build_tool(tool) for tool in session_config.tools] or None
    if session_config.system_instruction:
        chat_config.system_instruction = session_config.system_instruction
    return chat_config


def to_sdk_part(part: Part) -> types.Part:
    if part.inline_data is not None:
        return types.Part.from_bytes(data=base64.b64decode(part.inline_data), mime_type=part.mime_type)
    if part.file_uri is not None:
        return types.Part.from_uri(file_uri=part.file_uri, mime_type=part.mime_type)
    return types.Part(text=part.text or "")


def to_usage(usage: Any) -> Optional[UsageMetadata]:
    if usage is None:
        return None
    return UsageMetadata(**{name: getattr(usage, name, None) for name in _USAGE_FIELDS})


def to_remote_file(file: types.File) -> RemoteFile:
    state = file.state.name if file.state is not None else "PROCESSING"
    if state == "STATE_UNSPECIFIED":
        state = "PROCESSING"
    return RemoteFile(name=file.name, uri=file.uri, mime_type=file.mime_type, state=state)


def to_chunk(response: types.GenerateContentResponse) -> ResponseChunk:
    """Flatten one streamed SDK response into a transport-neutral chunk."""
    chunk = ResponseChunk(usage_metadata=to_usage(response.usage_metadata))
    if not response.candidates:
        return chunk

    candidate = response.candidates[0]
    content_parts = candidate.content.parts if candidate.content and candidate.content.parts else []
    for part in content_parts:
        image = None
        if part.inline_data and (part.inline_data.mime_type or "").startswith("image/"):
            image = InlineImage(
                base64=base64.b64encode(part.inline_data.data or b"").decode("ascii"),
                mime_type=part.inline_data.mime_type,
            )
        chunk.parts.append(
            ChunkPart(
                text=part.text,
                thought=bool(part.thought),
                executable_code=part.executable_code.code if part.executable_code else None,
                code_execution_output=(
                    part.code_execution_result.output if part.code_execution_result else None
                ),
                inline_image=image,
            )
        )

    url_context = candidate.url_context_metadata
    if url_context and url_context.url_metadata:
        chunk.retrieved_urls = [meta.retrieved_url for meta in url_context.url_metadata if meta.retrieved_url]

    grounding = candidate.grounding_metadata
    if grounding and grounding.grounding_chunks:
        for ground in grounding.grounding_chunks:
            maps = getattr(ground, "maps", None)
            if maps is not None:
                chunk.grounding.append(
                    GroundingRef(kind="maps", uri=maps.uri, title=maps.title, place_id=maps.place_id)
                )
            elif ground.web is not None:
                chunk.grounding.append(GroundingRef(kind="web", uri=ground.web.uri, title=ground.web.title))
    return chunk


class GeminiTransport(Transport):
    """Transport backed by Google's Gemini API."""

    def __init__(self, credential: Optional[str] = None, verify_timeout: float = config.VERIFY_TIMEOUT) -> None:
        self._client: Optional[genai.Client] = None
        self.verify_timeout = verify_timeout
        if credential:
            self.configure(credential)

    def configure(self, credential: str) -> None:
        self._client = genai.Client(api_key=credential)
        logger.info("gemini_client_configured")

    @property
    def client(self) -> genai.Client:
        if self._client is None:
            raise CredentialMissing("AI client not initialized. Please provide a License Key in the settings.")
        return self._client

    async def verify(self, credential: str) -> bool:
        if not credential or not credential.strip():
            return False

        candidate = genai.Client(api_key=credential.strip())
        try:
            await asyncio.wait_for(
                candidate.aio.models.generate_content(model=UTILITY_MODEL, contents="test"),
                timeout=self.verify_timeout,
            )
            return True
        except asyncio.TimeoutError:
            logger.warning("credential_verification_timeout", timeout=self.verify_timeout)
            return False
        except Exception as e:
            logger.error("credential_verification_failed", error=str(e))
            return False

    async def create_session(
        self, backend_model: str, session_config: SessionConfig, history: List[HistoryTurn]
    ) -> Any:
        contents = [
            types.Content(role=turn.role, parts=[types.Part(text=turn.text)])
            for turn in history
        ]
        return self.client.aio.chats.create(
            model=backend_model,
            config=build_chat_config(session_config),
            history=contents,
        )

    async def send_streaming(self, chat: Any, parts: List[Part]) -> AsyncIterator[ResponseChunk]:
        stream = await chat.send_message_stream(message=[to_sdk_part(part) for part in parts])
        async for response in stream:
            yield to_chunk(response)

    async def upload_file(self, file: LocalFile) -> RemoteFile:
        uploaded = await self.client.aio.files.upload(
            file=io.BytesIO(file.data),
            config=types.UploadFileConfig(mime_type=file.mime_type, display_name=file.name),
        )
        return to_remote_file(uploaded)

    async def get_file(self, name: str) -> RemoteFile:
        return to_remote_file(await self.client.aio.files.get(name=name))

    async def create_cache(
        self, backend_model: str, system_instruction: Optional[str], file: RemoteFile
    ) -> str:
        cache = await self.client.aio.caches.create(
            model=backend_model,
            config=types.CreateCachedContentConfig(
                system_instruction=system_instruction,
                contents=[
                    types.Content(
                        role="user",
                        parts=[types.Part.from_uri(file_uri=file.uri, mime_type=file.mime_type)],
                    )
                ],
            ),
        )
        logger.info("cache_created", cache_name=cache.name, model=backend_model)
        return cache.name

    async def delete_cache(self, name: str) -> None:
        await self.client.aio.caches.delete(name=name)

    async def generate_once(
        self, backend_model: str, prompt: str, system_instruction: Optional[str] = None
    ) -> GenerationResult:
        response = await self.client.aio.models.generate_content(
            model=backend_model,
            contents=prompt,
            config=types.GenerateContentConfig(
                system_instruction=system_instruction,
                safety_settings=UTILITY_SAFETY,
            ),
        )
        return GenerationResult(text=response.text or "", usage_metadata=to_usage(response.usage_metadata))

    async def generate_image(
        self, backend_model: str, prompt: str, images: List[InlineImage], aspect_ratio: str
    ) -> ImageResult:
        parts = [
            types.Part.from_bytes(data=base64.b64decode(image.base64), mime_type=image.mime_type)
            for image in images
        ]
        parts.append(types.Part(text=prompt))
        response = await self.client.aio.models.generate_content(
            model=backend_model,
            contents=parts,
            config=types.GenerateContentConfig(
                image_config=types.ImageConfig(aspect_ratio=aspect_ratio),
            ),
        )

        generated = []
        if response.candidates and response.candidates[0].content:
            for part in response.candidates[0].content.parts or []:
                if part.inline_data:
                    generated.append(
                        InlineImage(
                            base64=base64.b64encode(part.inline_data.data or b"").decode("ascii"),
                            mime_type=part.inline_data.mime_type or "image/png",
                        )
                    )
        return ImageResult(images=generated, usage_metadata=to_usage(response.usage_metadata))
