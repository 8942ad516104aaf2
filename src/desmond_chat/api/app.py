"""
FastAPI Application Module

HTTP boundary for the Desmond chat client. Conversations, model selection and
message sending are delegated to ``ChatService``; this module only translates
requests and maps domain errors to status codes.

Key Features:
- Async request handling with FastAPI
- One streaming generation at a time, enforced by the service
- Structured logging and metrics
- CORS and OpenTelemetry support
"""

import base64
import binascii
import time
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from prometheus_client import CollectorRegistry, Counter, generate_latest
from pydantic import BaseModel
from structlog import get_logger

from .. import config
from ..domain.catalog import MODELS
from ..domain.errors import (
    ChatError,
    ConversationNotFound,
    CredentialMissing,
    CredentialRejected,
    FileProcessingError,
    StorageQuotaExceeded,
    StreamInProgress,
    TitleGenerationInProgress,
)
from ..domain.models import Conversation, LocalFile, ModelId, SendResult
from ..repositories.storage import LocalConversationStore
from ..services.chat import ChatService
from ..services.gemini import GeminiTransport

# Registry for isolated metric collection
CUSTOM_REGISTRY = CollectorRegistry()

REQUESTS = Counter("requests_total", "Total requests", registry=CUSTOM_REGISTRY)
ERRORS = Counter("errors_total", "Total failed requests", registry=CUSTOM_REGISTRY)
PROCESSING_TIME = Counter("processing_time_seconds", "Total processing time", registry=CUSTOM_REGISTRY)
MESSAGES = Counter("messages_total", "Messages sent to the model", registry=CUSTOM_REGISTRY)
STREAM_FAILURES = Counter("stream_failures_total", "Sends that ended in an error message", registry=CUSTOM_REGISTRY)

logger = get_logger()

# Checked in order, subclasses first
STATUS_CODES = (
    (CredentialMissing, 401),
    (CredentialRejected, 401),
    (ConversationNotFound, 404),
    (StreamInProgress, 409),
    (TitleGenerationInProgress, 409),
    (FileProcessingError, 422),
    (StorageQuotaExceeded, 507),
)


class FileUpload(BaseModel):
    name: str
    mime_type: str
    data: str  # base64


class MessageCreate(BaseModel):
    """Defines the structure for message creation requests"""
    text: str = ""
    files: List[FileUpload] = []
    aspect_ratio: str = config.DEFAULT_ASPECT_RATIO


class CredentialUpdate(BaseModel):
    credential: str


class ConversationCreate(BaseModel):
    model: Optional[ModelId] = None


class ModelChange(BaseModel):
    model: ModelId


class PromptOptimize(BaseModel):
    prompt: str


class OptimizedPrompt(BaseModel):
    prompt: str


class TitleResponse(BaseModel):
    title: str


class ModelInfo(BaseModel):
    id: ModelId
    name: str
    description: str


chat_service = ChatService(
    GeminiTransport(),
    LocalConversationStore(config.STORE_PATH, config.STORAGE_QUOTA_BYTES),
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Loads history and the stored credential, cleans up the cache on exit"""
    await chat_service.startup(config.STORED_CREDENTIAL)
    logger.info("application_startup_complete")

    yield

    await chat_service.shutdown()
    logger.info("application_shutdown_complete")


def get_chat_service() -> ChatService:
    """Returns the chat service instance"""
    return chat_service


def http_error(error: ChatError) -> HTTPException:
    for error_type, status_code in STATUS_CODES:
        if isinstance(error, error_type):
            return HTTPException(status_code=status_code, detail=str(error))
    return HTTPException(status_code=500, detail=str(error))


def decode_files(uploads: List[FileUpload]) -> List[LocalFile]:
    files = []
    for upload in uploads:
        try:
            data = base64.b64decode(upload.data, validate=True)
        except (binascii.Error, ValueError):
            raise HTTPException(status_code=422, detail=f"{upload.name} is not valid base64")
        files.append(LocalFile(name=upload.name, mime_type=upload.mime_type, data=data))
    return files


app = FastAPI(
    title="Desmond Chat API",
    description="Session and streaming coordination for Gemini conversations",
    version="0.1.0",
    lifespan=lifespan,
)

# Enable cross-origin requests
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Set up request tracing
FastAPIInstrumentor.instrument_app(app)


@app.middleware("http")
async def logging_middleware(request: Request, call_next):
    """Tracks request counts, failures and timing"""
    logger.info("request_started", path=request.url.path, method=request.method)
    REQUESTS.inc()
    started = time.perf_counter()
    try:
        response = await call_next(request)
        if response.status_code >= 500:
            ERRORS.inc()
        return response
    except Exception as e:
        ERRORS.inc()
        logger.error("request_failed", path=request.url.path, error=str(e))
        raise
    finally:
        PROCESSING_TIME.inc(time.perf_counter() - started)


@app.get("/models", response_model=List[ModelInfo])
async def list_models() -> List[ModelInfo]:
    """Lists the selectable models"""
    return [
        ModelInfo(id=model_id, name=spec.name, description=spec.description)
        for model_id, spec in MODELS.items()
    ]


@app.post("/credential", status_code=204)
async def set_credential(
    update: CredentialUpdate,
    service: ChatService = Depends(get_chat_service),
) -> Response:
    """Verifies and stores a new credential"""
    try:
        await service.set_credential(update.credential)
    except ChatError as e:
        raise http_error(e)
    return Response(status_code=204)


@app.get("/conversations", response_model=List[Conversation])
async def list_conversations(service: ChatService = Depends(get_chat_service)) -> List[Conversation]:
    """Gets all conversations, most recently used first"""
    return service.list_conversations()


@app.post("/conversations", response_model=Conversation)
async def create_conversation(
    body: Optional[ConversationCreate] = None,
    service: ChatService = Depends(get_chat_service),
) -> Conversation:
    """Starts a new conversation with a greeting"""
    try:
        return await service.new_chat(body.model if body else None)
    except ChatError as e:
        logger.error("create_conversation_error", error=str(e))
        raise http_error(e)


@app.get("/conversations/{conversation_id}", response_model=Conversation)
async def get_conversation(
    conversation_id: str,
    service: ChatService = Depends(get_chat_service),
) -> Conversation:
    """Retrieves a specific conversation by its ID"""
    try:
        return service.get_conversation(conversation_id)
    except ChatError as e:
        raise http_error(e)


@app.delete("/conversations/{conversation_id}", status_code=204)
async def delete_conversation(
    conversation_id: str,
    service: ChatService = Depends(get_chat_service),
) -> Response:
    try:
        await service.delete_conversation(conversation_id)
    except ChatError as e:
        logger.error("delete_conversation_error", conversation_id=conversation_id, error=str(e))
        raise http_error(e)
    return Response(status_code=204)


@app.post("/conversations/{conversation_id}/select", response_model=Conversation)
async def select_conversation(
    conversation_id: str,
    service: ChatService = Depends(get_chat_service),
) -> Conversation:
    """Makes a conversation active and restores its session"""
    try:
        return await service.select_conversation(conversation_id)
    except ChatError as e:
        raise http_error(e)


@app.put("/conversations/{conversation_id}/model", response_model=Conversation)
async def change_model(
    conversation_id: str,
    change: ModelChange,
    service: ChatService = Depends(get_chat_service),
) -> Conversation:
    """Switches the model of a conversation and restarts its session"""
    try:
        if service.active_conversation_id != conversation_id:
            await service.select_conversation(conversation_id)
        return await service.change_model(change.model)
    except ChatError as e:
        logger.error("change_model_error", conversation_id=conversation_id, error=str(e))
        raise http_error(e)


@app.post("/conversations/{conversation_id}/title", response_model=TitleResponse)
async def regenerate_title(
    conversation_id: str,
    service: ChatService = Depends(get_chat_service),
) -> TitleResponse:
    try:
        return TitleResponse(title=await service.regenerate_title(conversation_id))
    except ChatError as e:
        raise http_error(e)


@app.post("/conversations/{conversation_id}/messages", response_model=SendResult)
async def create_message(
    conversation_id: str,
    message: MessageCreate,
    service: ChatService = Depends(get_chat_service),
) -> SendResult:
    """
    Sends a user turn and returns the finished AI message.
    Upstream failures come back as an error message on the result.
    """
    files = decode_files(message.files)
    try:
        result = await service.send_message(
            message.text, files, conversation_id=conversation_id, aspect_ratio=message.aspect_ratio
        )
    except ChatError as e:
        logger.warning("create_message_rejected", conversation_id=conversation_id, error=str(e))
        raise http_error(e)

    MESSAGES.inc()
    if result.error:
        STREAM_FAILURES.inc()
    return result


@app.post("/prompts/optimize", response_model=OptimizedPrompt)
async def optimize_prompt(
    body: PromptOptimize,
    service: ChatService = Depends(get_chat_service),
) -> OptimizedPrompt:
    """Rewrites a prompt for clarity"""
    try:
        return OptimizedPrompt(prompt=await service.optimize_prompt(body.prompt))
    except ChatError as e:
        raise http_error(e)


@app.get("/metrics")
async def metrics():
    """Provides Prometheus metrics for system monitoring"""
    return Response(generate_latest(CUSTOM_REGISTRY), media_type="text/plain")
