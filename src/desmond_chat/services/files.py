"""File validation and upload handling."""

import asyncio
import base64
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional

import structlog

from .. import config
from ..domain.errors import FileProcessingError
from ..domain.models import Attachment, InlineImage, LocalFile, Part, RemoteFile
from .transport import Transport

logger = structlog.get_logger()

MAX_FILE_SIZE = 50 * 1024 * 1024  # 50MB
MAX_INLINE_SIZE = 19 * 1024 * 1024  # larger files go through the Files API
ALLOWED_FILE_TYPES = ("image/", "application/pdf")
CACHEABLE_DOCUMENT_TYPE = "application/pdf"

StatusCallback = Callable[[str], Awaitable[None]]


@dataclass
class ValidationResult:
    valid: List[LocalFile] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)


def validate_file(file: LocalFile) -> Optional[str]:
    """Return a human-readable rejection reason, or None if the file is acceptable."""
    if file.size > MAX_FILE_SIZE:
        return f"{file.name} exceeds 50MB limit"
    if not file.mime_type.startswith(ALLOWED_FILE_TYPES):
        return f"{file.name} is not an allowed file type (only images and PDFs are supported)"
    return None


def validate_files(files: List[LocalFile]) -> ValidationResult:
    """Split a batch into acceptable files and per-file error messages."""
    result = ValidationResult()
    for file in files:
        error = validate_file(file)
        if error:
            result.errors.append(error)
        else:
            result.valid.append(file)
    if result.errors:
        logger.warning("files_rejected", rejected=len(result.errors), accepted=len(result.valid))
    return result


def is_cacheable_document(files: List[LocalFile]) -> bool:
    """True for a single oversized PDF, which is sent through a context cache."""
    return (
        len(files) == 1
        and files[0].size > MAX_INLINE_SIZE
        and files[0].mime_type == CACHEABLE_DOCUMENT_TYPE
    )


def to_attachment(file: LocalFile) -> Attachment:
    # Payloads are not kept on the message record
    return Attachment(name=file.name, mime_type=file.mime_type)


def to_inline_part(file: LocalFile) -> Part:
    return Part(inline_data=base64.b64encode(file.data).decode("ascii"), mime_type=file.mime_type)


def to_inline_image(file: LocalFile) -> InlineImage:
    return InlineImage(base64=base64.b64encode(file.data).decode("ascii"), mime_type=file.mime_type)


async def upload_and_wait(
    transport: Transport,
    file: LocalFile,
    on_status: Optional[StatusCallback] = None,
    poll_interval: float = config.POLL_INTERVAL,
    status_prefix: Optional[str] = None,
) -> RemoteFile:
    """Upload a file and poll until the backend finishes processing it."""
    label = status_prefix or file.name

    if on_status:
        await on_status(f"Uploading {label}...")
    uploaded = await transport.upload_file(file)
    if on_status:
        await on_status(f"Processing {label}...")

    remote = await transport.get_file(uploaded.name)
    while remote.state == "PROCESSING":
        await asyncio.sleep(poll_interval)
        remote = await transport.get_file(remote.name)

    if remote.state == "FAILED":
        logger.error("file_processing_failed", file_name=file.name, remote_name=remote.name)
        raise FileProcessingError(file.name)

    logger.info("file_processed", file_name=file.name, remote_name=remote.name, uri=remote.uri)
    return remote


async def build_inline_parts(
    transport: Transport,
    files: List[LocalFile],
    on_status: Optional[StatusCallback] = None,
    poll_interval: float = config.POLL_INTERVAL,
) -> List[Part]:
    """Attach small files inline and large files as uploaded-file references."""
    parts: List[Part] = []
    for file in files:
        if file.size > MAX_INLINE_SIZE:
            remote = await upload_and_wait(transport, file, on_status, poll_interval)
            if on_status:
                await on_status(f"{file.name} processed.")
            parts.append(Part(file_uri=remote.uri, mime_type=remote.mime_type or file.mime_type))
        else:
            parts.append(to_inline_part(file))
    return parts
