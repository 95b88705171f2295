"""Storage utility functions: key sanitizing, content types, hashing, locking."""
import hashlib
import inspect
import io
import posixpath
from contextlib import asynccontextmanager
from os.path import splitext
from pathlib import PureWindowsPath
from typing import Any, AsyncIterator, Callable

import anyio
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from core.logging_config import get_logger
from .exceptions import InvalidKeyError, ValidationError
from .models import DEFAULT_CONTENT_TYPE

logger = get_logger(__name__)

CHUNK_SIZE = 64 * 1024

# Reserved for in-flight local writes; no key segment may start with it
TMP_PREFIX = ".tmp-"

_CONTENT_TYPES = {
    ".html": "text/html",
    ".htm": "text/html",
    ".css": "text/css",
    ".js": "application/javascript",
    ".json": "application/json",
    ".xml": "application/xml",
    ".txt": "text/plain",
    ".md": "text/markdown",
    ".pdf": "application/pdf",
    ".zip": "application/zip",
    ".tar": "application/x-tar",
    ".gz": "application/gzip",
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".gif": "image/gif",
    ".svg": "image/svg+xml",
    ".webp": "image/webp",
    ".ico": "image/x-icon",
    ".mp3": "audio/mpeg",
    ".mp4": "video/mp4",
    ".webm": "video/webm",
    ".wasm": "application/wasm",
}


def sanitize_key(key: str) -> str:
    """Normalize an object key into a safe relative path.

    Backslashes are treated as separators. Segments such as ``a/../b`` are
    collapsed; anything that still points above the root is rejected, as is
    any segment starting with the reserved temp-file prefix.

    Args:
        key: Raw object key

    Returns:
        Normalized forward-slash key

    Raises:
        InvalidKeyError: If the key is empty, absolute, or escapes the root
    """
    if not isinstance(key, str) or not key:
        raise InvalidKeyError("object key is required")
    if "\x00" in key:
        raise InvalidKeyError(f"invalid key path: {key!r}")

    normalized = key.replace("\\", "/")
    if normalized.startswith("/") or PureWindowsPath(key).drive:
        raise InvalidKeyError(f"invalid key path: {key!r} is absolute")

    clean = posixpath.normpath(normalized)
    if clean in (".", "..") or clean.startswith("../"):
        raise InvalidKeyError(f"invalid key path: {key!r} escapes the storage root")
    if any(segment.startswith(TMP_PREFIX) for segment in clean.split("/")):
        raise InvalidKeyError(f"invalid key path: {key!r} uses the reserved prefix {TMP_PREFIX!r}")
    return clean


def validate_prefix(prefix: str) -> str:
    """Check a listing prefix; prefixes filter keys and are not normalized."""
    if prefix and ".." in prefix.replace("\\", "/").split("/"):
        raise InvalidKeyError(f"invalid prefix: {prefix!r}")
    return prefix


def detect_content_type(filename: str) -> str:
    """Guess content type from a file extension.

    Args:
        filename: File name, path or object key

    Returns:
        MIME type string, ``application/octet-stream`` when unknown
    """
    _, ext = splitext(filename)
    return _CONTENT_TYPES.get(ext.lower(), DEFAULT_CONTENT_TYPE)


def resolve_content_type(key: str, content_type: str | None, guess: bool = False) -> str:
    if content_type:
        return content_type
    if guess:
        return detect_content_type(key)
    return DEFAULT_CONTENT_TYPE


def new_hasher() -> "hashlib._Hash":
    """MD5 hasher used for etags (not for security)."""
    return hashlib.md5(usedforsecurity=False)


def calculate_etag(data: bytes) -> str:
    hasher = new_hasher()
    hasher.update(data)
    return hasher.hexdigest()


def ensure_body(body: Any) -> Any:
    """Validate an upload body and return a readable stream for it.

    Raises:
        ValidationError: If the body is missing or not readable
    """
    if body is None:
        raise ValidationError("invalid input: body is required")
    if isinstance(body, (bytes, bytearray, memoryview)):
        return io.BytesIO(bytes(body))
    if callable(getattr(body, "read", None)):
        return body
    raise ValidationError(
        f"invalid input: body must be bytes or a readable stream, got {type(body).__name__}"
    )


def is_async_stream(stream: Any) -> bool:
    return inspect.iscoroutinefunction(getattr(stream, "read", None))


async def read_chunk(stream: Any, size: int = CHUNK_SIZE) -> bytes:
    """Read one chunk from a sync or async binary stream."""
    data = stream.read(size)
    if inspect.isawaitable(data):
        data = await data
    return data or b""


async def drain_to_sync_stream(stream: Any) -> Any:
    """Buffer an async stream into memory so sync SDKs can read it."""
    if not is_async_stream(stream):
        return stream
    buffer = io.BytesIO()
    while True:
        chunk = await read_chunk(stream)
        if not chunk:
            break
        buffer.write(chunk)
    buffer.seek(0)
    return buffer


def build_retrying(
    max_attempts: int,
    should_retry: Callable[[BaseException], bool],
    wait_multiplier: float = 0.2,
    wait_max: float = 5.0,
) -> AsyncRetrying:
    """Retry policy for transient backend failures.

    Args:
        max_attempts: Total attempts including the first one
        should_retry: Predicate selecting retryable exceptions
        wait_multiplier: Exponential backoff multiplier
        wait_max: Maximum wait time between retries
    """
    return AsyncRetrying(
        reraise=True,
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=wait_multiplier, max=wait_max),
        retry=retry_if_exception(should_retry),
    )


class AsyncRWLock:
    """Reader/writer lock: shared readers, exclusive writers."""

    def __init__(self) -> None:
        self._cond = anyio.Condition()
        self._readers = 0
        self._writer = False

    @asynccontextmanager
    async def read(self) -> AsyncIterator[None]:
        async with self._cond:
            while self._writer:
                await self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with anyio.CancelScope(shield=True):
                async with self._cond:
                    self._readers -= 1
                    if self._readers == 0:
                        self._cond.notify_all()

    @asynccontextmanager
    async def write(self) -> AsyncIterator[None]:
        async with self._cond:
            while self._writer or self._readers:
                await self._cond.wait()
            self._writer = True
        try:
            yield
        finally:
            with anyio.CancelScope(shield=True):
                async with self._cond:
                    self._writer = False
                    self._cond.notify_all()
