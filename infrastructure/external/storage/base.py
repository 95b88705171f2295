"""Storage provider protocol definitions."""
from datetime import timedelta
from typing import Any, Optional, Protocol, Sequence, Union, runtime_checkable

from .context import OperationContext
from .models import (
    ObjectInfo,
    UploadInput,
    UploadOutput,
    ListInput,
    ListOutput,
)

Expiration = Union[timedelta, int, float]


@runtime_checkable
class AsyncReadable(Protocol):
    """Readable object stream returned by ``get_object``.

    The caller closes it, either with ``close()`` or with ``async with``.
    """

    async def read(self, size: int = -1) -> bytes:
        ...

    async def close(self) -> None:
        ...

    async def __aenter__(self) -> "AsyncReadable":
        ...

    async def __aexit__(self, *exc_info: Any) -> None:
        ...


@runtime_checkable
class RandomAccessSink(Protocol):
    """Seekable binary destination for ``download``."""

    def seek(self, offset: int, whence: int = 0) -> int:
        ...

    def write(self, data: bytes) -> int:
        ...


@runtime_checkable
class Store(Protocol):
    """Blob store contract shared by every backend."""

    async def upload(
        self,
        input: UploadInput,
        *,
        ctx: Optional[OperationContext] = None,
    ) -> UploadOutput:
        """Store ``input.body`` under ``input.key``, replacing any prior object."""
        ...

    async def download(
        self,
        key: str,
        sink: Any,
        *,
        ctx: Optional[OperationContext] = None,
    ) -> int:
        """Write the object into ``sink``; returns the number of bytes written."""
        ...

    async def get_object(
        self,
        key: str,
        *,
        ctx: Optional[OperationContext] = None,
    ) -> AsyncReadable:
        """Open the object for reading."""
        ...

    async def head_object(
        self,
        key: str,
        *,
        ctx: Optional[OperationContext] = None,
    ) -> ObjectInfo:
        """Get object metadata without reading its content."""
        ...

    async def delete(
        self,
        key: str,
        *,
        ctx: Optional[OperationContext] = None,
    ) -> None:
        """Delete an object; deleting a missing object succeeds."""
        ...

    async def delete_multiple(
        self,
        keys: Sequence[str],
        *,
        ctx: Optional[OperationContext] = None,
    ) -> list[str]:
        """Delete many objects.

        Returns an empty list when every key was deleted (or already
        missing); otherwise raises ``DeleteFailedError`` with ``failed_keys``.
        """
        ...

    async def list(
        self,
        input: Optional[ListInput] = None,
        *,
        ctx: Optional[OperationContext] = None,
    ) -> ListOutput:
        """List one page of objects in key order."""
        ...

    async def exists(
        self,
        key: str,
        *,
        ctx: Optional[OperationContext] = None,
    ) -> bool:
        """Check if an object exists."""
        ...

    async def copy(
        self,
        source_key: str,
        dest_key: str,
        *,
        ctx: Optional[OperationContext] = None,
    ) -> None:
        """Copy an object within the store."""
        ...

    async def health_check(self) -> bool:
        """Check storage connectivity and permissions."""
        ...


@runtime_checkable
class PresignedURLGenerator(Protocol):
    """Optional capability: time-bounded signed URLs, no network I/O."""

    async def generate_presigned_url(
        self,
        key: str,
        expiration: Expiration,
        *,
        ctx: Optional[OperationContext] = None,
    ) -> str:
        """Signed GET URL for downloading ``key``."""
        ...

    async def generate_presigned_upload_url(
        self,
        key: str,
        content_type: Optional[str],
        expiration: Expiration,
        *,
        ctx: Optional[OperationContext] = None,
    ) -> str:
        """Signed PUT URL for uploading ``key``."""
        ...


@runtime_checkable
class FullStore(Store, PresignedURLGenerator, Protocol):
    """Store that also issues presigned URLs."""
    pass


def supports_presign(store: object) -> bool:
    """Capability check for presigned URLs."""
    return isinstance(store, PresignedURLGenerator)
