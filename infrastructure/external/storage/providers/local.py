"""Local file system storage provider implementation."""
from __future__ import annotations

import os
import stat as stat_module
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional, Sequence

import aiofiles
import aiofiles.os
import anyio

from core.logging_config import get_logger
from ..config import StorageConfig
from ..context import OperationContext, check_context
from ..models import (
    ObjectInfo,
    UploadInput,
    UploadOutput,
    ListInput,
    ListOutput,
)
from ..exceptions import (
    ConfigurationError,
    DeleteFailedError,
    DownloadFailedError,
    InternalStorageError,
    InvalidKeyError,
    NotFoundError,
    OperationCancelledError,
    StorageError,
    UploadFailedError,
)
from ..utils import (
    TMP_PREFIX,
    AsyncRWLock,
    detect_content_type,
    ensure_body,
    new_hasher,
    read_chunk,
    sanitize_key,
    validate_prefix,
)

logger = get_logger(__name__)


class LocalObjectStream:
    """Async reader over an open aiofiles handle."""

    def __init__(self, handle: Any, key: str):
        self._handle = handle
        self._key = key

    async def read(self, size: int = -1) -> bytes:
        try:
            return await self._handle.read(size)
        except OSError as e:
            raise DownloadFailedError(f"failed to read {self._key}: {e}") from e

    async def close(self) -> None:
        await self._handle.close()

    async def __aenter__(self) -> LocalObjectStream:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()


class LocalStore:
    """Blob store over a rooted directory tree.

    Object keys map to paths under ``base_path``; the stored bytes are exactly
    the uploaded bytes. Writes go to a temp file in the target directory and
    are renamed into place, so readers never observe a partial object.

    All mutations hold one exclusive lock per instance and reads share it:
    uploads to different keys still serialize. ``download`` buffers the whole
    object in memory. Content type is not persisted; it is derived from the
    key's extension. Custom metadata is not persisted either.

    Presigned URLs are not supported.
    """

    def __init__(
        self,
        base_path: str,
        *,
        create_base_path: bool = True,
        dir_permissions: int = 0o755,
    ):
        """Initialize local storage provider.

        Args:
            base_path: Root directory for stored objects
            create_base_path: Create the root if missing; otherwise it must exist
            dir_permissions: Mode for directories created by the store

        Raises:
            ConfigurationError: If the root is unusable
        """
        if not base_path:
            raise ConfigurationError("base path is required")

        path = Path(base_path).resolve()
        if create_base_path:
            try:
                path.mkdir(parents=True, exist_ok=True, mode=dir_permissions)
            except OSError as e:
                raise ConfigurationError(f"failed to create base path {path}: {e}") from e
        elif not path.exists():
            raise ConfigurationError(f"base path does not exist: {path}")

        if not path.is_dir():
            raise ConfigurationError(f"base path is not a directory: {path}")

        self._base_path = path
        self._dir_permissions = dir_permissions
        self._lock = AsyncRWLock()

        logger.info("Local blob store initialized", base_path=str(path))

    @property
    def base_path(self) -> Path:
        return self._base_path

    async def upload(
        self,
        input: UploadInput,
        *,
        ctx: Optional[OperationContext] = None,
    ) -> UploadOutput:
        """Write the body to a temp file, then rename it over the key."""
        file_path = self._full_path(input.key)
        body = ensure_body(input.body)
        check_context(ctx)

        async with self._lock.write():
            await self._make_parents(file_path, input.key)
            etag, written = await self._write_atomic(file_path, body, input.key, ctx)

        logger.debug("file uploaded successfully", key=input.key, bytes=written)
        return UploadOutput(location=str(file_path), etag=etag)

    async def download(
        self,
        key: str,
        sink: Any,
        *,
        ctx: Optional[OperationContext] = None,
    ) -> int:
        """Read the whole object and write it into ``sink`` at offset 0."""
        file_path = self._full_path(key)
        check_context(ctx)

        async with self._lock.read():
            try:
                async with aiofiles.open(file_path, "rb") as f:
                    check_context(ctx)
                    data = await f.read()
            except (FileNotFoundError, IsADirectoryError):
                raise NotFoundError(f"object not found: {key}")
            except OSError as e:
                logger.error("failed to read file", key=key, error=str(e))
                raise DownloadFailedError(f"failed to download {key}: {e}") from e

        try:
            sink.seek(0)
            written = sink.write(data)
        except Exception as e:
            raise DownloadFailedError(f"failed to write {key} into sink: {e}") from e

        written = len(data) if written is None else written
        logger.debug("file downloaded successfully", key=key, bytes=written)
        return written

    async def get_object(
        self,
        key: str,
        *,
        ctx: Optional[OperationContext] = None,
    ) -> LocalObjectStream:
        """Open the object; the caller closes the returned stream."""
        file_path = self._full_path(key)
        check_context(ctx)

        async with self._lock.read():
            try:
                handle = await aiofiles.open(file_path, "rb")
                return LocalObjectStream(handle, key)
            except (FileNotFoundError, IsADirectoryError):
                raise NotFoundError(f"object not found: {key}")
            except OSError as e:
                logger.error("failed to open file", key=key, error=str(e))
                raise DownloadFailedError(f"failed to open {key}: {e}") from e

    async def head_object(
        self,
        key: str,
        *,
        ctx: Optional[OperationContext] = None,
    ) -> ObjectInfo:
        """Stat the object and hash its current content."""
        file_path = self._full_path(key)
        check_context(ctx)

        async with self._lock.read():
            st = await self._stat_file(file_path, key)
            try:
                etag = await self._calculate_etag(file_path)
            except FileNotFoundError:
                raise NotFoundError(f"object not found: {key}")
            except OSError as e:
                logger.error("failed to hash file", key=key, error=str(e))
                raise InternalStorageError(f"failed to get object info for {key}: {e}") from e

        return ObjectInfo(
            key=key,
            size=st.st_size,
            content_type=detect_content_type(key),
            etag=etag,
            last_modified=datetime.fromtimestamp(st.st_mtime, tz=timezone.utc),
        )

    async def exists(
        self,
        key: str,
        *,
        ctx: Optional[OperationContext] = None,
    ) -> bool:
        file_path = self._full_path(key)
        check_context(ctx)

        async with self._lock.read():
            try:
                await self._stat_file(file_path, key)
            except NotFoundError:
                return False
        return True

    async def delete(
        self,
        key: str,
        *,
        ctx: Optional[OperationContext] = None,
    ) -> None:
        """Remove the object; a missing object counts as deleted."""
        file_path = self._full_path(key)
        check_context(ctx)

        async with self._lock.write():
            await self._remove(file_path, key)

    async def delete_multiple(
        self,
        keys: Sequence[str],
        *,
        ctx: Optional[OperationContext] = None,
    ) -> list[str]:
        """Delete keys one by one, collecting the ones that failed."""
        if not keys:
            return []

        keys = list(keys)
        paths = [self._full_path(key) for key in keys]
        failed: list[str] = []

        for index, (key, file_path) in enumerate(zip(keys, paths)):
            check_context(ctx, pending=failed + keys[index:])
            try:
                async with self._lock.write():
                    await self._remove(file_path, key)
            except DeleteFailedError:
                failed.append(key)

        if failed:
            raise DeleteFailedError(
                f"{len(failed)} objects failed to delete", failed
            )

        logger.debug("files deleted successfully", count=len(keys))
        return []

    async def list(
        self,
        input: Optional[ListInput] = None,
        *,
        ctx: Optional[OperationContext] = None,
    ) -> ListOutput:
        """Walk the whole tree, then sort and truncate the matches."""
        input = input or ListInput()
        prefix = validate_prefix(input.prefix)
        max_keys = input.effective_max_keys()
        check_context(ctx)

        async with self._lock.read():
            try:
                objects = await anyio.to_thread.run_sync(
                    self._walk, prefix, input.start_after, ctx
                )
            except StorageError:
                raise
            except OSError as e:
                logger.error("failed to list files", prefix=prefix, error=str(e))
                raise InternalStorageError(f"failed to list objects: {e}") from e

        # Sorting the full filtered set before truncating keeps pagination stable
        objects.sort(key=lambda obj: obj.key)
        is_truncated = len(objects) > max_keys
        if is_truncated:
            objects = objects[:max_keys]

        return ListOutput(
            objects=objects,
            is_truncated=is_truncated,
            next_marker=objects[-1].key if objects else "",
        )

    async def copy(
        self,
        source_key: str,
        dest_key: str,
        *,
        ctx: Optional[OperationContext] = None,
    ) -> None:
        """Stream the source into a new destination file."""
        source_path = self._full_path(source_key)
        dest_path = self._full_path(dest_key)
        check_context(ctx)

        async with self._lock.write():
            # Write failures surface as UploadFailedError; OSError here is the source
            try:
                async with aiofiles.open(source_path, "rb") as source:
                    await self._make_parents(dest_path, dest_key)
                    await self._write_atomic(dest_path, source, dest_key, ctx)
            except (FileNotFoundError, IsADirectoryError):
                raise NotFoundError(f"source object not found: {source_key}")
            except OSError as e:
                logger.error("failed to read source file", key=source_key, error=str(e))
                raise InternalStorageError(f"failed to copy {source_key}: {e}") from e

        logger.debug("file copied successfully", source=source_key, dest=dest_key)

    async def health_check(self) -> bool:
        """Check local storage accessibility."""
        try:
            test_file = self._base_path / ".health_check"
            test_file.touch()
            test_file.unlink()
            return True
        except OSError as e:
            logger.error("Local storage health check failed", error=str(e))
            return False

    def _full_path(self, key: str) -> Path:
        """Map a key to its path under the root.

        Raises:
            InvalidKeyError: If the key is invalid or resolves outside the root
        """
        clean = sanitize_key(key)
        path = self._base_path / clean

        # Symlinks inside the tree must not lead out of it
        try:
            path.resolve().relative_to(self._base_path)
        except ValueError:
            raise InvalidKeyError(f"invalid key path: {key!r} escapes the storage root")

        return path

    async def _make_parents(self, file_path: Path, key: str) -> None:
        try:
            await aiofiles.os.makedirs(
                file_path.parent, mode=self._dir_permissions, exist_ok=True
            )
        except OSError as e:
            logger.error("failed to create directory", key=key, path=str(file_path.parent), error=str(e))
            raise UploadFailedError(f"failed to create directory for {key}: {e}") from e

    async def _write_atomic(
        self,
        file_path: Path,
        stream: Any,
        key: str,
        ctx: Optional[OperationContext],
    ) -> tuple[str, int]:
        """Copy ``stream`` into ``file_path`` through a temp file.

        Returns:
            MD5 hex digest and byte count of what was written
        """
        try:
            fd, tmp_name = tempfile.mkstemp(dir=file_path.parent, prefix=TMP_PREFIX)
        except OSError as e:
            logger.error("failed to create temp file", key=key, error=str(e))
            raise UploadFailedError(f"failed to upload {key}: {e}") from e

        tmp_path = Path(tmp_name)
        hasher = new_hasher()
        written = 0
        try:
            async with aiofiles.open(fd, "wb") as out:
                while True:
                    check_context(ctx)
                    chunk = await read_chunk(stream)
                    if not chunk:
                        break
                    hasher.update(chunk)
                    await out.write(chunk)
                    written += len(chunk)
            await aiofiles.os.replace(tmp_path, file_path)
        except OperationCancelledError:
            raise
        except Exception as e:
            logger.error("failed to write file", key=key, error=str(e))
            raise UploadFailedError(f"failed to upload {key}: {e}") from e
        finally:
            # Leftover only when the rename did not happen
            tmp_path.unlink(missing_ok=True)

        return hasher.hexdigest(), written

    async def _remove(self, file_path: Path, key: str) -> None:
        try:
            await aiofiles.os.remove(file_path)
        except FileNotFoundError:
            return
        except OSError as e:
            logger.error("failed to delete file", key=key, error=str(e))
            raise DeleteFailedError(f"failed to delete {key}: {e}", [key]) from e
        logger.debug("file deleted successfully", key=key)

    async def _stat_file(self, file_path: Path, key: str) -> os.stat_result:
        try:
            st = await aiofiles.os.stat(file_path)
        except FileNotFoundError:
            raise NotFoundError(f"object not found: {key}")
        except OSError as e:
            logger.error("failed to stat file", key=key, error=str(e))
            raise InternalStorageError(f"failed to get object info for {key}: {e}") from e
        if stat_module.S_ISDIR(st.st_mode):
            raise NotFoundError(f"object not found: {key}")
        return st

    async def _calculate_etag(self, file_path: Path) -> str:
        hasher = new_hasher()
        async with aiofiles.open(file_path, "rb") as f:
            while True:
                chunk = await f.read(64 * 1024)
                if not chunk:
                    break
                hasher.update(chunk)
        return hasher.hexdigest()

    def _walk(
        self,
        prefix: str,
        start_after: str,
        ctx: Optional[OperationContext],
    ) -> list[ObjectInfo]:
        """Collect matching files; runs in a worker thread."""
        def _raise(err: OSError) -> None:
            raise err

        objects: list[ObjectInfo] = []
        for root, _dirs, files in os.walk(self._base_path, onerror=_raise):
            for name in files:
                check_context(ctx)
                if name.startswith(TMP_PREFIX):
                    continue

                path = Path(root) / name
                key = path.relative_to(self._base_path).as_posix()
                if prefix and not key.startswith(prefix):
                    continue
                if start_after and key <= start_after:
                    continue

                try:
                    st = path.stat()
                except FileNotFoundError:
                    continue

                objects.append(
                    ObjectInfo(
                        key=key,
                        size=st.st_size,
                        content_type=detect_content_type(key),
                        last_modified=datetime.fromtimestamp(st.st_mtime, tz=timezone.utc),
                    )
                )
        return objects


async def build_local_provider(config: StorageConfig) -> LocalStore:
    """Build local storage provider.

    Args:
        config: Storage configuration

    Returns:
        Configured local provider instance
    """
    provider = LocalStore(
        config.local_base_path,
        create_base_path=config.local_create_base_path,
        dir_permissions=config.local_dir_permissions,
    )

    if not await provider.health_check():
        raise ConfigurationError("Failed to access local storage")

    return provider
