"""AWS S3 storage provider implementation."""
from __future__ import annotations

import threading
from datetime import timedelta
from functools import partial
from typing import Any, Callable, Optional, Sequence
from urllib.parse import quote

import anyio
import boto3
from boto3.s3.transfer import TransferConfig
from botocore.config import Config as BotoConfig
from botocore.exceptions import (
    ClientError,
    ConnectionError as BotoConnectionError,
    HTTPClientError,
)

from core.logging_config import get_logger
from ..config import (
    DEFAULT_CONCURRENCY,
    DEFAULT_PART_SIZE,
    MIN_UPLOAD_PART_SIZE,
    StorageConfig,
)
from ..context import OperationContext, check_context
from ..models import (
    DEFAULT_CONTENT_TYPE,
    ObjectInfo,
    UploadInput,
    UploadOutput,
    ListInput,
    ListOutput,
)
from ..exceptions import (
    ConfigurationError,
    DeadlineExceededError,
    DeleteFailedError,
    DownloadFailedError,
    InternalStorageError,
    NotFoundError,
    OperationCancelledError,
    UploadFailedError,
    ValidationError,
)
from ..utils import (
    build_retrying,
    detect_content_type,
    drain_to_sync_stream,
    ensure_body,
    resolve_content_type,
    sanitize_key,
    validate_prefix,
)

logger = get_logger(__name__)

# DeleteObjects accepts at most 1000 keys per request
MAX_DELETE_BATCH = 1000
# SigV4 presigned URLs are valid for at most 7 days
MAX_PRESIGN_SECONDS = 7 * 24 * 3600

NOT_FOUND_CODES = frozenset({"NoSuchKey", "NotFound", "404"})
TRANSIENT_CODES = frozenset({
    "RequestTimeout",
    "RequestTimeTooSkewed",
    "SlowDown",
    "Throttling",
    "ThrottlingException",
    "RequestLimitExceeded",
    "ServiceUnavailable",
    "InternalError",
    "500",
    "502",
    "503",
    "504",
})


def _iter_error_chain(exc: BaseException):
    """Yield ``exc`` and every exception it wraps."""
    seen: set[int] = set()
    current: Optional[BaseException] = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        # s3transfer's RetriesExceededError keeps the cause in last_exception
        current = (
            current.__cause__
            or getattr(current, "last_exception", None)
            or current.__context__
        )


def _error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", ""))


def _http_status(exc: ClientError) -> Optional[int]:
    return exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode")


def is_not_found_error(exc: BaseException) -> bool:
    """Whether ``exc`` means the object does not exist.

    Recognizes the error codes S3 and S3-compatible services use for a
    missing key (``NoSuchKey`` from GET, bare ``404``/``NotFound`` from HEAD),
    an error-less 404 status, the modeled ``NoSuchKey`` exception, and any of
    those wrapped by the transfer manager. A missing bucket is not a missing
    object.
    """
    for current in _iter_error_chain(exc):
        if not isinstance(current, ClientError):
            continue
        code = _error_code(current)
        if code in NOT_FOUND_CODES:
            return True
        if _http_status(current) == 404 and code != "NoSuchBucket":
            return True
    return False


def is_transient_error(exc: BaseException) -> bool:
    """Whether a failed call is worth retrying."""
    if is_not_found_error(exc):
        return False
    if isinstance(exc, (BotoConnectionError, HTTPClientError)):
        return True
    if isinstance(exc, ClientError):
        status = _http_status(exc) or 0
        return _error_code(exc) in TRANSIENT_CODES or status >= 500
    return False


def _strip_etag(etag: Optional[str]) -> str:
    return (etag or "").strip('"')


def _expires_in(expiration: Any) -> int:
    try:
        if isinstance(expiration, timedelta):
            seconds = int(expiration.total_seconds())
        else:
            seconds = int(expiration)
    except (TypeError, ValueError, OverflowError) as e:
        raise ValidationError(f"invalid expiration: {expiration!r}") from e
    if seconds <= 0 or seconds > MAX_PRESIGN_SECONDS:
        raise ValidationError(
            f"invalid expiration: {seconds}s (must be 1..{MAX_PRESIGN_SECONDS})"
        )
    return seconds


class _TransferProgress:
    """Byte counter fed by transfer-manager worker threads."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.total = 0

    def reset(self) -> None:
        with self._lock:
            self.total = 0

    def __call__(self, bytes_transferred: int) -> None:
        with self._lock:
            self.total += bytes_transferred


class S3ObjectStream:
    """Async reader over a boto3 ``StreamingBody``."""

    def __init__(self, body: Any, key: str):
        self._body = body
        self._key = key

    async def read(self, size: int = -1) -> bytes:
        amount = None if size is None or size < 0 else size
        try:
            return await anyio.to_thread.run_sync(partial(self._body.read, amount))
        except Exception as e:
            raise DownloadFailedError(f"failed to read {self._key}: {e}") from e

    async def close(self) -> None:
        await anyio.to_thread.run_sync(self._body.close)

    async def __aenter__(self) -> "S3ObjectStream":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()


class S3Store:
    """Blob store over an S3-compatible object storage service.

    Uploads and downloads go through boto3's transfer manager, which splits
    large objects into parts moved with bounded concurrency. Independent
    operations share no mutable state and run fully concurrently.

    Also issues presigned URLs.
    """

    def __init__(
        self,
        client: Any,  # boto3 S3 client
        bucket: str,
        *,
        region: Optional[str] = None,
        endpoint: Optional[str] = None,
        upload_part_size: int = DEFAULT_PART_SIZE,
        upload_concurrency: int = DEFAULT_CONCURRENCY,
        download_part_size: int = DEFAULT_PART_SIZE,
        download_concurrency: int = DEFAULT_CONCURRENCY,
        max_retry_attempts: int = 1,
    ):
        """Initialize S3 provider.

        Args:
            client: Boto3 S3 client instance
            bucket: Bucket holding the objects
            region: Bucket region, used for object locations
            endpoint: Custom endpoint (MinIO, LocalStack)
            upload_part_size: Multipart upload part size; below 5MB the default is kept
            upload_concurrency: Parts uploaded in parallel
            download_part_size: Ranged read size for downloads
            download_concurrency: Ranged reads in parallel
            max_retry_attempts: Attempts per call for transient failures (1 = no retry)
        """
        if not bucket:
            raise ConfigurationError("S3 bucket name is required")

        if upload_part_size < MIN_UPLOAD_PART_SIZE:
            upload_part_size = DEFAULT_PART_SIZE
        if upload_concurrency <= 0:
            upload_concurrency = DEFAULT_CONCURRENCY
        if download_part_size <= 0:
            download_part_size = DEFAULT_PART_SIZE
        if download_concurrency <= 0:
            download_concurrency = DEFAULT_CONCURRENCY

        self.client = client
        self._bucket = bucket
        self._region = region or "us-east-1"
        self._endpoint = endpoint
        self._max_retry_attempts = max(1, max_retry_attempts)
        self.upload_config = TransferConfig(
            multipart_threshold=upload_part_size,
            multipart_chunksize=upload_part_size,
            max_concurrency=upload_concurrency,
        )
        self.download_config = TransferConfig(
            multipart_threshold=download_part_size,
            multipart_chunksize=download_part_size,
            max_concurrency=download_concurrency,
        )

    @property
    def bucket(self) -> str:
        return self._bucket

    async def upload(
        self,
        input: UploadInput,
        *,
        ctx: Optional[OperationContext] = None,
    ) -> UploadOutput:
        """Upload through the multipart transfer manager."""
        key = sanitize_key(input.key)
        body = ensure_body(input.body)
        content_type = resolve_content_type(key, input.content_type, input.guess_content_type)
        check_context(ctx)

        stream = await drain_to_sync_stream(body)
        extra_args: dict[str, Any] = {"ContentType": content_type}
        if input.metadata:
            extra_args["Metadata"] = dict(input.metadata)

        # A retried upload must start from the same stream position
        start = stream.tell() if _seekable(stream) else None

        def _upload() -> None:
            if start is not None:
                stream.seek(start)
            self.client.upload_fileobj(
                stream,
                self._bucket,
                key,
                ExtraArgs=extra_args,
                Config=self.upload_config,
            )

        try:
            await self._run(_upload, ctx, retry=start is not None)
        except OperationCancelledError:
            raise
        except Exception as e:
            logger.error("failed to upload object", key=key, bucket=self._bucket, error=str(e))
            raise UploadFailedError(f"failed to upload {key}: {e}") from e

        output = UploadOutput(location=self._location(key))
        try:
            head = await self._call("head_object", ctx, Bucket=self._bucket, Key=key)
        except OperationCancelledError:
            raise
        except Exception as e:
            # The object is stored; only its identifiers are unavailable
            logger.warning("failed to read uploaded object identifiers", key=key, error=str(e))
        else:
            output.etag = _strip_etag(head.get("ETag"))
            output.version_id = head.get("VersionId")

        logger.debug("object uploaded successfully", key=key, location=output.location)
        return output

    async def download(
        self,
        key: str,
        sink: Any,
        *,
        ctx: Optional[OperationContext] = None,
    ) -> int:
        """Download with concurrent ranged reads into ``sink``."""
        key = sanitize_key(key)
        check_context(ctx)
        progress = _TransferProgress()

        def _download() -> None:
            progress.reset()
            self.client.download_fileobj(
                self._bucket,
                key,
                sink,
                Config=self.download_config,
                Callback=progress,
            )

        try:
            await self._run(_download, ctx)
        except OperationCancelledError:
            raise
        except Exception as e:
            if is_not_found_error(e):
                raise NotFoundError(f"object not found: {key}") from e
            logger.error("failed to download object", key=key, bucket=self._bucket, error=str(e))
            raise DownloadFailedError(f"failed to download {key}: {e}") from e

        logger.debug("object downloaded successfully", key=key, bytes=progress.total)
        return progress.total

    async def get_object(
        self,
        key: str,
        *,
        ctx: Optional[OperationContext] = None,
    ) -> S3ObjectStream:
        """Open the object body; the caller closes it."""
        key = sanitize_key(key)
        try:
            response = await self._call("get_object", ctx, Bucket=self._bucket, Key=key)
        except OperationCancelledError:
            raise
        except Exception as e:
            if is_not_found_error(e):
                raise NotFoundError(f"object not found: {key}") from e
            logger.error("failed to get object", key=key, bucket=self._bucket, error=str(e))
            raise DownloadFailedError(f"failed to get {key}: {e}") from e

        return S3ObjectStream(response["Body"], key)

    async def head_object(
        self,
        key: str,
        *,
        ctx: Optional[OperationContext] = None,
    ) -> ObjectInfo:
        """Fetch object metadata; absent optional fields are left empty."""
        key = sanitize_key(key)
        try:
            response = await self._call("head_object", ctx, Bucket=self._bucket, Key=key)
        except OperationCancelledError:
            raise
        except Exception as e:
            if is_not_found_error(e):
                raise NotFoundError(f"object not found: {key}") from e
            logger.error("failed to head object", key=key, bucket=self._bucket, error=str(e))
            raise InternalStorageError(f"failed to get object info for {key}: {e}") from e

        return ObjectInfo(
            key=key,
            size=response.get("ContentLength") or 0,
            content_type=response.get("ContentType") or DEFAULT_CONTENT_TYPE,
            etag=_strip_etag(response.get("ETag")),
            last_modified=response.get("LastModified"),
            metadata=response.get("Metadata") or {},
        )

    async def exists(
        self,
        key: str,
        *,
        ctx: Optional[OperationContext] = None,
    ) -> bool:
        try:
            await self.head_object(key, ctx=ctx)
        except NotFoundError:
            return False
        return True

    async def delete(
        self,
        key: str,
        *,
        ctx: Optional[OperationContext] = None,
    ) -> None:
        """Delete an object; S3 treats a missing key as deleted."""
        key = sanitize_key(key)
        try:
            await self._call("delete_object", ctx, Bucket=self._bucket, Key=key)
        except OperationCancelledError:
            raise
        except Exception as e:
            if is_not_found_error(e):
                return
            logger.error("failed to delete object", key=key, bucket=self._bucket, error=str(e))
            raise DeleteFailedError(f"failed to delete {key}: {e}", [key]) from e

        logger.debug("object deleted successfully", key=key)

    async def delete_multiple(
        self,
        keys: Sequence[str],
        *,
        ctx: Optional[OperationContext] = None,
    ) -> list[str]:
        """Delete keys in batches of at most 1000, collecting failures."""
        if not keys:
            return []

        keys = list(keys)
        sanitized = [sanitize_key(key) for key in keys]
        # Failures are reported with the caller's spelling of the key
        original = dict(zip(sanitized, keys))
        failed: list[str] = []

        for start in range(0, len(keys), MAX_DELETE_BATCH):
            batch = sanitized[start:start + MAX_DELETE_BATCH]
            check_context(ctx, pending=failed + keys[start:])
            try:
                response = await self._call(
                    "delete_objects",
                    ctx,
                    Bucket=self._bucket,
                    Delete={
                        "Objects": [{"Key": key} for key in batch],
                        "Quiet": True,
                    },
                )
            except OperationCancelledError as e:
                e.failed_keys = failed + keys[start:]
                raise
            except Exception as e:
                logger.error(
                    "failed to delete objects batch",
                    bucket=self._bucket,
                    count=len(batch),
                    error=str(e),
                )
                failed.extend(keys[start:start + MAX_DELETE_BATCH])
                continue

            for error in response.get("Errors", []):
                code = error.get("Code", "")
                if code in NOT_FOUND_CODES:
                    continue
                key = error.get("Key", "")
                failed.append(original.get(key, key))
                logger.warning(
                    "failed to delete object",
                    key=key,
                    code=code,
                    message=error.get("Message", ""),
                )

        if failed:
            raise DeleteFailedError(f"{len(failed)} objects failed to delete", failed)

        logger.debug("objects deleted successfully", count=len(keys))
        return []

    async def list(
        self,
        input: Optional[ListInput] = None,
        *,
        ctx: Optional[OperationContext] = None,
    ) -> ListOutput:
        """Fetch exactly one page; the caller drives further pagination."""
        input = input or ListInput()
        prefix = validate_prefix(input.prefix)
        params: dict[str, Any] = {
            "Bucket": self._bucket,
            "MaxKeys": input.effective_max_keys(),
        }
        if prefix:
            params["Prefix"] = prefix
        if input.start_after:
            params["StartAfter"] = input.start_after

        try:
            response = await self._call("list_objects_v2", ctx, **params)
        except OperationCancelledError:
            raise
        except Exception as e:
            logger.error("failed to list objects", bucket=self._bucket, prefix=prefix, error=str(e))
            raise InternalStorageError(f"failed to list objects: {e}") from e

        objects = [
            ObjectInfo(
                key=obj["Key"],
                size=obj.get("Size") or 0,
                content_type=detect_content_type(obj["Key"]),
                etag=_strip_etag(obj.get("ETag")),
                last_modified=obj.get("LastModified"),
            )
            for obj in response.get("Contents", [])
        ]

        return ListOutput(
            objects=objects,
            is_truncated=bool(response.get("IsTruncated", False)),
            next_marker=objects[-1].key if objects else "",
        )

    async def copy(
        self,
        source_key: str,
        dest_key: str,
        *,
        ctx: Optional[OperationContext] = None,
    ) -> None:
        """Server-side copy; no bytes pass through this process."""
        source_key = sanitize_key(source_key)
        dest_key = sanitize_key(dest_key)
        try:
            await self._call(
                "copy_object",
                ctx,
                Bucket=self._bucket,
                Key=dest_key,
                CopySource={"Bucket": self._bucket, "Key": source_key},
            )
        except OperationCancelledError:
            raise
        except Exception as e:
            if is_not_found_error(e):
                raise NotFoundError(f"source object not found: {source_key}") from e
            logger.error(
                "failed to copy object",
                source=source_key,
                dest=dest_key,
                bucket=self._bucket,
                error=str(e),
            )
            raise InternalStorageError(f"failed to copy {source_key} to {dest_key}: {e}") from e

        logger.debug("object copied successfully", source=source_key, dest=dest_key)

    async def generate_presigned_url(
        self,
        key: str,
        expiration: Any,
        *,
        ctx: Optional[OperationContext] = None,
    ) -> str:
        """Sign a GET URL for ``key``; no request is sent."""
        return await self._presign(
            "get_object",
            {"Bucket": self._bucket, "Key": sanitize_key(key)},
            expiration,
            ctx,
        )

    async def generate_presigned_upload_url(
        self,
        key: str,
        content_type: Optional[str],
        expiration: Any,
        *,
        ctx: Optional[OperationContext] = None,
    ) -> str:
        """Sign a PUT URL for ``key``, bound to ``content_type`` when given."""
        params = {"Bucket": self._bucket, "Key": sanitize_key(key)}
        if content_type:
            params["ContentType"] = content_type
        return await self._presign("put_object", params, expiration, ctx)

    async def health_check(self) -> bool:
        """Check S3 connectivity."""
        try:
            await self._call("head_bucket", None, Bucket=self._bucket)
            return True
        except Exception as e:
            logger.error("S3 health check failed", bucket=self._bucket, error=str(e))
            return False

    async def _presign(
        self,
        client_method: str,
        params: dict[str, Any],
        expiration: Any,
        ctx: Optional[OperationContext],
    ) -> str:
        expires_in = _expires_in(expiration)
        check_context(ctx)
        try:
            return await anyio.to_thread.run_sync(
                partial(
                    self.client.generate_presigned_url,
                    ClientMethod=client_method,
                    Params=params,
                    ExpiresIn=expires_in,
                )
            )
        except Exception as e:
            logger.error(
                "failed to generate presigned URL",
                key=params.get("Key"),
                method=client_method,
                error=str(e),
            )
            raise InternalStorageError(f"failed to generate presigned URL: {e}") from e

    def _location(self, key: str) -> str:
        quoted = quote(key, safe="/~")
        if self._endpoint:
            return f"{self._endpoint.rstrip('/')}/{self._bucket}/{quoted}"
        return f"https://{self._bucket}.s3.{self._region}.amazonaws.com/{quoted}"

    async def _call(self, method: str, ctx: Optional[OperationContext], **kwargs: Any) -> Any:
        return await self._run(partial(getattr(self.client, method), **kwargs), ctx)

    async def _run(
        self,
        func: Callable[[], Any],
        ctx: Optional[OperationContext],
        retry: bool = True,
    ) -> Any:
        """Run a blocking SDK call in a worker thread, retrying if configured."""
        if not retry or self._max_retry_attempts <= 1:
            return await self._run_once(func, ctx)

        async for attempt in build_retrying(self._max_retry_attempts, is_transient_error):
            with attempt:
                return await self._run_once(func, ctx)

    async def _run_once(self, func: Callable[[], Any], ctx: Optional[OperationContext]) -> Any:
        check_context(ctx)
        remaining = ctx.remaining() if ctx is not None else None
        if remaining is None:
            return await anyio.to_thread.run_sync(func)
        try:
            with anyio.fail_after(remaining):
                return await anyio.to_thread.run_sync(func, abandon_on_cancel=True)
        except TimeoutError:
            raise DeadlineExceededError("operation deadline exceeded")


def _seekable(stream: Any) -> bool:
    try:
        return bool(stream.seekable())
    except (AttributeError, OSError, ValueError):
        return False


async def build_s3_provider(config: StorageConfig) -> S3Store:
    """Build S3 storage provider.

    Args:
        config: Storage configuration

    Returns:
        Configured S3 provider instance
    """
    if not config.bucket:
        raise ConfigurationError("S3 bucket name is required")

    # Retries are handled by S3Store so the policy lives in one place
    boto_config = BotoConfig(
        region_name=config.region,
        signature_version="s3v4",
        retries={"max_attempts": 0, "mode": "standard"},
        connect_timeout=config.timeout,
        read_timeout=config.timeout,
        s3={"addressing_style": "path" if config.use_path_style else "auto"},
    )

    client_args: dict[str, Any] = {
        "service_name": "s3",
        "config": boto_config,
    }

    if config.aws_access_key_id and config.aws_secret_access_key:
        client_args.update({
            "aws_access_key_id": config.aws_access_key_id,
            "aws_secret_access_key": config.aws_secret_access_key,
        })
        if config.aws_session_token:
            client_args["aws_session_token"] = config.aws_session_token

    if config.endpoint:
        client_args["endpoint_url"] = config.endpoint
        client_args["use_ssl"] = config.enable_ssl

    client = boto3.client(**client_args)

    provider = S3Store(
        client,
        config.bucket,
        region=config.region,
        endpoint=config.endpoint,
        upload_part_size=config.upload_part_size,
        upload_concurrency=config.upload_concurrency,
        download_part_size=config.download_part_size,
        download_concurrency=config.download_concurrency,
        max_retry_attempts=config.max_retry_attempts,
    )

    logger.info("S3 blob store initialized", bucket=config.bucket, region=config.region)

    if not await provider.health_check():
        raise ConfigurationError("Failed to connect to S3")

    return provider
