"""Blob storage entry point and lifecycle management."""
from typing import Optional
from functools import lru_cache

from core.config import settings
from core.logging_config import get_logger
from .base import (
    AsyncReadable,
    FullStore,
    PresignedURLGenerator,
    RandomAccessSink,
    Store,
    supports_presign,
)
from .config import StorageConfig, StorageType
from .context import OperationContext
from .factory import create_provider, register_provider
from .models import (
    ObjectInfo,
    UploadInput,
    UploadOutput,
    ListInput,
    ListOutput,
)
from .exceptions import (
    StorageError,
    ValidationError,
    InvalidKeyError,
    NotFoundError,
    UploadFailedError,
    DownloadFailedError,
    DeleteFailedError,
    OperationCancelledError,
    DeadlineExceededError,
    InternalStorageError,
    ConfigurationError,
)
from .utils import detect_content_type, sanitize_key

logger = get_logger(__name__)

# Global storage client instance
_storage_client: Optional[Store] = None


@lru_cache
def get_storage_config() -> StorageConfig:
    """Get storage configuration from settings.

    Assembles StorageConfig from core.config.settings to maintain
    single source of truth for configuration.

    Returns:
        Storage configuration instance
    """
    s = settings.storage
    config_dict = {
        "type": s.type or StorageType.LOCAL,
        "bucket": s.bucket,
        "region": s.region,
        "endpoint": s.endpoint,
        "use_path_style": s.use_path_style,
        # S3 specific
        "aws_access_key_id": s.aws_access_key_id,
        "aws_secret_access_key": s.aws_secret_access_key,
        "aws_session_token": s.aws_session_token,
        # Local specific
        "local_base_path": s.local_base_path,
        "local_create_base_path": s.local_create_base_path,
        # Transfer tuning
        "upload_part_size": s.upload_part_size,
        "upload_concurrency": s.upload_concurrency,
        "download_part_size": s.download_part_size,
        "download_concurrency": s.download_concurrency,
        # Advanced settings
        "max_retry_attempts": s.max_retry_attempts,
        "timeout": s.timeout,
        "enable_ssl": s.enable_ssl,
    }

    return StorageConfig(**config_dict)


async def init_storage_client(config: Optional[StorageConfig] = None) -> Store:
    """Initialize storage client.

    Creates the backend selected by configuration. Calling it again
    returns the existing client.
    """
    global _storage_client

    if _storage_client is not None:
        logger.warning("Storage client already initialized")
        return _storage_client

    config = config or get_storage_config()
    try:
        _storage_client = await create_provider(config)
    except Exception as e:
        logger.error("Failed to initialize storage client", error=str(e))
        raise

    logger.info(
        "Storage client initialized",
        provider=config.type,
        bucket=config.bucket,
        presign=supports_presign(_storage_client),
    )
    return _storage_client


def get_storage_client() -> Optional[Store]:
    """Get storage client instance.

    Returns:
        Storage provider instance or None if not initialized
    """
    return _storage_client


async def shutdown_storage_client() -> None:
    """Shutdown storage client."""
    global _storage_client

    if _storage_client is None:
        return

    _storage_client = None
    logger.info("Storage client shutdown")


async def get_storage() -> Store:
    """Dependency accessor for the storage service.

    Returns:
        Storage provider instance

    Raises:
        RuntimeError: If storage not initialized
    """
    client = get_storage_client()
    if client is None:
        raise RuntimeError(
            "Storage client not initialized. "
            "Call init_storage_client() during startup."
        )
    return client


# Export public interface
__all__ = [
    # Lifecycle
    "init_storage_client",
    "get_storage_client",
    "shutdown_storage_client",
    "get_storage",

    # Configuration
    "get_storage_config",
    "StorageConfig",
    "StorageType",
    "create_provider",
    "register_provider",

    # Contracts
    "Store",
    "PresignedURLGenerator",
    "FullStore",
    "AsyncReadable",
    "RandomAccessSink",
    "supports_presign",
    "OperationContext",

    # Models
    "ObjectInfo",
    "UploadInput",
    "UploadOutput",
    "ListInput",
    "ListOutput",

    # Exceptions
    "StorageError",
    "ValidationError",
    "InvalidKeyError",
    "NotFoundError",
    "UploadFailedError",
    "DownloadFailedError",
    "DeleteFailedError",
    "OperationCancelledError",
    "DeadlineExceededError",
    "InternalStorageError",
    "ConfigurationError",

    # Utils
    "sanitize_key",
    "detect_content_type",
]
