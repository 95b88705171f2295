"""Storage provider factory with registry pattern."""
from typing import Callable, Awaitable
import importlib

from core.logging_config import get_logger
from .base import Store
from .config import StorageConfig, StorageType
from .exceptions import ConfigurationError

logger = get_logger(__name__)

# Provider builder type
ProviderBuilder = Callable[[StorageConfig], Awaitable[Store]]

# Built-in providers, imported on first use so a local-only setup never loads boto3
_BUILTIN_PROVIDERS: dict[StorageType, tuple[str, str]] = {
    StorageType.S3: ("infrastructure.external.storage.providers.s3", "build_s3_provider"),
    StorageType.LOCAL: ("infrastructure.external.storage.providers.local", "build_local_provider"),
}

# Global registry for storage providers
_provider_registry: dict[StorageType, ProviderBuilder] = {}


def register_provider(
    storage_type: StorageType,
    builder: ProviderBuilder
) -> None:
    """Register a storage provider builder.

    A later registration for the same type replaces the earlier one.

    Args:
        storage_type: Type of storage provider
        builder: Async function to build provider instance
    """
    storage_type = StorageType(storage_type)
    _provider_registry[storage_type] = builder
    logger.info("Registered storage provider", provider=storage_type.value)


def registered_providers() -> list[StorageType]:
    return list(_provider_registry)


def _resolve_builder(storage_type: StorageType) -> ProviderBuilder:
    builder = _provider_registry.get(storage_type)
    if builder is not None:
        return builder

    builtin = _BUILTIN_PROVIDERS.get(storage_type)
    if builtin is not None:
        module_path, builder_name = builtin
        try:
            builder = getattr(importlib.import_module(module_path), builder_name)
        except (ImportError, AttributeError) as e:
            logger.debug("Provider not available", provider=storage_type.value, error=str(e))
        else:
            register_provider(storage_type, builder)
            return builder

    raise ConfigurationError(
        f"Storage provider '{storage_type.value}' not registered. "
        f"Available: {[t.value for t in _provider_registry]}"
    )


async def create_provider(config: StorageConfig) -> Store:
    """Create storage provider instance based on config.

    Args:
        config: Storage configuration

    Returns:
        Configured storage provider instance

    Raises:
        ConfigurationError: If provider type not registered or creation fails
    """
    storage_type = StorageType(config.type)
    builder = _resolve_builder(storage_type)

    try:
        provider = await builder(config)
    except ConfigurationError:
        raise
    except Exception as e:
        logger.error(
            "Failed to create storage provider",
            provider=storage_type.value,
            error=str(e)
        )
        raise ConfigurationError(
            f"Failed to create storage provider '{storage_type.value}': {e}"
        ) from e

    logger.info(
        "Created storage provider",
        provider=storage_type.value,
        bucket=config.bucket
    )
    return provider
