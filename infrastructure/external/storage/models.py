"""Storage data transfer objects."""
from datetime import datetime
from typing import Any, Optional
from pydantic import BaseModel, ConfigDict, Field


DEFAULT_CONTENT_TYPE = "application/octet-stream"
DEFAULT_MAX_KEYS = 1000


class ObjectInfo(BaseModel):
    """Stored object metadata."""
    key: str
    size: int = Field(ge=0)
    content_type: str = DEFAULT_CONTENT_TYPE
    etag: str = ""
    last_modified: Optional[datetime] = None
    metadata: dict[str, str] = Field(default_factory=dict)


class UploadInput(BaseModel):
    """Upload parameters.

    ``body`` is a bytes-like object or a readable binary file object; it is
    consumed by the upload and must not be reused by the caller.
    """
    model_config = ConfigDict(arbitrary_types_allowed=True)

    key: str
    body: Any = None
    content_type: Optional[str] = None
    metadata: dict[str, str] = Field(default_factory=dict)
    # Fill a missing content type from the key's extension
    guess_content_type: bool = False


class UploadOutput(BaseModel):
    """Upload operation result."""
    location: str
    version_id: Optional[str] = None
    etag: str = ""


class ListInput(BaseModel):
    """List parameters; ``start_after`` is an exclusive key cursor."""
    prefix: str = ""
    max_keys: int = DEFAULT_MAX_KEYS
    start_after: str = ""

    def effective_max_keys(self) -> int:
        return self.max_keys if self.max_keys > 0 else DEFAULT_MAX_KEYS


class ListOutput(BaseModel):
    """One page of a listing, ordered by key."""
    objects: list[ObjectInfo] = Field(default_factory=list)
    is_truncated: bool = False
    next_marker: str = ""
