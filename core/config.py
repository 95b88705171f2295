"""
配置文件 - 项目配置管理
"""
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import BaseModel, Field, field_validator
from typing import Optional


class StorageSettings(BaseModel):
    type: str = "local"  # local, s3
    bucket: Optional[str] = None
    region: Optional[str] = None
    endpoint: Optional[str] = None  # MinIO / LocalStack
    use_path_style: bool = False
    # S3 credentials (default credential chain when unset)
    aws_access_key_id: Optional[str] = None
    aws_secret_access_key: Optional[str] = None
    aws_session_token: Optional[str] = None
    # Local storage specific
    local_base_path: str = "/tmp/storage"
    local_create_base_path: bool = True
    # Multipart transfer tuning
    upload_part_size: int = 10 * 1024 * 1024  # 10MB
    upload_concurrency: int = 5
    download_part_size: int = 10 * 1024 * 1024  # 10MB
    download_concurrency: int = 5
    # Advanced settings
    max_retry_attempts: int = 1  # 1 = no retry
    timeout: int = 30
    enable_ssl: bool = True


class Settings(BaseSettings):
    """项目配置"""

    # 基础配置
    PROJECT_NAME: str = Field(default="Blob Storage Service")
    VERSION: str = Field(default="1.0.0")
    DEBUG: bool = Field(default=False)
    ENVIRONMENT: str = Field(default="development")
    LOG_LEVEL: str = Field(default="info")

    storage: StorageSettings = Field(default_factory=StorageSettings)

    # pydantic-settings v2 configuration
    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="allow",
        env_nested_delimiter="__",
    )

    @field_validator("ENVIRONMENT")
    @classmethod
    def _validate_environment(cls, v: str) -> str:
        allowed = {"development", "staging", "production", "test"}
        if v not in allowed:
            raise ValueError(
                f"invalid environment: {v} (must be one of {sorted(allowed)})"
            )
        return v

    @field_validator("LOG_LEVEL")
    @classmethod
    def _validate_log_level(cls, v: str) -> str:
        level = v.lower()
        if level not in {"debug", "info", "warn", "warning", "error"}:
            raise ValueError(f"invalid log level: {v}")
        return level


settings = Settings()
