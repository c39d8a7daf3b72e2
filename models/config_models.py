"""Configuration models for validation using Pydantic."""

from typing import Optional
from pydantic import BaseModel, Field, field_validator


DEFAULT_LAMBDA_FETCH_URL = "https://rorxix2ixb5u74brkfubsv7rw40asact.lambda-url.ap-south-1.on.aws/"
DEFAULT_BITBUCKET_LAMBDA_FETCH_URL = "https://5hmjbahzmdlhp7fbi4qqu4iuoi0yaopc.lambda-url.ap-south-1.on.aws/"


class CredentialsConfig(BaseModel):
    """Service endpoints and credentials loaded from environment variables."""

    # Supabase (required)
    supabase_url: str = Field(..., min_length=1, description="Supabase project URL")
    supabase_key: str = Field(..., min_length=1, description="Supabase service role key")
    database_url: Optional[str] = Field(None, description="PostgreSQL database URL (optional, for schema setup)")

    # Upstream fetch service
    lambda_fetch_url: str = Field(default=DEFAULT_LAMBDA_FETCH_URL, description="GitHub fetch Lambda URL")
    bitbucket_lambda_fetch_url: str = Field(
        default=DEFAULT_BITBUCKET_LAMBDA_FETCH_URL,
        description="Bitbucket fetch Lambda URL"
    )

    # Fetch cache (optional - caching disabled when unset)
    redis_url: Optional[str] = Field(None, description="Redis URL for the fetch response cache")

    @field_validator("supabase_url")
    @classmethod
    def validate_supabase_url(cls, v: str) -> str:
        """Validate Supabase URL format."""
        if not v or v == "https://your-project.supabase.co":
            raise ValueError("Supabase URL must be set in .env file")
        if not v.startswith("https://"):
            raise ValueError("Supabase URL must start with https://")
        return v

    @field_validator("supabase_key")
    @classmethod
    def validate_supabase_key(cls, v: str) -> str:
        """Validate Supabase key is set."""
        if not v or v == "your_supabase_service_role_key_here":
            raise ValueError("Supabase key must be set in .env file")
        return v

    @field_validator("lambda_fetch_url", "bitbucket_lambda_fetch_url")
    @classmethod
    def validate_fetch_url(cls, v: str) -> str:
        """Validate fetch service URLs are http(s) URLs."""
        if not v.startswith(("https://", "http://")):
            raise ValueError("Fetch service URL must start with http:// or https://")
        return v

    @field_validator("redis_url", mode="before")
    @classmethod
    def blank_redis_url_is_unset(cls, v: Optional[str]) -> Optional[str]:
        """Treat an empty REDIS_URL as not configured."""
        if v is None:
            return None
        v = v.strip()
        return v or None


class Config(BaseModel):
    """Application configuration."""

    credentials: CredentialsConfig
    log_level: str = Field(default="INFO", description="Logging level")
    fetch_cache_ttl: int = Field(default=3600, gt=0, description="Fetch cache TTL in seconds")
    fetch_days_prior: int = Field(default=90, gt=0, description="Default history window for first fetch")
    fetch_workers: int = Field(default=4, ge=1, le=32, description="Background fetch worker threads")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is one of the standard levels."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"Log level must be one of: {', '.join(valid_levels)}")
        return v_upper
