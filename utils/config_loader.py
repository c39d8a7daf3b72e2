"""Configuration loader that reads from .env and validates with Pydantic."""

import os
import sys
from pathlib import Path
from dotenv import load_dotenv
from pydantic import ValidationError

from models.config_models import (
    DEFAULT_BITBUCKET_LAMBDA_FETCH_URL,
    DEFAULT_LAMBDA_FETCH_URL,
    Config,
    CredentialsConfig,
)


def load_config() -> Config:
    """
    Load and validate configuration from environment variables.

    Reads from .env file in the project root and validates all required
    credentials and settings using Pydantic models.

    Returns:
        Config: Validated configuration object

    Raises:
        SystemExit: If configuration is invalid or missing required fields
    """
    env_path = Path(__file__).parent.parent / ".env"
    load_dotenv(dotenv_path=env_path)

    try:
        config = Config(
            credentials=CredentialsConfig(
                supabase_url=os.getenv("SUPABASE_URL", ""),
                supabase_key=os.getenv("SUPABASE_KEY", ""),
                database_url=os.getenv("DATABASE_URL"),
                lambda_fetch_url=os.getenv("LAMBDA_FETCH_URL") or DEFAULT_LAMBDA_FETCH_URL,
                bitbucket_lambda_fetch_url=(
                    os.getenv("BITBUCKET_LAMBDA_FETCH_URL") or DEFAULT_BITBUCKET_LAMBDA_FETCH_URL
                ),
                redis_url=os.getenv("REDIS_URL"),
            ),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            fetch_cache_ttl=os.getenv("REDIS_FETCH_CACHE_TTL") or 3600,
            fetch_days_prior=os.getenv("FETCH_DAYS_PRIOR") or 90,
            fetch_workers=os.getenv("FETCH_WORKERS") or 4,
        )

        return config

    except ValidationError as e:
        print("❌ Configuration validation failed:", file=sys.stderr)
        print("\nPlease check your .env file. Missing or invalid fields:", file=sys.stderr)

        for error in e.errors():
            field_path = " → ".join(str(x) for x in error["loc"])
            message = error["msg"]
            print(f"  • {field_path}: {message}", file=sys.stderr)

        print("\nHint: Copy .env.example to .env and fill in your credentials.", file=sys.stderr)
        sys.exit(1)
