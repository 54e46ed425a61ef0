from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from chatrelay.exceptions import ConfigurationError


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Follows 12-factor app configuration principles.

    Built once at startup by load_settings() and handed to every component
    that needs it.
    """

    # env_file is only used as fallback, env vars take precedence
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Logging backend - BEARER_TOKEN is required
    BEARER_TOKEN: str
    LOG_API_ENDPOINT: str = "https://backend.railse.com/whatsapp/log-message"
    ADMIN_PHONE: str = ""

    # Local history database
    DATABASE_URL: str = "sqlite:///store/messages.db"

    # Logging Configuration
    LOG_LEVEL: str = "INFO"

    # AWS queue and object store
    AWS_REGION: str = "us-east-1"
    AWS_SQS_QUEUE_NAME: str = ""
    AWS_SQS_QUEUE_URL: str = ""
    AWS_SQS_DEAD_LETTER_QUEUE_NAME: str = ""
    AWS_S3_BUCKET_NAME: str = ""

    # Consumer loop
    POLL_BATCH_SIZE: int = Field(default=10, ge=1, le=10)
    POLL_WAIT_SECONDS: int = Field(default=5, ge=0, le=20)
    POLL_INTERVAL_SECONDS: float = Field(default=10.0, ge=0)
    MAX_MALFORMED_RECEIVES: int = Field(default=5, ge=1)

    # Forwarder timeouts
    FETCH_TIMEOUT_SECONDS: float = 30.0
    POST_TIMEOUT_SECONDS: float = 15.0

    # Relay history-sync messages to the backend as well as storing them
    RELAY_HISTORY: bool = False

    # Command surface
    API_HOST: str = "0.0.0.0"
    API_PORT: int = 6000

    @field_validator("BEARER_TOKEN", "LOG_API_ENDPOINT")
    @classmethod
    def validate_not_blank(cls, v: str, info) -> str:
        """Reject credentials and endpoints that are only whitespace."""
        if not v.strip():
            raise ValueError(f"{info.field_name} must not be empty")
        return v.strip()


def load_settings(**overrides) -> Settings:
    """
    Build the settings for this process.

    Raises:
        ConfigurationError: if a required option is missing or invalid.
    """
    try:
        return Settings(**overrides)
    except ValidationError as e:
        missing = ", ".join(str(err["loc"][0]) for err in e.errors() if err.get("loc"))
        raise ConfigurationError(f"Invalid configuration ({missing}): {e}") from e
