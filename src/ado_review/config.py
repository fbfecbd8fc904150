"""Configuration management for the review client."""

import json
import logging
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

DEFAULT_DATA_DIR = Path.home() / ".ado-review"


class TransportConfig(BaseModel):
    """Configuration for the REST transport."""

    api_version: str = Field(default="7.0", description="Service REST api-version")
    connect_timeout: float = Field(
        default=10.0, description="Connect timeout in seconds"
    )
    read_timeout: float = Field(default=30.0, description="Read timeout in seconds")
    write_timeout: float = Field(default=10.0, description="Write timeout in seconds")
    pool_timeout: float = Field(
        default=5.0, description="Connection pool checkout timeout in seconds"
    )

    # Retry configuration for transient failures (connection, timeout, 5xx, 429)
    max_attempts: int = Field(
        default=3, description="Maximum attempts per request, including the first"
    )
    initial_delay: float = Field(
        default=1.0, description="Initial delay between retries in seconds"
    )
    max_delay: float = Field(
        default=30.0, description="Upper bound for any single retry delay"
    )
    backoff_multiplier: float = Field(
        default=2.0, description="Exponential backoff multiplier"
    )
    jitter_enabled: bool = Field(default=True, description="Add up to 10% jitter")

    max_pages: int = Field(
        default=50, description="Safety limit on pages followed per paginated call"
    )
    max_concurrent_requests: int = Field(
        default=10, description="Concurrent in-flight requests per transport"
    )

    @field_validator("max_attempts", "max_pages", "max_concurrent_requests")
    @classmethod
    def must_be_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be >= 1")
        return v


class TokenConfig(BaseModel):
    """Configuration for bearer token lifecycle.

    The defaults target the Microsoft identity platform with the public
    Azure CLI client id, which is what device-code sign-in produces.
    """

    safety_margin_seconds: int = Field(
        default=60, description="Refresh tokens this many seconds before expiry"
    )
    token_endpoint: str = Field(
        default="https://login.microsoftonline.com/organizations/oauth2/v2.0/token",
        description="OAuth v2 token endpoint used for refresh_token grants",
    )
    client_id: str = Field(
        default="04b07795-8ddb-461a-bbee-02f9e1bf7b46",
        description="OAuth client id the refresh token was issued to",
    )
    scope: str = Field(
        default="499b84ac-1321-427f-aa17-267ca6975798/.default offline_access",
        description="Scope requested on refresh",
    )
    refresh_timeout: float = Field(
        default=30.0, description="Timeout for one refresh call in seconds"
    )


class AvatarCacheConfig(BaseModel):
    """Configuration for the profile picture cache."""

    capacity: int = Field(default=256, description="Maximum cached pictures")
    ttl_seconds: float = Field(
        default=3600.0, description="Lifetime of a cached picture"
    )
    negative_ttl_seconds: float = Field(
        default=60.0, description="Lifetime of a cached fetch failure"
    )
    size: int = Field(default=24, description="Requested picture size in pixels")


class PollingConfig(BaseModel):
    """Configuration for watch loops."""

    comments_interval: float = Field(
        default=5.0, description="Seconds between comment thread polls"
    )
    log_interval: float = Field(
        default=2.0, description="Seconds between pipeline log polls"
    )
    pull_requests_interval: float = Field(
        default=30.0, description="Seconds between pull request list polls"
    )
    max_interval: float = Field(
        default=60.0, description="Upper bound for the interval after errors"
    )
    max_backoff_multiplier: float = Field(
        default=8.0, description="Maximum interval multiplier after errors"
    )


class WorkerPoolConfig(BaseModel):
    """Configuration for background execution."""

    max_workers: int = Field(
        default=4, description="Operations allowed to run concurrently"
    )


class Config(BaseModel):
    """Main configuration for the review client."""

    data_dir: Path = Field(
        default=DEFAULT_DATA_DIR,
        description="Directory for account records and other local state",
    )
    transport: TransportConfig = Field(default_factory=TransportConfig)
    tokens: TokenConfig = Field(default_factory=TokenConfig)
    avatars: AvatarCacheConfig = Field(default_factory=AvatarCacheConfig)
    polling: PollingConfig = Field(default_factory=PollingConfig)
    workers: WorkerPoolConfig = Field(default_factory=WorkerPoolConfig)

    @field_validator("data_dir", mode="before")
    @classmethod
    def convert_path(cls, v: Any) -> Path:
        """Convert string paths to Path objects."""
        if isinstance(v, str):
            return Path(v).expanduser()
        return v

    @property
    def accounts_dir(self) -> Path:
        return self.data_dir / "accounts"


class ConfigManager:
    """Manages configuration loading, saving, and validation."""

    DEFAULT_CONFIG_PATH = DEFAULT_DATA_DIR / "config.json"

    def __init__(self, config_path: Optional[Path] = None):
        self.config_path = config_path or self.DEFAULT_CONFIG_PATH
        self._config: Optional[Config] = None

    def load(self) -> Config:
        """Load configuration from file, or defaults when the file is missing."""
        if self.config_path.exists():
            try:
                with open(self.config_path, "r") as f:
                    data = json.load(f)
                self._config = Config(**data)
            except Exception as e:
                raise ValueError(f"Failed to load config from {self.config_path}: {e}")
        else:
            logger.debug(f"No config at {self.config_path}, using defaults")
            self._config = Config()

        return self._config

    def save(self, config: Optional[Config] = None) -> None:
        """Save configuration to file."""
        if config is None:
            config = self._config

        if config is None:
            raise ValueError("No configuration to save")

        self.config_path.parent.mkdir(parents=True, exist_ok=True)

        with open(self.config_path, "w") as f:
            f.write(config.model_dump_json(indent=2))
        self._config = config

    def get_config(self) -> Config:
        """Get current configuration, loading if necessary."""
        if self._config is None:
            self.load()
        if self._config is None:
            raise RuntimeError("Failed to load configuration")
        return self._config

    def update_config(self, **kwargs: Any) -> Config:
        """Update configuration with new values."""
        config = self.get_config()

        config_dict = config.model_dump()
        config_dict.update(kwargs)

        new_config = Config(**config_dict)
        self.save(new_config)
        return new_config
