"""Configuration loading and validation for SkaGallery."""

from __future__ import annotations

import os
import re
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, field_validator

# Hard ceiling on documents written in one batch
MAX_BATCH_WRITES = 500


class DiscordConfig(BaseModel):
    """Discord configuration."""

    gallery_channel_id: str | None = None
    guild_id: str | None = None
    admin_user_ids: list[str] = Field(default_factory=list)
    admin_role_id: str | None = None
    # Unicode zap and the custom-emoji name some clients report
    zap_emoji: list[str] = Field(default_factory=lambda: ["⚡", "zap"])
    backfill_on_ready: bool = True
    backfill_limit: int = 500


class DatabaseConfig(BaseModel):
    """Database configuration."""

    path: str = "skagallery.db"


class IngestionConfig(BaseModel):
    """Media download and storage configuration."""

    media_dir: str = "media"
    max_attempts: int = 3
    retry_delay_seconds: float = 1.0
    rate_limit_delay_seconds: float = 5.0
    timeout_seconds: float = 30.0
    image_extensions: list[str] = Field(
        default_factory=lambda: [".jpg", ".jpeg", ".png", ".gif", ".webp"]
    )

    @field_validator("max_attempts")
    @classmethod
    def validate_max_attempts(cls, v: int) -> int:
        """At least one download attempt is always made."""
        if v < 1:
            raise ValueError("max_attempts must be at least 1")
        return v


class GifProviderConfig(BaseModel):
    """Animated-GIF provider whose links are archived by URL, never downloaded."""

    name: str = "tenor"
    url_pattern: str = r"https?://(?:www\.)?tenor\.com/view/[A-Za-z0-9-]+"
    label: str = "Tenor Gif"

    @field_validator("url_pattern")
    @classmethod
    def validate_url_pattern(cls, v: str) -> str:
        """Ensure the pattern compiles."""
        try:
            re.compile(v)
        except re.error as e:
            raise ValueError(f"Invalid url_pattern: {e}")
        return v


class StatsConfig(BaseModel):
    """Statistics aggregation configuration."""

    debounce_seconds: float = 1.0
    refresh_cron: str | None = "0 4 * * *"
    timezone: str = "UTC"
    frequency_sample_size: int = 1000
    leaderboard_size: int = 5


class MigrationConfig(BaseModel):
    """Stats backfill configuration."""

    batch_size: int = MAX_BATCH_WRITES

    @field_validator("batch_size")
    @classmethod
    def validate_batch_size(cls, v: int) -> int:
        """Batch size must fit the store's batch write limit."""
        if v < 1 or v > MAX_BATCH_WRITES:
            raise ValueError(f"batch_size must be between 1 and {MAX_BATCH_WRITES}")
        return v


class Config(BaseModel):
    """Root configuration for SkaGallery."""

    data_dir: Path = Path("./data")
    log_level: str = "INFO"
    log_json: bool = True

    discord: DiscordConfig = Field(default_factory=DiscordConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    ingestion: IngestionConfig = Field(default_factory=IngestionConfig)
    gif_provider: GifProviderConfig = Field(default_factory=GifProviderConfig)
    stats: StatsConfig = Field(default_factory=StatsConfig)
    migration: MigrationConfig = Field(default_factory=MigrationConfig)

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log_level is valid."""
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR"}
        v_upper = v.upper()
        if v_upper not in allowed:
            raise ValueError(f"log_level must be one of: {allowed}")
        return v_upper

    @property
    def database_path(self) -> Path:
        """Get full path to database file."""
        return self.data_dir / self.database.path

    @property
    def media_path(self) -> Path:
        """Get the directory downloaded media is stored in."""
        return self.data_dir / self.ingestion.media_dir

    @property
    def discord_token(self) -> str | None:
        """Get Discord token from environment."""
        return os.environ.get("DISCORD_TOKEN")

    @classmethod
    def load(cls, config_path: Path | str = Path("config.yaml")) -> "Config":
        """Load configuration from YAML file with env var overlay.

        Args:
            config_path: Path to YAML configuration file.

        Returns:
            Validated Config instance.

        Raises:
            FileNotFoundError: If config file doesn't exist.
            ValueError: If config is invalid.
        """
        config_path = Path(config_path)

        if not config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        with open(config_path) as f:
            yaml_config = yaml.safe_load(f) or {}

        # Environment variable overrides
        if "SKAGALLERY_DATA_DIR" in os.environ:
            yaml_config["data_dir"] = os.environ["SKAGALLERY_DATA_DIR"]
        if "SKAGALLERY_LOG_LEVEL" in os.environ:
            yaml_config["log_level"] = os.environ["SKAGALLERY_LOG_LEVEL"]
        if "SKAGALLERY_LOG_JSON" in os.environ:
            yaml_config["log_json"] = os.environ["SKAGALLERY_LOG_JSON"].lower() == "true"
        if "GALLERY_CHANNEL_ID" in os.environ:
            yaml_config.setdefault("discord", {})["gallery_channel_id"] = os.environ[
                "GALLERY_CHANNEL_ID"
            ]

        return cls.model_validate(yaml_config)

    @classmethod
    def load_or_default(cls, config_path: Path | str | None = None) -> "Config":
        """Load configuration, falling back to defaults if file not found.

        Args:
            config_path: Optional path to YAML configuration file.

        Returns:
            Config instance (from file or defaults).
        """
        if config_path is None:
            for path in [Path("config.yaml"), Path("config.yml")]:
                if path.exists():
                    return cls.load(path)
            return cls()

        try:
            return cls.load(config_path)
        except FileNotFoundError:
            return cls()
