"""
PartVault configuration management.

Provides centralized configuration with validation using Pydantic.
"""

from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, field_validator

DEFAULT_HOME = Path.home() / ".partvault"


def _expand(v: str | Path | None) -> Path | None:
    if v is None:
        return None
    return Path(v).expanduser().resolve()


class LoggingConfig(BaseModel):
    """Configuration for structured logging."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    file_enabled: bool = True
    console_enabled: bool = True
    json_format: bool = False
    log_directory: Path = Field(default_factory=lambda: DEFAULT_HOME / "logs")

    @field_validator("log_directory", mode="before")
    @classmethod
    def expand_path(cls, v: str | Path) -> Path:
        return Path(v).expanduser().resolve()


class SafetyConfig(BaseModel):
    """Configuration for safety features."""

    require_confirmation: bool = True
    preflight_checks_enabled: bool = True
    live_source_protection: bool = True
    system_disk_protection: bool = True
    mounted_target_protection: bool = True


class ArchiveConfig(BaseModel):
    """Configuration for archive operations."""

    compression: Literal["auto", "zstd", "pigz", "gzip", "lz4", "none"] = "auto"
    compression_level: int = Field(default=3, ge=1, le=22)
    raw_block_size_mb: int = Field(default=16, ge=1, le=1024)
    scratch_directory: Path | None = None
    progress_interval_seconds: float = Field(default=0.5, gt=0, le=10)

    @field_validator("scratch_directory", mode="before")
    @classmethod
    def expand_scratch(cls, v: str | Path | None) -> Path | None:
        return _expand(v)


class RestoreConfig(BaseModel):
    """Configuration for restore operations."""

    compact_start_lba: int = Field(default=2048, ge=34)
    grow_filesystems: bool = True
    # Root reserve set on ext4 filesystems grown on a target; None keeps the existing reserve
    ext4_reserved_percent: int | None = Field(default=None, ge=0, le=50)
    retain_scratch_on_failure: bool = True
    scratch_directory: Path | None = None

    @field_validator("scratch_directory", mode="before")
    @classmethod
    def expand_scratch(cls, v: str | Path | None) -> Path | None:
        return _expand(v)


class PartVaultConfig(BaseModel):
    """Main PartVault configuration."""

    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    safety: SafetyConfig = Field(default_factory=SafetyConfig)
    archive: ArchiveConfig = Field(default_factory=ArchiveConfig)
    restore: RestoreConfig = Field(default_factory=RestoreConfig)
    session_directory: Path = Field(default_factory=lambda: DEFAULT_HOME / "sessions")

    @field_validator("session_directory", mode="before")
    @classmethod
    def expand_session_path(cls, v: str | Path) -> Path:
        return Path(v).expanduser().resolve()

    @property
    def raw_block_size_bytes(self) -> int:
        return self.archive.raw_block_size_mb * 1024 * 1024

    @classmethod
    def load(cls, config_path: Path | None = None) -> PartVaultConfig:
        """Load configuration from file or create default."""
        if config_path is None:
            config_path = DEFAULT_HOME / "config.json"

        if config_path.exists():
            with open(config_path) as f:
                data = json.load(f)
            return cls.model_validate(data)

        return cls()

    def save(self, config_path: Path | None = None) -> None:
        """Save configuration to file."""
        if config_path is None:
            config_path = DEFAULT_HOME / "config.json"

        config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(config_path, "w") as f:
            json.dump(self.model_dump(mode="json"), f, indent=2, default=str)

    def ensure_directories(self) -> None:
        """Create all required directories."""
        self.logging.log_directory.mkdir(parents=True, exist_ok=True)
        self.session_directory.mkdir(parents=True, exist_ok=True)
        for scratch in (self.archive.scratch_directory, self.restore.scratch_directory):
            if scratch:
                scratch.mkdir(parents=True, exist_ok=True)

    def get_session_file(self) -> Path:
        """Get path for a new session audit file."""
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        return self.session_directory / f"session_{timestamp}.jsonl"


def load_config(config_path: Path | None = None) -> PartVaultConfig:
    """Load or create configuration."""
    config = PartVaultConfig.load(config_path)
    config.ensure_directories()
    return config
