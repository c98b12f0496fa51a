"""
Centralized Settings for CraftStudio

Provides pydantic-based settings with:
- Environment variable loading (.env support)
- Type validation
- Default values

These are process-level settings (where files live, timing knobs). The
user-editable application document lives in ``craftstudio.config.store``.

Usage:
    from craftstudio.core.config import get_config

    settings = get_config()
    print(settings.config_file)
"""

from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class CraftStudioSettings(BaseSettings):
    """
    Process-level configuration for CraftStudio

    All settings can be overridden via environment variables with the
    CRAFTSTUDIO_ prefix, e.g. CRAFTSTUDIO_HOME, CRAFTSTUDIO_LOG_LEVEL.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="CRAFTSTUDIO_",
        case_sensitive=False,
        extra="ignore",
    )

    # ============================================
    # Filesystem Layout
    # ============================================

    home: Path = Field(
        default_factory=lambda: Path.home() / ".craftstudio",
        description="Directory holding config.json, pid files and logs",
    )

    nodes_dir: Path = Field(
        default_factory=lambda: Path.home() / ".datacraft" / "nodes",
        description="Parent directory for generated instance data directories",
    )

    # ============================================
    # Daemon Supervision
    # ============================================

    daemon_binary: str = Field(
        default="craftobj-daemon",
        description="Daemon executable name or path",
    )

    daemon_host: str = Field(
        default="127.0.0.1",
        description="Host the daemon control channel listens on",
    )

    stop_grace_seconds: float = Field(
        default=0.5,
        description="Pause between stopping a daemon and starting it again",
    )

    reconnect_interval_seconds: float = Field(
        default=3.0,
        description="Delay before the control channel reconnects",
    )

    request_timeout_seconds: float = Field(
        default=30.0,
        description="Per-request timeout for control channel calls",
    )

    activity_log_capacity: int = Field(
        default=50,
        description="Activity events kept per instance",
    )

    daemon_log_capacity: int = Field(
        default=500,
        description="Captured daemon output lines returned per daemon",
    )

    # ============================================
    # Logging
    # ============================================

    log_level: str = Field(
        default="INFO",
        description="Logging level: DEBUG, INFO, WARNING, ERROR, CRITICAL",
    )

    log_file: Optional[Path] = Field(
        default=None,
        description="Optional file receiving the application log",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level"""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(
                f"log_level must be one of: {', '.join(valid_levels)}"
            )
        return v.upper()

    @field_validator("stop_grace_seconds", "reconnect_interval_seconds", "request_timeout_seconds")
    @classmethod
    def validate_non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("timing values must not be negative")
        return v

    @property
    def config_file(self) -> Path:
        return self.home.expanduser() / "config.json"

    @property
    def run_dir(self) -> Path:
        return self.home.expanduser() / "run"

    @property
    def log_dir(self) -> Path:
        return self.home.expanduser() / "logs"


# Global settings instance
_config: Optional[CraftStudioSettings] = None


def get_config(force_reload: bool = False) -> CraftStudioSettings:
    """
    Get the global settings instance

    Args:
        force_reload: Re-read settings from the environment

    Returns:
        CraftStudioSettings instance
    """
    global _config

    if _config is None or force_reload:
        _config = CraftStudioSettings()

    return _config
