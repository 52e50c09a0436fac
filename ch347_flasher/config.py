"""Configuration settings for ch347_flasher.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from ch347_flasher.types import SpiClock


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the CH347_ prefix.
    CLI flags can override these at runtime.
    """

    model_config = SettingsConfigDict(
        env_prefix="CH347_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Bridge
    spi_clock: SpiClock = Field(
        default=SpiClock.CLK_15MHZ,
        description="SPI clock (60MHz down to 468.75kHz)",
    )
    usb_timeout_ms: int = Field(
        default=1000,
        ge=100,
        description="Timeout for a single USB bulk transfer",
    )

    # Chip database
    chip_db_path: Path | None = Field(
        default=None,
        description="Optional YAML file with additional chip records",
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )

    # Ready-polling budgets (in milliseconds). These are floors; only
    # larger values are accepted.
    page_program_timeout_ms: int = Field(
        default=10,
        ge=10,
        description="Budget for a page program to complete",
    )
    sector_erase_timeout_ms: int = Field(
        default=500,
        ge=500,
        description="Budget for a 4 KiB sector erase to complete",
    )
    block_erase_timeout_ms: int = Field(
        default=3000,
        ge=3000,
        description="Budget for a 64 KiB block erase to complete",
    )
    chip_erase_timeout_ms: int = Field(
        default=200000,
        ge=200000,
        description="Budget for a full chip erase to complete",
    )

    # Write behaviour
    erase_before_write: bool = Field(
        default=True,
        description="Erase the covered sectors before programming an image",
    )
    verify_after_write: bool = Field(
        default=True,
        description="Read back and compare after programming an image",
    )


def get_settings() -> Settings:
    """Get the application settings singleton.

    Returns:
        Settings instance loaded from environment.
    """
    return Settings()


def print_settings_json(settings: Settings | None = None) -> str:
    """Render effective settings as JSON.

    Args:
        settings: Optional settings instance; uses default if not provided.

    Returns:
        JSON string of effective settings.
    """
    if settings is None:
        settings = get_settings()
    return settings.model_dump_json(indent=2)


__all__ = ["Settings", "get_settings", "print_settings_json"]
