"""Configuration management for the lending library.

Settings are loaded once per process from the environment (prefix
``LENDING_LIBRARY_``) or a ``.env`` file and are frozen afterwards:
fine rates, grace periods and hold windows never change during a run.
"""

from decimal import ROUND_HALF_UP, Decimal
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class LibraryConfig(BaseSettings):
    """Process-wide lending configuration.

    The circulation rules (fine rate, grace period, hold window, default
    loan period) are handed to the Fine Calculator and the Reservation
    Queue at construction, so tests can build their own instances with
    different values instead of touching global state.
    """

    model_config = SettingsConfigDict(
        env_prefix="LENDING_LIBRARY_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        frozen=True,
    )

    # === Circulation Rules ===

    daily_fine_rate: Decimal = Field(
        default=Decimal("1.00"),
        description="Fine charged per billable overdue day",
        ge=0,
    )

    grace_period_days: int = Field(
        default=0,
        description="Days past the due date that do not accrue a fine",
        ge=0,
    )

    reservation_hold_duration_hours: int = Field(
        default=48,
        description="How long a promoted hold waits for its patron before expiring",
        ge=1,
    )

    default_loan_days: int = Field(
        default=14,
        description="Loan period used when the borrower supplies no due date",
        ge=1,
    )

    # === Storage ===

    database_path: Path = Field(
        default=Path("data/library.db"),
        description="Where the SQLite lending database lives",
    )

    # === MCP Server ===

    server_name: str = Field(
        default="lending-library",
        description="Name announced to MCP clients",
        min_length=3,
        max_length=50,
        pattern=r"^[a-z0-9-]+$",
    )

    server_version: str = Field(
        default="0.1.0",
        description="Version announced to MCP clients",
        pattern=r"^\d+\.\d+\.\d+(-[a-zA-Z0-9.]+)?$",
    )

    transport: str = Field(
        default="stdio",
        description="How `lending-library serve` talks to clients",
        pattern=r"^(stdio|streamable-http)$",
    )

    # === Logging ===

    debug: bool = Field(default=False, description="Log at DEBUG regardless of log_level")

    log_level: str = Field(
        default="INFO",
        description="Root log level for the server and CLI",
        pattern=r"^(DEBUG|INFO|WARNING|ERROR)$",
    )

    @field_validator("daily_fine_rate")
    @classmethod
    def quantize_fine_rate(cls, v: Decimal) -> Decimal:
        """Fine amounts are fixed-point with two decimal places."""
        return v.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)

    @field_validator("database_path")
    @classmethod
    def make_absolute(cls, v: Path) -> Path:
        return v.absolute()

    @property
    def is_development(self) -> bool:
        return self.debug or self.log_level == "DEBUG"

    @property
    def effective_log_level(self) -> str:
        return "DEBUG" if self.is_development else self.log_level

    def get_database_url(self) -> str:
        return f"sqlite:///{self.database_path}"


class _ConfigStore:
    instance: LibraryConfig | None = None


def get_config() -> LibraryConfig:
    """The process configuration, loaded on first use."""
    if _ConfigStore.instance is None:
        _ConfigStore.instance = LibraryConfig()
    return _ConfigStore.instance


def reset_config() -> None:
    """Forget the loaded configuration so the next get_config() re-reads it."""
    _ConfigStore.instance = None
