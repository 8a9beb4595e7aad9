"""Pool and transaction option models."""

from datetime import datetime
from typing import Any, Self

from pydantic import BaseModel, ConfigDict, Field, model_validator

from managed_db.config import (
    get_pool_acquire_timeout,
    get_pool_keep_alive,
    get_pool_max,
    get_pool_min,
    get_pool_write_fraction,
)

# Transactions that keep aborting give up after an hour
DEFAULT_TRANSACTION_TIMEOUT = 3600.0


class PoolOptions(BaseModel):
    """Sizing and housekeeping settings for a session pool."""

    model_config = ConfigDict(extra="forbid")

    min_sessions: int = Field(default=25, ge=0)
    max_sessions: int = Field(default=100, ge=1)
    max_idle: int = Field(default=1, ge=0)
    write_fraction: float = Field(default=0.0, ge=0.0, le=1.0)
    acquire_timeout: float = Field(default=30.0, gt=0)
    concurrency: int = Field(default=10, ge=1)
    fail_on_exhausted: bool = False
    keep_alive: float = Field(default=1800.0, gt=0)
    idle_timeout: float = Field(default=600.0, gt=0)
    labels: dict[str, str] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _check_bounds(self) -> Self:
        if self.min_sessions > self.max_sessions:
            raise ValueError(
                f"min_sessions ({self.min_sessions}) exceeds max_sessions ({self.max_sessions})"
            )
        return self

    @classmethod
    def from_env(cls, **overrides: Any) -> "PoolOptions":
        """Build options from MDB_POOL_* variables, with keyword overrides."""
        values: dict[str, Any] = {
            "min_sessions": get_pool_min(),
            "max_sessions": get_pool_max(),
            "acquire_timeout": get_pool_acquire_timeout(),
            "keep_alive": get_pool_keep_alive(),
            "write_fraction": get_pool_write_fraction(),
        }
        values.update(overrides)
        return cls(**values)


class TransactionOptions(BaseModel):
    """Mode, timestamp bound and retry window for a transaction or read.

    Staleness values are seconds. ``timeout`` bounds how long an aborting
    read/write transaction keeps retrying.
    """

    model_config = ConfigDict(extra="forbid")

    read_only: bool = False
    strong: bool | None = None
    read_timestamp: datetime | None = None
    min_read_timestamp: datetime | None = None
    exact_staleness: float | None = Field(default=None, ge=0)
    max_staleness: float | None = Field(default=None, ge=0)
    return_read_timestamp: bool | None = None
    timeout: float | None = Field(default=None, gt=0)

    @classmethod
    def coerce(cls, options: "TransactionOptions | dict[str, Any] | None") -> "TransactionOptions":
        """Return ``options`` unchanged if already a model, else validate it."""
        if isinstance(options, cls):
            return options
        return cls.model_validate(options or {})
