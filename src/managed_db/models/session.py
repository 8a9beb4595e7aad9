"""Session metadata model."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class SessionMetadata(BaseModel):
    """Last-known backend metadata for a session."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    name: str
    create_time: datetime | None = Field(default=None, alias="createTime")
    approximate_last_use_time: datetime | None = Field(
        default=None, alias="approximateLastUseTime"
    )
    labels: dict[str, str] = Field(default_factory=dict)

    @classmethod
    def from_response(cls, response: dict[str, Any]) -> "SessionMetadata":
        """Parse a createSession / getSession response."""
        return cls.model_validate(response)
