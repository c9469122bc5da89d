"""Data models and schemas for Relaystat proxy."""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class AgentTag(str, Enum):
    """Caller role used to group telemetry."""
    MANAGER = "manager"
    CODER = "coder"
    TESTER = "tester"

    @classmethod
    def default(cls) -> "AgentTag":
        return cls.MANAGER


class TelemetryRecord(BaseModel):
    """One completed proxy request."""

    model_config = ConfigDict(frozen=True)

    id: Optional[int] = None
    timestamp: int = Field(ge=0)
    agent: AgentTag = AgentTag.MANAGER
    in_bytes: int = Field(ge=0)
    estimated_tokens: int = Field(ge=0)
    out_bytes: int = Field(ge=0)
    upstream_status: int = Field(ge=0)
    duration_ms: int = Field(ge=0)


class AgentSummary(BaseModel):
    """Aggregated telemetry for one agent."""
    agent: str
    requests: int
    sum_in: int
    sum_out: int
    avg_ms: float


class ErrorDetail(BaseModel):
    message: str
    type: str


class ErrorBody(BaseModel):
    """Structured error returned for every failed request."""
    error: ErrorDetail
