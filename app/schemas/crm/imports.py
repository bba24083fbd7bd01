from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from app.config import settings

IMPORT_BATCH_JOB = "import_batch"


class RawInboundMessage(BaseModel):
    """A message as delivered by the gateway history sync."""

    model_config = ConfigDict(frozen=True)

    external_id: str = Field(min_length=1, max_length=120)
    routing_key: str = Field(min_length=1, max_length=160)
    timestamp: datetime
    payload: dict[str, Any] = Field(default_factory=dict)
    is_group: bool = False
    from_me: bool = False
    push_name: str | None = Field(default=None, max_length=160)
    quoted_external_id: str | None = Field(default=None, max_length=120)

    @field_validator("timestamp", mode="before")
    @classmethod
    def _coerce_timestamp(cls, value):
        # Gateways report epoch seconds; naive datetimes are taken as UTC.
        if isinstance(value, int | float) and not isinstance(value, bool):
            return datetime.fromtimestamp(value, UTC)
        if isinstance(value, str) and value.isdigit():
            return datetime.fromtimestamp(int(value), UTC)
        return value

    @field_validator("timestamp")
    @classmethod
    def _ensure_aware(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value

    @property
    def body(self) -> str | None:
        for key in ("body", "text", "conversation", "caption"):
            value = self.payload.get(key)
            if isinstance(value, str) and value:
                return value
        return None


class NormalizedMessageBatch(BaseModel):
    batch_index: int = Field(ge=0)
    total_batches: int = Field(ge=1)
    messages: list[RawInboundMessage]

    @property
    def label(self) -> str:
        return f"Batch {self.batch_index + 1}/{self.total_batches}"


class ImportBatchPayload(BaseModel):
    """Queue payload for one import batch, validated before it is stored."""

    job_type: Literal["import_batch"] = IMPORT_BATCH_JOB
    connection_id: UUID
    company_id: UUID
    messages: list[RawInboundMessage] = Field(min_length=1)
    batch_index: int = Field(ge=0)
    total_batches: int = Field(ge=1)

    @model_validator(mode="after")
    def _check_batch_bounds(self):
        if self.batch_index >= self.total_batches:
            raise ValueError("batch_index must be lower than total_batches")
        return self

    @property
    def is_last_batch(self) -> bool:
        return self.batch_index == self.total_batches - 1

    @property
    def batch_label(self) -> str:
        return f"Batch {self.batch_index + 1}/{self.total_batches}"


class JobOptions(BaseModel):
    attempts: int = Field(default_factory=lambda: settings.import_job_attempts, ge=1)
    backoff_seconds: float = Field(default_factory=lambda: settings.import_job_backoff_seconds, ge=0)
    priority: int = Field(default_factory=lambda: settings.import_job_priority, ge=0, le=9)
    remove_on_complete: bool = True


class JobHandle(BaseModel):
    job_id: UUID
    batch_index: int
    total_batches: int


class ImportProgress(BaseModel):
    processed_count: int
    total_count: int
    status_label: str
    batch_label: str | None = None

    @property
    def percent(self) -> int:
        if self.total_count <= 0:
            return 0
        return round(self.processed_count / self.total_count * 100)


class ImportStartRequest(BaseModel):
    """Messages to import; omit them to import the gateway's buffered history."""

    company_id: UUID
    messages: list[RawInboundMessage] | None = None


class ImportHistoryRequest(BaseModel):
    """History-sync messages delivered by the gateway session listener."""

    company_id: UUID | None = None
    messages: list[RawInboundMessage]


class ImportHistoryResponse(BaseModel):
    connection_id: UUID
    buffered: int


class ImportStartResponse(BaseModel):
    connection_id: UUID
    status: str
    total_messages: int
    total_batches: int


class ImportStatusRead(BaseModel):
    connection_id: UUID
    status: str
    total_messages: int
    imported_messages: int
    completed_batches: int
    total_batches: int
    batch_info: str | None = None
