from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from app.models.crm.enums import TicketStatus


class TicketUpdate(BaseModel):
    status: TicketStatus | None = None
    connection_id: UUID | None = None
    user_id: UUID | None = None
    last_message: str | None = Field(default=None, max_length=255)
    is_force_delete_connection: bool | None = None


class TicketRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    company_id: UUID
    connection_id: UUID | None = None
    contact_id: UUID | None = None
    user_id: UUID | None = None
    status: TicketStatus
    last_message: str | None = None
    imported_at: datetime | None = None
    is_force_delete_connection: bool = False
    closed_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class TransferTicketsRequest(BaseModel):
    new_connection_id: UUID
    user_id: UUID | None = None


class DeleteConnectionRequest(BaseModel):
    new_connection_id: UUID | None = None
    user_id: UUID | None = None


class TransferResult(BaseModel):
    moved: int = 0
    merged: int = 0
    failed: int = 0
    failed_ticket_ids: list[UUID] = Field(default_factory=list)


class ForceCloseResult(BaseModel):
    closed: int = 0
    with_message: int = 0
    failed: int = 0
    failed_ticket_ids: list[UUID] = Field(default_factory=list)


class CloseImportedTicketsResult(BaseModel):
    closed: int = 0
    failed: int = 0


class DeleteConnectionResult(BaseModel):
    connection_id: UUID
    transfer: TransferResult | None = None
    force_close: ForceCloseResult | None = None
