from uuid import UUID

from fastapi import APIRouter, Depends, Query, status

from app.schemas.crm.imports import (
    ImportHistoryRequest,
    ImportHistoryResponse,
    ImportStartRequest,
    ImportStartResponse,
    ImportStatusRead,
)
from app.schemas.crm.tickets import (
    CloseImportedTicketsResult,
    DeleteConnectionResult,
    TransferResult,
    TransferTicketsRequest,
)
from app.services.crm.consolidation import TicketConsolidator, get_ticket_consolidator
from app.services.crm.imports.service import ImportPipeline, get_import_pipeline

router = APIRouter(prefix="/crm/connections", tags=["crm-imports"])


@router.post("/{connection_id}/imports", response_model=ImportStartResponse, status_code=status.HTTP_202_ACCEPTED)
def start_import(
    connection_id: UUID,
    payload: ImportStartRequest,
    pipeline: ImportPipeline = Depends(get_import_pipeline),
):
    if payload.messages is None:
        return pipeline.start_import_from_gateway(connection_id, payload.company_id)
    return pipeline.start_import(connection_id, payload.company_id, payload.messages)


@router.post(
    "/{connection_id}/imports/history",
    response_model=ImportHistoryResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
def buffer_import_history(
    connection_id: UUID,
    payload: ImportHistoryRequest,
    pipeline: ImportPipeline = Depends(get_import_pipeline),
):
    return pipeline.buffer_history(connection_id, payload.messages, payload.company_id)


@router.get("/{connection_id}/imports/status", response_model=ImportStatusRead)
def get_import_status(connection_id: UUID, pipeline: ImportPipeline = Depends(get_import_pipeline)):
    return pipeline.import_status(connection_id)


@router.post("/{connection_id}/imports/close-tickets", response_model=CloseImportedTicketsResult)
def close_imported_tickets(
    connection_id: UUID,
    company_id: UUID | None = None,
    pipeline: ImportPipeline = Depends(get_import_pipeline),
):
    return pipeline.close_imported_tickets(connection_id, company_id)


@router.post("/{connection_id}/transfer-tickets", response_model=TransferResult)
def transfer_tickets(
    connection_id: UUID,
    payload: TransferTicketsRequest,
    consolidator: TicketConsolidator = Depends(get_ticket_consolidator),
):
    return consolidator.transfer_tickets(connection_id, payload.new_connection_id, payload.user_id)


@router.delete("/{connection_id}", response_model=DeleteConnectionResult)
def delete_connection(
    connection_id: UUID,
    company_id: UUID,
    user_id: UUID | None = None,
    new_connection_id: UUID | None = None,
    force: bool = Query(default=False),
    consolidator: TicketConsolidator = Depends(get_ticket_consolidator),
):
    return consolidator.delete_connection(
        connection_id,
        company_id,
        user_id=user_id,
        new_connection_id=new_connection_id,
        force=force,
    )
