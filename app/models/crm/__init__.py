from app.models.crm.connection import Connection
from app.models.crm.contact import Contact
from app.models.crm.enums import (
    ACTIVE_IMPORT_STATUSES,
    ConnectionStatus,
    ImportJobStatus,
    ImportStatus,
    TicketStatus,
)
from app.models.crm.import_job import ImportDeadLetter, ImportJob
from app.models.crm.ticket import Message, Ticket

__all__ = [
    "ACTIVE_IMPORT_STATUSES",
    "Connection",
    "ConnectionStatus",
    "Contact",
    "ImportDeadLetter",
    "ImportJob",
    "ImportJobStatus",
    "ImportStatus",
    "Message",
    "Ticket",
    "TicketStatus",
]
