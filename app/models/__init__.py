from app.models.crm import (  # noqa: F401
    Connection,
    Contact,
    ImportDeadLetter,
    ImportJob,
    Message,
    Ticket,
)
