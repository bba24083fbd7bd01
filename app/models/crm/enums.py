import enum


class TicketStatus(enum.Enum):
    open = "open"
    pending = "pending"
    closed = "closed"


class ConnectionStatus(enum.Enum):
    connected = "connected"
    disconnected = "disconnected"
    qrcode = "qrcode"


class ImportStatus(enum.Enum):
    """Import/ticket lifecycle of a connection.

    ``idle`` is never stored: an idle connection has a NULL import status.
    """

    idle = "idle"
    preparing = "preparing"
    running = "Running"
    closing = "closing"
    awaiting_manual_close = "awaiting-manual-close"
    error = "error"


ACTIVE_IMPORT_STATUSES = frozenset({ImportStatus.preparing, ImportStatus.running, ImportStatus.closing})


class ImportJobStatus(enum.Enum):
    enqueued = "enqueued"
    running = "running"
    retrying = "retrying"
    completed = "completed"
    dead_lettered = "dead_lettered"
