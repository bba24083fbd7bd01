import uuid
from datetime import UTC, datetime

from sqlalchemy import Boolean, DateTime, Enum, Integer, String
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db import Base
from app.models.crm.enums import ConnectionStatus, ImportStatus


class Connection(Base):
    """A gateway session (one phone-number-backed account) owned by a company.

    ``import_status`` keeps the raw lifecycle label so observers polling the
    row see the same value the progress events carry; NULL means idle.
    """

    __tablename__ = "crm_connections"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    company_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    status: Mapped[ConnectionStatus] = mapped_column(
        Enum(ConnectionStatus), default=ConnectionStatus.disconnected
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    auto_close_imported_tickets: Mapped[bool] = mapped_column(Boolean, default=False)
    import_since: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    import_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    import_groups: Mapped[bool] = mapped_column(Boolean, default=False)

    import_status: Mapped[str | None] = mapped_column(String(40))
    import_total_messages: Mapped[int] = mapped_column(Integer, default=0)
    import_processed_messages: Mapped[int] = mapped_column(Integer, default=0)
    import_total_batches: Mapped[int] = mapped_column(Integer, default=0)
    import_completed_batches: Mapped[int] = mapped_column(Integer, default=0)
    import_started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(UTC))
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )

    tickets = relationship("Ticket", back_populates="connection")

    @property
    def import_state(self) -> ImportStatus:
        if not self.import_status:
            return ImportStatus.idle
        return ImportStatus(self.import_status)

    def set_import_state(self, state: ImportStatus) -> None:
        self.import_status = None if state == ImportStatus.idle else state.value
