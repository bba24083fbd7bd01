"""Create connection, contact, ticket, message and import job tables.

Revision ID: a1b2c3d4e5f6
Revises:
Create Date: 2026-10-19
"""

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision = "a1b2c3d4e5f6"
down_revision = None
branch_labels = None
depends_on = None

ticket_status = postgresql.ENUM("open", "pending", "closed", name="ticketstatus", create_type=False)
connection_status = postgresql.ENUM("connected", "disconnected", "qrcode", name="connectionstatus", create_type=False)
import_job_status = postgresql.ENUM(
    "enqueued", "running", "retrying", "completed", "dead_lettered", name="importjobstatus", create_type=False
)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    ]


def upgrade() -> None:
    bind = op.get_bind()
    ticket_status.create(bind, checkfirst=True)
    connection_status.create(bind, checkfirst=True)
    import_job_status.create(bind, checkfirst=True)

    op.create_table(
        "crm_connections",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("company_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("name", sa.String(120), nullable=False),
        sa.Column("status", connection_status, nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("auto_close_imported_tickets", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("import_since", sa.DateTime(timezone=True), nullable=True),
        sa.Column("import_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("import_groups", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("import_status", sa.String(40), nullable=True),
        sa.Column("import_total_messages", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("import_processed_messages", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("import_total_batches", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("import_completed_batches", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("import_started_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_crm_connections_company_id", "crm_connections", ["company_id"])

    op.create_table(
        "crm_contacts",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("company_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("name", sa.String(160), nullable=True),
        sa.Column("address", sa.String(160), nullable=False),
        sa.Column("is_group", sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
        sa.UniqueConstraint("company_id", "address", name="uq_crm_contacts_company_address"),
    )
    op.create_index("ix_crm_contacts_company_id", "crm_contacts", ["company_id"])

    op.create_table(
        "crm_tickets",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("company_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("connection_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("crm_connections.id"), nullable=True),
        sa.Column(
            "contact_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("crm_contacts.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("status", ticket_status, nullable=True),
        sa.Column("last_message", sa.String(255), nullable=True),
        sa.Column("is_group", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("imported_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_force_delete_connection", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("closed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_crm_tickets_company_id", "crm_tickets", ["company_id"])
    op.create_index("ix_crm_tickets_connection_status", "crm_tickets", ["connection_id", "status"])
    op.create_index("ix_crm_tickets_contact_connection", "crm_tickets", ["contact_id", "connection_id"])

    op.create_table(
        "crm_messages",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("ticket_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("crm_tickets.id"), nullable=False),
        sa.Column("company_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("connection_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("crm_connections.id"), nullable=True),
        sa.Column(
            "contact_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("crm_contacts.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("quoted_message_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("crm_messages.id"), nullable=True),
        sa.Column("external_id", sa.String(120), nullable=True),
        sa.Column("body", sa.Text(), nullable=True),
        sa.Column("from_me", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_system", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_imported", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=True),
        *_timestamps(),
    )
    op.create_index(
        "uq_crm_messages_connection_external",
        "crm_messages",
        ["connection_id", "external_id"],
        unique=True,
        postgresql_where=sa.text("external_id IS NOT NULL"),
    )
    op.create_index("ix_crm_messages_ticket_sent", "crm_messages", ["ticket_id", "sent_at"])

    op.create_table(
        "crm_import_jobs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("connection_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("company_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("job_type", sa.String(40), nullable=False),
        sa.Column("batch_index", sa.Integer(), nullable=False),
        sa.Column("total_batches", sa.Integer(), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("status", import_job_status, nullable=True),
        sa.Column("attempts_made", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("backoff_seconds", sa.Float(), nullable=False, server_default="5"),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="5"),
        sa.Column("remove_on_complete", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("next_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("result", sa.JSON(), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_crm_import_jobs_connection_id", "crm_import_jobs", ["connection_id"])
    op.create_index("ix_crm_import_jobs_status", "crm_import_jobs", ["status"])
    op.create_index("ix_crm_import_jobs_status_finished", "crm_import_jobs", ["status", "finished_at"])

    op.create_table(
        "crm_import_dead_letters",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("job_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("connection_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("company_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("batch_index", sa.Integer(), nullable=False),
        sa.Column("total_batches", sa.Integer(), nullable=False),
        sa.Column("attempts_made", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("raw_payload", sa.JSON(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("replayed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "ix_crm_import_dead_letters_connection_created",
        "crm_import_dead_letters",
        ["connection_id", "created_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_crm_import_dead_letters_connection_created", table_name="crm_import_dead_letters")
    op.drop_table("crm_import_dead_letters")
    op.drop_index("ix_crm_import_jobs_status_finished", table_name="crm_import_jobs")
    op.drop_index("ix_crm_import_jobs_status", table_name="crm_import_jobs")
    op.drop_index("ix_crm_import_jobs_connection_id", table_name="crm_import_jobs")
    op.drop_table("crm_import_jobs")
    op.drop_index("ix_crm_messages_ticket_sent", table_name="crm_messages")
    op.drop_index("uq_crm_messages_connection_external", table_name="crm_messages")
    op.drop_table("crm_messages")
    op.drop_index("ix_crm_tickets_contact_connection", table_name="crm_tickets")
    op.drop_index("ix_crm_tickets_connection_status", table_name="crm_tickets")
    op.drop_index("ix_crm_tickets_company_id", table_name="crm_tickets")
    op.drop_table("crm_tickets")
    op.drop_index("ix_crm_contacts_company_id", table_name="crm_contacts")
    op.drop_table("crm_contacts")
    op.drop_index("ix_crm_connections_company_id", table_name="crm_connections")
    op.drop_table("crm_connections")

    bind = op.get_bind()
    import_job_status.drop(bind, checkfirst=True)
    connection_status.drop(bind, checkfirst=True)
    ticket_status.drop(bind, checkfirst=True)
