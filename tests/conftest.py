import os
import sqlite3
import uuid
from datetime import UTC, datetime

import pytest
from dotenv import load_dotenv
from sqlalchemy import create_engine, event
from sqlalchemy.engine.url import make_url
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

load_dotenv(os.path.join(os.getcwd(), ".env"))

# Register UUID adapter for SQLite - store as string
sqlite3.register_adapter(uuid.UUID, lambda u: str(u))


# Monkey-patch SQLAlchemy's UUID type for SQLite compatibility
# This must happen before any models are imported
from sqlalchemy.sql import sqltypes  # noqa: E402

_original_uuid_bind_processor = sqltypes.Uuid.bind_processor
_original_uuid_result_processor = sqltypes.Uuid.result_processor


def _sqlite_uuid_bind_processor(self, dialect):
    if dialect.name == "sqlite":
        def process(value):
            if value is not None:
                if isinstance(value, uuid.UUID):
                    return str(value)
                return str(uuid.UUID(value)) if value else None
            return None
        return process
    return _original_uuid_bind_processor(self, dialect)


def _sqlite_uuid_result_processor(self, dialect, coltype):
    if dialect.name == "sqlite":
        def process(value):
            if value is not None:
                if isinstance(value, uuid.UUID):
                    return value
                return uuid.UUID(value) if value else None
            return None
        return process
    return _original_uuid_result_processor(self, dialect, coltype)


sqltypes.Uuid.bind_processor = _sqlite_uuid_bind_processor
sqltypes.Uuid.result_processor = _sqlite_uuid_result_processor

import app.models  # noqa: E402,F401
from app.db import Base  # noqa: E402
from app.models.crm.connection import Connection  # noqa: E402
from app.models.crm.contact import Contact  # noqa: E402
from app.models.crm.enums import ConnectionStatus, TicketStatus  # noqa: E402
from app.models.crm.ticket import Message, Ticket  # noqa: E402
from app.websocket import broadcaster  # noqa: E402


def _resolve_test_database_url() -> str | None:
    raw_url = os.getenv("TEST_DATABASE_URL")
    if not raw_url:
        return None
    url = make_url(raw_url)
    if url.drivername.startswith("postgresql") and url.database != "crm_imports_test":
        url = url.set(database="crm_imports_test")
    return url.render_as_string(hide_password=False)


@pytest.fixture(scope="session")
def engine():
    database_url = _resolve_test_database_url()
    if database_url:
        engine = create_engine(database_url)
    else:
        engine = create_engine(
            "sqlite+pysqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )

        # pysqlite defers BEGIN on its own, which breaks SAVEPOINT; let
        # SQLAlchemy emit it so nested transactions behave as on PostgreSQL.
        @event.listens_for(engine, "connect")
        def _on_connect(dbapi_connection, _connection_record):
            dbapi_connection.isolation_level = None
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        @event.listens_for(engine, "begin")
        def _on_begin(conn):
            conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(engine)
    return engine


@pytest.fixture()
def db_connection(engine):
    connection = engine.connect()
    transaction = connection.begin()
    try:
        yield connection
    finally:
        transaction.rollback()
        connection.close()


@pytest.fixture()
def session_factory(db_connection):
    """Session factory the services use; every session nests in the test transaction."""
    return sessionmaker(
        bind=db_connection,
        autoflush=False,
        autocommit=False,
        join_transaction_mode="create_savepoint",
    )


@pytest.fixture()
def db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(autouse=True)
def broadcasts(monkeypatch):
    """Capture every published event instead of touching Redis."""
    events = []

    def _publish(channel, event, data, topic=None):
        events.append({"channel": channel, "event": event, "data": data, "topic": topic})

    monkeypatch.setattr(broadcaster, "publish", _publish)
    return events


@pytest.fixture()
def company_id():
    return uuid.uuid4()


def _create_connection(db_session, company_id, name="Main line", **kwargs) -> Connection:
    connection = Connection(
        company_id=company_id,
        name=name,
        status=ConnectionStatus.connected,
        **kwargs,
    )
    db_session.add(connection)
    db_session.commit()
    db_session.refresh(connection)
    return connection


def _create_contact(db_session, company_id, address=None, name=None) -> Contact:
    address = address or f"5511{uuid.uuid4().int % 10**9:09d}@s.whatsapp.net"
    contact = Contact(company_id=company_id, address=address, name=name or address)
    db_session.add(contact)
    db_session.commit()
    db_session.refresh(contact)
    return contact


def _create_ticket(
    db_session,
    connection,
    contact,
    status=TicketStatus.pending,
    last_message=None,
    imported_at=None,
    messages=0,
) -> Ticket:
    ticket = Ticket(
        company_id=connection.company_id,
        connection_id=connection.id,
        contact_id=contact.id if contact else None,
        status=status,
        last_message=last_message,
        imported_at=imported_at,
    )
    db_session.add(ticket)
    db_session.flush()
    for index in range(messages):
        db_session.add(
            Message(
                ticket_id=ticket.id,
                company_id=connection.company_id,
                connection_id=connection.id,
                contact_id=contact.id if contact else None,
                external_id=f"{ticket.id.hex[:8]}-{index}",
                body=f"message {index}",
                sent_at=datetime.now(UTC),
            )
        )
    db_session.commit()
    db_session.refresh(ticket)
    return ticket


@pytest.fixture()
def connection(db_session, company_id):
    return _create_connection(db_session, company_id)


@pytest.fixture()
def other_connection(db_session, company_id):
    return _create_connection(db_session, company_id, name="Backup line")


@pytest.fixture()
def contact(db_session, company_id):
    return _create_contact(db_session, company_id, name="Maria")


@pytest.fixture()
def create_connection(db_session, company_id):
    def _create(**kwargs):
        return _create_connection(db_session, kwargs.pop("company_id", company_id), **kwargs)

    return _create


@pytest.fixture()
def create_contact(db_session, company_id):
    def _create(**kwargs):
        return _create_contact(db_session, kwargs.pop("company_id", company_id), **kwargs)

    return _create


@pytest.fixture()
def create_ticket(db_session):
    def _create(connection, contact, **kwargs):
        return _create_ticket(db_session, connection, contact, **kwargs)

    return _create


@pytest.fixture()
def celery_eager(monkeypatch):
    """Run Celery tasks in-process; retries run inline and countdowns are ignored."""
    from app.celery_app import celery_app

    monkeypatch.setitem(celery_app.conf, "task_always_eager", True)
    monkeypatch.setitem(celery_app.conf, "task_eager_propagates", False)
    return celery_app


@pytest.fixture()
def no_pacing(monkeypatch):
    monkeypatch.setattr("app.services.crm.imports.replay.time.sleep", lambda _seconds: None)


@pytest.fixture()
def wired_container(session_factory, celery_eager, no_pacing):
    """The application container with its default collaborators on the test database."""
    from dependency_injector import providers

    from app.container import container

    container.reset_singletons()
    with container.db_session_factory.override(providers.Object(session_factory)):
        yield container
    container.reset_singletons()
