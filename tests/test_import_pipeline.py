"""End-to-end tests for history imports through the Celery batch task."""

import inspect
import uuid
from datetime import UTC, datetime, timedelta

import pytest

from app.api.crm import imports as imports_api
from app.container import container
from app.db import session_scope
from app.models.crm.connection import Connection
from app.models.crm.enums import TicketStatus
from app.models.crm.import_job import ImportDeadLetter, ImportJob
from app.models.crm.ticket import Message, Ticket
from app.schemas.crm.imports import JobOptions, RawInboundMessage
from app.services.crm.errors import CrmNotFoundError, ImportAlreadyRunningError, ImportQueueError
from app.services.crm.gateway import BufferedGatewayClient
from app.services.crm.imports import queue as queue_module
from app.services.crm.imports.finalizer import ImportFinalizer
from app.services.crm.imports.progress import ImportProgressReporter
from app.services.crm.imports.queue import ImportQueueService
from app.services.crm.imports.replay import replay_batch
from app.services.crm.imports.service import ImportPipeline
from app.services.crm.inbox.inbound import GatewayInboundHandler
from app.tasks.crm_imports import process_import_batch_task
from app.websocket.events import EventType

pytestmark = pytest.mark.usefixtures("celery_eager")

CONTACTS = [f"55119000000{i}@s.whatsapp.net" for i in range(4)]


def _history(unique=20, duplicates=3, start=None, contacts=CONTACTS):
    """``unique`` messages spread over ``contacts`` plus re-deliveries."""
    start = start or datetime.now(UTC) - timedelta(days=2)
    messages = [
        RawInboundMessage(
            external_id=f"hist-{i:03d}",
            routing_key=contacts[i % len(contacts)],
            timestamp=start + timedelta(minutes=i),
            push_name=f"Contact {i % len(contacts)}",
            payload={"body": f"message {i}"},
        )
        for i in range(unique)
    ]
    return messages + messages[:duplicates]


def _pipeline(session_factory, **overrides):
    reporter = ImportProgressReporter()
    options = {
        "session_factory": session_factory,
        "gateway": BufferedGatewayClient(),
        "reporter": reporter,
        "finalizer": ImportFinalizer(session_factory, reporter=reporter, close_interval=0),
        "batch_size": 10,
        "message_interval": 0,
        "enqueue_interval": 0,
        "job_options": JobOptions(attempts=2, backoff_seconds=0),
    }
    options.update(overrides)
    return ImportPipeline(**options)


def _run(pipeline, connection, messages):
    with container.import_pipeline.override(pipeline):
        try:
            return pipeline.start_import(connection.id, connection.company_id, messages)
        finally:
            pipeline.shutdown()


class FlakyHandler(GatewayInboundHandler):
    def __init__(self, session_factory, fail_ids=(), fail_all=False):
        super().__init__(session_factory)
        self.fail_ids = set(fail_ids)
        self.fail_all = fail_all

    def handle(self, raw, handle, company_id, is_import, routing_key_override=None):
        if self.fail_all or raw.external_id in self.fail_ids:
            raise ValueError(f"cannot decode {raw.external_id}")
        return super().handle(raw, handle, company_id, is_import, routing_key_override)


class FinalBatchFirstHandler(GatewayInboundHandler):
    """Runs the final batch to completion before batch 0 replays its first message."""

    def __init__(self, session_factory, first_external_id):
        super().__init__(session_factory)
        self.first_external_id = first_external_id
        self.pipeline = None
        self.status_after_final_batch = None

    def handle(self, raw, handle, company_id, is_import, routing_key_override=None):
        if raw.external_id == self.first_external_id and self.status_after_final_batch is None:
            with session_scope(self.session_factory) as db:
                job = (
                    db.query(ImportJob)
                    .filter(ImportJob.connection_id == uuid.UUID(handle.connection_id))
                    .filter(ImportJob.batch_index == 1)
                    .one()
                )
                job_id = job.id
            process_import_batch_task.apply(args=[str(job_id)])
            self.status_after_final_batch = self.pipeline.import_status(handle.connection_id)
        return super().handle(raw, handle, company_id, is_import, routing_key_override)


class BrokenQueue:
    def start(self):
        raise ConnectionError("broker unavailable")

    def close(self):
        pass


class ExplodingQueue:
    def start(self):
        pass

    def close(self):
        pass

    def enqueue_many(self, payloads, opts=None, interval=0.0):
        raise RuntimeError("payload serializer crashed")


def test_import_replays_unique_history_and_waits_for_manual_close(
    db_session, session_factory, connection, broadcasts
):
    pipeline = _pipeline(session_factory)

    response = _run(pipeline, connection, _history())

    assert response.status == "Running"
    assert response.total_messages == 20
    assert response.total_batches == 2

    status = pipeline.import_status(connection.id)
    assert status.status == "awaiting-manual-close"
    assert status.imported_messages == 20
    assert status.total_messages == 20
    assert status.completed_batches == 2
    assert status.batch_info == "Batch 2/2"

    db_session.expire_all()
    messages = db_session.query(Message).filter(Message.connection_id == connection.id).all()
    assert len(messages) == 20
    assert all(message.is_imported for message in messages)
    tickets = db_session.query(Ticket).filter(Ticket.connection_id == connection.id).all()
    assert len(tickets) == 4
    assert all(ticket.status == TicketStatus.pending for ticket in tickets)
    assert all(ticket.imported_at is not None for ticket in tickets)
    assert db_session.query(ImportJob).filter(ImportJob.connection_id == connection.id).count() == 0

    assert not [e for e in broadcasts if e["event"] == EventType.TICKET_UPDATED]
    coarse = [
        e["data"]["status"]
        for e in broadcasts
        if e["event"] == EventType.IMPORT_MESSAGES and e["data"]["action"] == "update"
    ]
    assert {"this": 20, "all": 20, "status": "Running", "batchInfo": "Batch 2/2"} in coarse
    assert coarse[-1]["status"] == "awaiting-manual-close"


def test_default_pipeline_imports_without_registered_gateway_session(db_session, wired_container, connection):
    pipeline = wired_container.import_pipeline()

    try:
        pipeline.start_import(connection.id, connection.company_id, _history())
    finally:
        pipeline.shutdown()

    status = pipeline.import_status(connection.id)
    assert status.status == "awaiting-manual-close"
    assert status.imported_messages == 20
    db_session.expire_all()
    assert db_session.query(Message).filter(Message.connection_id == connection.id).count() == 20
    assert db_session.query(ImportDeadLetter).filter(ImportDeadLetter.connection_id == connection.id).count() == 0


def test_manual_close_after_import_closes_tickets_and_returns_to_idle(
    db_session, session_factory, connection, broadcasts
):
    pipeline = _pipeline(session_factory)
    _run(pipeline, connection, _history())

    result = pipeline.close_imported_tickets(connection.id, connection.company_id)

    assert result.closed == 4
    assert result.failed == 0
    assert pipeline.import_status(connection.id).status == "idle"
    db_session.expire_all()
    statuses = {t.status for t in db_session.query(Ticket).filter(Ticket.connection_id == connection.id)}
    assert statuses == {TicketStatus.closed}
    assert len([e for e in broadcasts if e["event"] == EventType.TICKET_UPDATED]) == 4


def test_import_with_auto_close_ends_idle(db_session, session_factory, create_connection):
    connection = create_connection(auto_close_imported_tickets=True)
    pipeline = _pipeline(session_factory)

    _run(pipeline, connection, _history())

    status = pipeline.import_status(connection.id)
    assert status.status == "idle"
    assert status.imported_messages == 20
    db_session.expire_all()
    statuses = {t.status for t in db_session.query(Ticket).filter(Ticket.connection_id == connection.id)}
    assert statuses == {TicketStatus.closed}


def test_final_batch_finishing_first_waits_for_earlier_batches(db_session, session_factory, create_connection):
    connection = create_connection(auto_close_imported_tickets=True)
    start = datetime.now(UTC) - timedelta(days=2)
    early = _history(unique=10, duplicates=0, start=start, contacts=CONTACTS[:2])
    late = [
        m.model_copy(update={"external_id": f"late-{m.external_id}"})
        for m in _history(unique=10, duplicates=0, start=start + timedelta(hours=1), contacts=CONTACTS[2:])
    ]
    handler = FinalBatchFirstHandler(session_factory, first_external_id=early[0].external_id)
    pipeline = _pipeline(session_factory, inbound_handler=handler)
    handler.pipeline = pipeline

    _run(pipeline, connection, early + late)

    observed = handler.status_after_final_batch
    assert observed.status == "Running"
    assert observed.completed_batches == 1
    assert observed.imported_messages == 10

    status = pipeline.import_status(connection.id)
    assert status.status == "idle"
    assert status.imported_messages == 20
    db_session.expire_all()
    tickets = db_session.query(Ticket).filter(Ticket.connection_id == connection.id).all()
    assert len(tickets) == 4
    assert {ticket.status for ticket in tickets} == {TicketStatus.closed}


def test_start_refused_while_import_running(db_session, session_factory, connection):
    connection.import_status = "Running"
    connection.import_total_messages = 7
    connection.import_processed_messages = 3
    db_session.commit()
    pipeline = _pipeline(session_factory)

    with pytest.raises(ImportAlreadyRunningError) as exc_info:
        pipeline.start_import(connection.id, connection.company_id, _history())

    assert exc_info.value.code == "ERR_IMPORT_ALREADY_RUNNING"
    status = pipeline.import_status(connection.id)
    assert status.status == "Running"
    assert status.total_messages == 7
    assert status.imported_messages == 3


def test_start_for_other_company_is_not_found(session_factory, connection):
    pipeline = _pipeline(session_factory)

    with pytest.raises(CrmNotFoundError):
        pipeline.start_import(connection.id, uuid.uuid4(), _history())


def test_queue_init_failure_marks_connection_error(session_factory, connection):
    pipeline = _pipeline(session_factory, queue_service=ImportQueueService(BrokenQueue))

    with pytest.raises(ImportQueueError):
        pipeline.start_import(connection.id, connection.company_id, _history())

    assert pipeline.import_status(connection.id).status == "error"


def test_dispatch_failure_is_raised_and_marks_connection_error(
    db_session, session_factory, connection, monkeypatch
):
    def _refuse(job_id, **kwargs):
        raise ConnectionError("broker unavailable")

    monkeypatch.setattr(queue_module, "dispatch_job", _refuse)
    pipeline = _pipeline(session_factory)

    with pytest.raises(ImportQueueError) as exc_info:
        _run(pipeline, connection, _history())

    assert exc_info.value.code == "ERR_IMPORT_ENQUEUE_FAILED"
    assert pipeline.import_status(connection.id).status == "error"
    db_session.expire_all()
    assert db_session.query(ImportJob).filter(ImportJob.connection_id == connection.id).count() == 0


def test_unexpected_failure_after_claim_does_not_leave_connection_preparing(
    session_factory, connection, broadcasts
):
    pipeline = _pipeline(session_factory, queue_service=ImportQueueService(ExplodingQueue))

    with pytest.raises(RuntimeError):
        pipeline.start_import(connection.id, connection.company_id, _history())

    assert pipeline.import_status(connection.id).status == "error"
    assert broadcasts[-1]["event"] == EventType.IMPORT_MESSAGES
    assert broadcasts[-1]["data"]["action"] == "refresh"


def test_empty_history_leaves_connection_idle(session_factory, connection):
    pipeline = _pipeline(session_factory)

    response = pipeline.start_import(connection.id, connection.company_id, [])

    assert response.status == "idle"
    assert response.total_batches == 0
    assert pipeline.import_status(connection.id).status == "idle"


def test_poison_message_is_skipped_without_failing_batch(db_session, session_factory, connection):
    pipeline = _pipeline(
        session_factory,
        inbound_handler=FlakyHandler(session_factory, fail_ids={"hist-005"}),
    )

    _run(pipeline, connection, _history())

    status = pipeline.import_status(connection.id)
    assert status.imported_messages == 19
    assert status.completed_batches == 2
    assert status.status == "awaiting-manual-close"
    db_session.expire_all()
    assert db_session.query(ImportDeadLetter).filter(ImportDeadLetter.connection_id == connection.id).count() == 0


def test_dead_lettered_final_batch_marks_connection_error(db_session, session_factory, connection):
    pipeline = _pipeline(
        session_factory,
        inbound_handler=FlakyHandler(session_factory, fail_all=True),
    )

    _run(pipeline, connection, _history(unique=5, duplicates=0))

    assert pipeline.import_status(connection.id).status == "error"
    db_session.expire_all()
    dead_letter = (
        db_session.query(ImportDeadLetter).filter(ImportDeadLetter.connection_id == connection.id).one()
    )
    assert dead_letter.attempts_made == 2
    assert dead_letter.batch_index == 0


def test_dead_lettered_early_batch_still_finalizes_import(db_session, session_factory, connection):
    history = _history(duplicates=0)
    pipeline = _pipeline(
        session_factory,
        inbound_handler=FlakyHandler(session_factory, fail_ids={m.external_id for m in history[:10]}),
    )

    _run(pipeline, connection, history)

    status = pipeline.import_status(connection.id)
    assert status.status == "awaiting-manual-close"
    assert status.imported_messages == 10
    assert status.completed_batches == 2
    db_session.expire_all()
    dead_letter = (
        db_session.query(ImportDeadLetter).filter(ImportDeadLetter.connection_id == connection.id).one()
    )
    assert dead_letter.batch_index == 0


def test_import_from_gateway_applies_connection_window(db_session, session_factory, connection):
    now = datetime.now(UTC)
    connection.import_since = now - timedelta(days=1)
    db_session.commit()
    pipeline = _pipeline(session_factory)
    in_window = _history(unique=6, duplicates=0, start=now - timedelta(hours=3))
    too_old = _history(unique=4, duplicates=0, start=now - timedelta(days=3))
    too_old = [m.model_copy(update={"external_id": f"old-{m.external_id}"}) for m in too_old]
    group = RawInboundMessage(
        external_id="group-1",
        routing_key="120363000000000000@g.us",
        timestamp=now - timedelta(hours=1),
        is_group=True,
    )

    buffered = pipeline.buffer_history(connection.id, in_window + too_old + [group])
    with container.import_pipeline.override(pipeline):
        try:
            response = pipeline.start_import_from_gateway(connection.id)
        finally:
            pipeline.shutdown()

    assert buffered.buffered == 11
    assert response.total_messages == 6
    assert pipeline.import_status(connection.id).imported_messages == 6
    assert pipeline.gateway.get_buffered_messages(str(connection.id)) == []
    db_session.expire_all()
    connection = db_session.get(Connection, connection.id)
    assert connection.import_status == "awaiting-manual-close"


def test_buffer_history_for_unknown_connection_is_not_found(session_factory):
    pipeline = _pipeline(session_factory)

    with pytest.raises(CrmNotFoundError):
        pipeline.buffer_history(uuid.uuid4(), _history(unique=1, duplicates=0))


def test_reimport_of_same_history_adds_no_messages(db_session, session_factory, connection):
    history = _history()
    _run(_pipeline(session_factory), connection, history)
    _pipeline(session_factory).close_imported_tickets(connection.id)

    _run(_pipeline(session_factory), connection, history)

    db_session.expire_all()
    assert db_session.query(Message).filter(Message.connection_id == connection.id).count() == 20


def test_import_path_never_runs_on_the_event_loop():
    entry_points = [
        imports_api.start_import,
        imports_api.buffer_import_history,
        ImportPipeline.start_import,
        ImportPipeline.process_batch,
        ImportFinalizer.finalize,
        ImportFinalizer.sweep,
        GatewayInboundHandler.handle,
        replay_batch,
        process_import_batch_task.run,
    ]

    assert [fn for fn in entry_points if inspect.iscoroutinefunction(fn)] == []
