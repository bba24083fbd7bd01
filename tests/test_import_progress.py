"""Tests for import progress event payloads."""

import uuid

from app.schemas.crm.imports import ImportProgress
from app.services.crm.imports.progress import ImportProgressReporter, import_topic
from app.websocket.events import EventType


def test_report_publishes_coarse_and_fine_events(broadcasts):
    company_id = uuid.uuid4()
    connection_id = uuid.uuid4()
    reporter = ImportProgressReporter()

    reporter.report(
        company_id,
        connection_id,
        ImportProgress(processed_count=10, total_count=20, status_label="Running", batch_label="Batch 1/2"),
    )

    assert len(broadcasts) == 2
    coarse, fine = broadcasts
    assert coarse["channel"] == f"company-{company_id}-mainchannel"
    assert coarse["event"] == EventType.IMPORT_MESSAGES
    assert coarse["topic"] == f"importMessages-{company_id}"
    assert coarse["data"] == {
        "action": "update",
        "status": {"this": 10, "all": 20, "status": "Running", "batchInfo": "Batch 1/2"},
    }
    assert fine["channel"] == f"company-{company_id}-connection"
    assert fine["topic"] == f"importMessages-{company_id}-{connection_id}"
    assert fine["data"] == {
        "action": "progress",
        "status": {"processed": 10, "total": 20, "progress": 50, "batchInfo": "Batch 1/2"},
    }


def test_status_and_refresh_only_use_company_topic(broadcasts):
    company_id = uuid.uuid4()
    reporter = ImportProgressReporter()

    reporter.status(company_id, "awaiting-manual-close")
    reporter.refresh(company_id)

    assert [event["topic"] for event in broadcasts] == [import_topic(company_id)] * 2
    assert broadcasts[0]["data"]["status"]["status"] == "awaiting-manual-close"
    assert broadcasts[1]["data"] == {"action": "refresh"}


def test_publish_failure_is_swallowed():
    def _broken(*_args, **_kwargs):
        raise ConnectionError("redis unavailable")

    reporter = ImportProgressReporter(publish=_broken)

    reporter.refresh(uuid.uuid4())
    reporter.report(
        uuid.uuid4(),
        uuid.uuid4(),
        ImportProgress(processed_count=0, total_count=0, status_label="Running"),
    )


def test_percent_of_empty_import_is_zero():
    assert ImportProgress(processed_count=0, total_count=0, status_label="Running").percent == 0
