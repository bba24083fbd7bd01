"""Import progress events for company and connection observers."""

from __future__ import annotations

from collections.abc import Callable

from app.logging import get_logger
from app.schemas.crm.imports import ImportProgress
from app.websocket import broadcaster
from app.websocket.events import EventType

logger = get_logger(__name__)


def import_topic(company_id, connection_id=None) -> str:
    if connection_id is None:
        return f"importMessages-{company_id}"
    return f"importMessages-{company_id}-{connection_id}"


class ImportProgressReporter:
    """Publish import progress without ever failing the caller.

    The company channel gets the coarse counters every observer of the
    company shows; the connection channel gets a percentage for the
    connection's own progress bar.
    """

    def __init__(self, publish: Callable | None = None):
        self._publish = publish

    def _send(self, channel: str, data: dict, topic: str) -> None:
        publish = self._publish or broadcaster.publish
        try:
            publish(channel, EventType.IMPORT_MESSAGES, data, topic=topic)
        except Exception as exc:
            logger.warning("import_progress_publish_failed channel=%s topic=%s error=%s", channel, topic, exc)

    def report(self, company_id, connection_id, progress: ImportProgress) -> None:
        self._send(
            broadcaster.company_channel(company_id),
            {
                "action": "update",
                "status": {
                    "this": progress.processed_count,
                    "all": progress.total_count,
                    "status": progress.status_label,
                    "batchInfo": progress.batch_label,
                },
            },
            import_topic(company_id),
        )
        self._send(
            broadcaster.connection_channel(company_id),
            {
                "action": "progress",
                "status": {
                    "processed": progress.processed_count,
                    "total": progress.total_count,
                    "progress": progress.percent,
                    "batchInfo": progress.batch_label,
                },
            },
            import_topic(company_id, connection_id),
        )

    def status(self, company_id, status_label: str, processed: int = 0, total: int = 0) -> None:
        """Coarse-only lifecycle update (preparing, closing, awaiting close)."""
        self._send(
            broadcaster.company_channel(company_id),
            {
                "action": "update",
                "status": {"this": processed, "all": total, "status": status_label, "batchInfo": None},
            },
            import_topic(company_id),
        )

    def refresh(self, company_id) -> None:
        self._send(broadcaster.company_channel(company_id), {"action": "refresh"}, import_topic(company_id))
