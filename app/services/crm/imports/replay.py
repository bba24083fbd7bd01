"""Sequential replay of normalized history through inbound ingestion."""

from __future__ import annotations

import time
from collections.abc import Callable, Iterator, Sequence
from dataclasses import dataclass, field
from typing import TypeVar

from app.logging import get_logger
from app.schemas.crm.imports import RawInboundMessage
from app.services.crm.imports.metrics import IMPORT_MESSAGES

logger = get_logger(__name__)

T = TypeVar("T")

ProgressCallback = Callable[[int, int], None]


def paced(items: Sequence[T], interval: float) -> Iterator[T]:
    """Yield items in order, waiting ``interval`` seconds between them.

    The wait sits between items, never before the first or after the last.
    """
    for index, item in enumerate(items):
        if index and interval > 0:
            time.sleep(interval)
        yield item


@dataclass
class ReplayResult:
    processed: int = 0
    failed: int = 0
    failed_ids: list[str] = field(default_factory=list)


def replay_batch(
    messages: Sequence[RawInboundMessage],
    handler,
    handle,
    company_id,
    interval: float = 0.0,
    progress_every: int = 10,
    on_progress: ProgressCallback | None = None,
) -> ReplayResult:
    """Feed each message to ``handler`` one at a time, tagged as imported.

    A later message may quote an earlier one, so calls are never overlapped.
    A message that fails is logged and skipped; the batch keeps going.
    ``on_progress(done, total)`` fires every ``progress_every`` messages and
    on the last one.
    """
    result = ReplayResult()
    total = len(messages)
    done = 0
    for message in paced(messages, interval):
        try:
            handler.handle(message, handle, company_id, is_import=True)
            result.processed += 1
            IMPORT_MESSAGES.labels(status="imported").inc()
        except Exception as exc:
            result.failed += 1
            result.failed_ids.append(message.external_id)
            IMPORT_MESSAGES.labels(status="failed").inc()
            logger.warning(
                "import_message_failed connection_id=%s external_id=%s error=%s",
                getattr(handle, "connection_id", None),
                message.external_id,
                exc,
            )
        done += 1
        if on_progress and (done == total or (progress_every > 0 and done % progress_every == 0)):
            on_progress(done, total)
    return result
