"""Dedup and ordering of gateway history before replay.

Everything here is pure: the functions take message lists and return new
ones, so the queue can partition once and every batch handler sees the same
slices no matter how often a job is retried.
"""

from __future__ import annotations

import math
from collections.abc import Iterable
from datetime import UTC, datetime

from app.schemas.crm.imports import NormalizedMessageBatch, RawInboundMessage
from app.services.crm.errors import CrmValidationError


def normalize(messages: Iterable[RawInboundMessage] | None) -> list[RawInboundMessage]:
    """Drop re-delivered external ids (first seen wins) and sort by timestamp.

    The sort is stable, so messages sharing a timestamp keep gateway order.
    """
    if not messages:
        return []
    seen: set[str] = set()
    unique: list[RawInboundMessage] = []
    for message in messages:
        if message.external_id in seen:
            continue
        seen.add(message.external_id)
        unique.append(message)
    return sorted(unique, key=lambda message: message.timestamp)


def _as_aware(value: datetime) -> datetime:
    # Stored windows come back naive from some backends.
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def filter_import_window(
    messages: Iterable[RawInboundMessage],
    since: datetime | None = None,
    until: datetime | None = None,
    include_groups: bool = False,
) -> list[RawInboundMessage]:
    """Keep messages inside ``[since, until]``; group chats only when asked."""
    upper = _as_aware(until) if until else datetime.now(UTC)
    lower = _as_aware(since) if since else None
    kept = []
    for message in messages:
        if message.is_group and not include_groups:
            continue
        if lower is not None and message.timestamp < lower:
            continue
        if message.timestamp > upper:
            continue
        kept.append(message)
    return kept


def partition(messages: list[RawInboundMessage], batch_size: int) -> list[NormalizedMessageBatch]:
    if batch_size < 1:
        raise CrmValidationError("ERR_INVALID_BATCH_SIZE", f"Batch size must be at least 1, got {batch_size}")
    if not messages:
        return []
    total_batches = math.ceil(len(messages) / batch_size)
    return [
        NormalizedMessageBatch(
            batch_index=index,
            total_batches=total_batches,
            messages=messages[index * batch_size : (index + 1) * batch_size],
        )
        for index in range(total_batches)
    ]
