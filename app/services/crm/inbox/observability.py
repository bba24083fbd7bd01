"""Prometheus metrics for CRM inbox ingestion."""

from __future__ import annotations

from prometheus_client import Counter, Histogram

INBOUND_MESSAGES = Counter(
    "crm_inbound_messages_total",
    "Total gateway messages ingested",
    ["source", "status"],  # source: live, import; status: success, duplicate, error
)

MESSAGE_PROCESSING_TIME = Histogram(
    "crm_inbound_message_processing_seconds",
    "Time to persist one inbound gateway message",
    ["source"],
)
