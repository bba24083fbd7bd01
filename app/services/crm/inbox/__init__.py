"""CRM Inbox submodule.

Handles gateway message ingestion for live traffic and history imports.

Submodules:
- inbound: Message receiving and ticket routing
- dedup: Duplicate message detection
- observability: Ingestion metrics
"""

from app.services.crm.inbox.dedup import find_duplicate_message
from app.services.crm.inbox.inbound import GatewayInboundHandler, receive_gateway_message

__all__ = [
    "GatewayInboundHandler",
    "find_duplicate_message",
    "receive_gateway_message",
]
