import uuid

from app.services.crm.errors import CrmValidationError


def coerce_uuid(value) -> uuid.UUID | None:
    if value is None or value == "":
        return None
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError) as exc:
        raise CrmValidationError("ERR_INVALID_ID", f"Invalid identifier: {value}") from exc
