"""Error taxonomy for the CRM import and ticket services."""

from __future__ import annotations

from dataclasses import dataclass

from fastapi import HTTPException


@dataclass(frozen=True)
class CrmError(Exception):
    code: str
    detail: str
    status_code: int = 400
    retryable: bool = False

    def to_http_exception(self) -> HTTPException:
        return HTTPException(status_code=self.status_code, detail={"code": self.code, "detail": self.detail})


class CrmValidationError(CrmError):
    def __init__(self, code: str, detail: str):
        super().__init__(code=code, detail=detail, status_code=400, retryable=False)


class CrmNotFoundError(CrmError):
    def __init__(self, code: str, detail: str):
        super().__init__(code=code, detail=detail, status_code=404, retryable=False)


class CrmConflictError(CrmError):
    def __init__(self, code: str, detail: str):
        super().__init__(code=code, detail=detail, status_code=409, retryable=False)


class ImportAlreadyRunningError(CrmConflictError):
    def __init__(self, connection_id: str, status: str):
        super().__init__(
            code="ERR_IMPORT_ALREADY_RUNNING",
            detail=f"Connection {connection_id} already has an import in state {status}",
        )


class ImportQueueError(CrmError):
    """The import queue could not be set up or refused a job."""

    def __init__(self, code: str, detail: str):
        super().__init__(code=code, detail=detail, status_code=503, retryable=True)


def as_http_exception(exc: Exception) -> HTTPException:
    if isinstance(exc, CrmError):
        return exc.to_http_exception()
    if isinstance(exc, HTTPException):
        return exc
    return HTTPException(status_code=500, detail=str(exc) or "CRM error")
