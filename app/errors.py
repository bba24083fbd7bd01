from fastapi import FastAPI
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from app.logging import get_logger
from app.services.crm.errors import CrmError

logger = get_logger(__name__)


def register_error_handlers(app: FastAPI) -> None:
    """Render service errors as ``{"code", "detail"}`` with their status."""

    @app.exception_handler(CrmError)
    async def _crm_error_handler(request: Request, exc: CrmError) -> Response:
        if exc.status_code >= 500:
            logger.warning("crm_error path=%s code=%s detail=%s", request.url.path, exc.code, exc.detail)
        return JSONResponse(
            status_code=exc.status_code,
            content={"code": exc.code, "detail": exc.detail, "retryable": exc.retryable},
        )
