from fastapi import FastAPI
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette.responses import Response

from app.api.crm import router as crm_router
from app.config import settings
from app.container import configure_container
from app.errors import register_error_handlers
from app.logging import configure_logging
from app.telemetry import setup_otel
from app.websocket.router import router as ws_router

app = FastAPI(title="crm_imports API")

configure_logging()
setup_otel(app)
register_error_handlers(app)
configure_container(
    import_batch_size=settings.import_batch_size,
    import_enqueue_interval_seconds=settings.import_enqueue_interval_seconds,
)

app.include_router(crm_router)
app.include_router(ws_router)


@app.get("/health")
def health_check():
    return {"status": "ok"}


@app.head("/health")
def head_health():
    return Response(status_code=200)


@app.get("/metrics")
def metrics():
    data = generate_latest()
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)


@app.on_event("startup")
async def _start_websocket_manager():
    from app.websocket.manager import get_connection_manager
    manager = get_connection_manager()
    await manager.connect()


@app.on_event("shutdown")
def _stop_import_queue():
    from app.services.crm.imports.service import shutdown_import_queue
    shutdown_import_queue()


@app.on_event("shutdown")
async def _stop_websocket_manager():
    from app.websocket.manager import get_connection_manager
    manager = get_connection_manager()
    await manager.disconnect()
