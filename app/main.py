import logging

from fastapi import Depends, FastAPI
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette.responses import Response

from app.api.deps import require_operator
from app.api.inbox import router as inbox_router
from app.api.webhooks import router as webhooks_router
from app.errors import register_error_handlers
from app.logging import configure_logging
from app.websocket.router import router as ws_router

app = FastAPI(title="school_inbox API")
logger = logging.getLogger(__name__)
configure_logging()
register_error_handlers(app)


def _include_api_router(router, dependencies=None):
    app.include_router(router, prefix="/api/v1", dependencies=dependencies)


_include_api_router(inbox_router, dependencies=[Depends(require_operator)])
# Vendor webhooks authenticate by signature, not by operator token
app.include_router(webhooks_router)

app.include_router(ws_router)


@app.get("/health")
def health_check():
    return {"status": "ok"}


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
async def _stop_websocket_manager():
    from app.websocket.manager import get_connection_manager
    manager = get_connection_manager()
    await manager.disconnect()
