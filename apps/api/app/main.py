import uuid

from fastapi import FastAPI
from starlette.requests import Request
from starlette.responses import Response

from .logging_config import bind_request_context, clear_request_context, configure_logging, get_logger
from .routers.health import router as health_router
from .routers.integration_events import router as integration_events_router
from .routers.sequences import router as sequences_router
from .routers.webhooks import router as webhooks_router
from .routers.workflows import router as workflows_router
from .settings import settings

configure_logging(level=settings.log_level, json_format=settings.resolved_log_format == "json", service="relayflow-api")
logger = get_logger(__name__)

app = FastAPI(title="Relayflow API", version="0.1.0")


@app.middleware("http")
async def request_id_middleware(request: Request, call_next) -> Response:
    request_id = request.headers.get("X-Request-Id") or str(uuid.uuid4())
    request.state.request_id = request_id
    clear_request_context()
    bind_request_context(request_id=request_id, path=request.url.path, method=request.method)
    response = await call_next(request)
    logger.debug("http.request_finished", status_code=response.status_code)
    response.headers["X-Request-Id"] = request_id
    return response


app.include_router(health_router)
app.include_router(webhooks_router)
app.include_router(sequences_router)
app.include_router(workflows_router)
app.include_router(integration_events_router)
