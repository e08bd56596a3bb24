import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from pmo.api.routes import router as api_router
from pmo.core.config import get_settings
from pmo.events import InternalEvent, event_bus
from pmo.logging import configure_logging
from pmo.middleware.request_context import CorrelationIdMiddleware, TenantContextMiddleware
from pmo.middleware.request_logging import RequestLoggingMiddleware
from pmo.otel import get_fastapi_server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("pmo.lifecycle")
_subscriptions_registered = False


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"status": event.name})


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _subscriptions_registered
    if not _subscriptions_registered:
        event_bus.subscribe("system.started", _on_system_started)
        _subscriptions_registered = True
    event_bus.publish("system.started", {"service": "api"})
    yield


app = FastAPI(title="PMO API", version="0.1.0", lifespan=lifespan)
app.add_middleware(TenantContextMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

settings = get_settings()
if settings.otel_enabled:
    setup_otel("api", True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
