from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from eventcrm.api.routes import router as api_router
from eventcrm.core.config import get_settings
from eventcrm.core.database import SessionLocal
from eventcrm.crm.api import register_error_handlers
from eventcrm.crm.automation import AutomationConfig, AutomationEngine
from eventcrm.logging import configure_logging
from eventcrm.middleware.correlation_id import CorrelationIdMiddleware
from eventcrm.middleware.request_logging import RequestLoggingMiddleware
from eventcrm.otel import get_fastapi_server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("eventcrm.lifecycle")


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    engine: AutomationEngine | None = None
    if settings.automation_enabled:
        engine = AutomationEngine(SessionLocal, AutomationConfig.from_settings(settings))
        engine.start()
    app.state.automation_engine = engine
    logger.info("system.started", extra={"status": "automation_on" if engine else "automation_off"})
    try:
        yield
    finally:
        if engine is not None:
            engine.stop()
        app.state.automation_engine = None
        logger.info("system.stopped")


app = FastAPI(title="EventCRM API", version="0.1.0", lifespan=lifespan)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
register_error_handlers(app)
app.include_router(api_router)

settings = get_settings()
if settings.otel_enabled:
    setup_otel("api", True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
