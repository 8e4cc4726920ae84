from contextlib import asynccontextmanager, contextmanager
import logging
from collections.abc import Iterator

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from partnerhub.api.routes import router as api_router
from partnerhub.authz.service import authorization_admin_service
from partnerhub.core.config import get_settings
from partnerhub.core.context import RequestContextMiddleware
from partnerhub.core.database import SessionLocal, get_db
from partnerhub.core.events import InternalEvent, event_bus
from partnerhub.logging import configure_logging
from partnerhub.middleware.correlation_id import CorrelationIdMiddleware
from partnerhub.middleware.request_logging import RequestLoggingMiddleware
from partnerhub.otel import get_fastapi_server_request_hook, setup_otel
from partnerhub.referrals.notifications import (
    PROSPECT_APPROVED_EVENT,
    PROSPECT_REJECTED_EVENT,
    decision_notification_consumer,
)


settings = get_settings()
configure_logging(level_name=settings.log_level)
logger = logging.getLogger("partnerhub.lifecycle")

_DECISION_EVENTS = (PROSPECT_APPROVED_EVENT, PROSPECT_REJECTED_EVENT)


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"event_name": event.name})


@contextmanager
def _startup_session() -> Iterator[Session]:
    # Tests swap the database through dependency_overrides; startup work must follow them.
    provider = app.dependency_overrides.get(get_db, get_db)
    generator = provider()
    session = next(generator)
    try:
        yield session
    finally:
        generator.close()


def _register_consumers() -> None:
    event_bus.subscribe("system.started", _on_system_started)
    for event_name in _DECISION_EVENTS:
        event_bus.subscribe(event_name, decision_notification_consumer.handle)


def _unregister_consumers() -> None:
    event_bus.unsubscribe("system.started", _on_system_started)
    for event_name in _DECISION_EVENTS:
        event_bus.unsubscribe(event_name, decision_notification_consumer.handle)


def _seed_system_roles() -> None:
    try:
        with _startup_session() as session:
            authorization_admin_service.seed_system_roles(session)
    except SQLAlchemyError as exc:
        logger.exception("authz.system_roles_seed_failed", extra={"error": str(exc)})


@asynccontextmanager
async def lifespan(app: FastAPI):
    _register_consumers()
    if get_settings().seed_system_roles:
        _seed_system_roles()
    event_bus.publish("system.started", {"service": settings.app_name})
    try:
        yield
    finally:
        _unregister_consumers()


app = FastAPI(title=settings.app_name, version="0.1.0", debug=settings.app_debug, lifespan=lifespan)
app.add_middleware(RequestContextMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

if settings.otel_enabled:
    setup_otel("partnerhub-api", True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
