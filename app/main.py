import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.httpsredirect import HTTPSRedirectMiddleware
from starlette.middleware.trustedhost import TrustedHostMiddleware

from app.api.router import api_router
from app.core.config import get_settings
from app.core.db import close_engine, get_session_factory, init_engine, initialize_database
from app.core.locks import KeyedAsyncLock
from app.core.logging_config import configure_logging
from app.infra.alerts import AlertDispatcher
from app.infra.alerts.sinks import AuditAlertSink, LogAlertSink
from app.services.reconciler import EscalationReconciler

settings = get_settings()
settings.validate_security_settings()
configure_logging(settings)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    engine = init_engine()
    app.state.db_engine = engine
    await initialize_database()

    session_factory = get_session_factory()
    sinks = [LogAlertSink()]
    if settings.alert_audit_enabled:
        sinks.append(AuditAlertSink(session_factory))
    app.state.alert_dispatcher = AlertDispatcher(sinks)
    app.state.conversation_locks = KeyedAsyncLock()

    if not settings.bot_assignee_ids:
        logger.warning("BOT_ASSIGNEE_IDS_RAW is empty; escalation detection is disabled")

    reconciler: EscalationReconciler | None = None
    reconciler_task: asyncio.Task[None] | None = None
    if settings.escalation_reconcile_interval_seconds > 0:
        reconciler = EscalationReconciler(
            session_factory,
            settings.bot_assignee_ids,
            interval_seconds=settings.escalation_reconcile_interval_seconds,
            alerts=app.state.alert_dispatcher,
            locks=app.state.conversation_locks,
            history_limit=settings.history_lookback_limit,
            max_attempts=settings.detector_max_attempts,
        )
        reconciler_task = asyncio.create_task(
            reconciler.run_forever(), name="escalation_reconciler"
        )

    yield

    if reconciler is not None and reconciler_task is not None:
        reconciler.stop()
        reconciler_task.cancel()
        try:
            await reconciler_task
        except asyncio.CancelledError:
            pass

    await app.state.alert_dispatcher.drain()
    await close_engine(engine)


app = FastAPI(
    title="Support Escalation Tracker API",
    version="0.1.0",
    docs_url="/docs" if settings.app_env != "production" else None,
    redoc_url="/redoc" if settings.app_env != "production" else None,
    lifespan=lifespan,
)

if settings.trusted_hosts:
    app.add_middleware(
        TrustedHostMiddleware,
        allowed_hosts=settings.trusted_hosts,
    )

if settings.force_https:
    app.add_middleware(HTTPSRedirectMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allowed_origins,
    allow_credentials=False,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "X-Admin-Token"],
)


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault(
        "Referrer-Policy",
        "strict-origin-when-cross-origin",
    )
    if settings.force_https:
        response.headers.setdefault(
            "Strict-Transport-Security",
            "max-age=31536000; includeSubDomains",
        )
    return response


app.include_router(api_router, prefix="/api")


@app.get("/", tags=["meta"])
async def root() -> dict[str, str]:
    return {"service": "support-escalation-tracker", "status": "ok"}
