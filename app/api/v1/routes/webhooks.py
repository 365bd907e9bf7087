import logging
from datetime import UTC, datetime
from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Depends, FastAPI, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import get_settings
from app.core.db import get_db_session, get_session_factory
from app.core.security import SIGNATURE_HEADER, TIMESTAMP_HEADER, verify_webhook_signature
from app.schemas.webhook import WebhookAckResponse
from app.services.errors import InvalidWebhookPayloadError, WebhookSignatureError
from app.services.escalation_service import EscalationDetector
from app.services.ingest_service import WebhookIngestService, parse_webhook_body

logger = logging.getLogger(__name__)

router = APIRouter()
settings = get_settings()


async def get_ingest_service(
    session: AsyncSession = Depends(get_db_session),
) -> WebhookIngestService:
    return WebhookIngestService(session=session)


def _raise_for_service_error(exc: Exception) -> None:
    if isinstance(exc, WebhookSignatureError):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(exc)) from exc
    if isinstance(exc, InvalidWebhookPayloadError):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    raise exc


def _verify_signature(request: Request, body: bytes) -> None:
    if not settings.webhook_client_secret:
        return
    try:
        verify_webhook_signature(
            secret=settings.webhook_client_secret,
            method=request.method,
            uri=settings.webhook_public_url or str(request.url),
            body=body,
            signature=request.headers.get(SIGNATURE_HEADER),
            timestamp=request.headers.get(TIMESTAMP_HEADER),
            max_age_seconds=settings.webhook_max_age_seconds,
        )
    except ValueError as exc:
        logger.warning("Rejected webhook delivery: %s", exc)
        _raise_for_service_error(WebhookSignatureError(str(exc)))


async def detect_escalations(app: FastAPI, event_ids: list[UUID]) -> None:
    """Background half of a delivery: run detection in a session of its own."""
    session_factory = get_session_factory()
    async with session_factory() as session:
        detector = EscalationDetector(
            session,
            settings.bot_assignee_ids,
            history_limit=settings.history_lookback_limit,
            max_attempts=settings.detector_max_attempts,
            alerts=getattr(app.state, "alert_dispatcher", None),
            locks=getattr(app.state, "conversation_locks", None),
        )
        await detector.process_events(event_ids)


@router.post("/hubspot", response_model=WebhookAckResponse)
async def receive_hubspot_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    service: WebhookIngestService = Depends(get_ingest_service),
) -> WebhookAckResponse:
    body = await request.body()
    _verify_signature(request, body)

    try:
        events = parse_webhook_body(body)
    except InvalidWebhookPayloadError as exc:
        logger.warning("Rejected webhook payload: %s", exc.reason)
        _raise_for_service_error(exc)

    result = await service.ingest(events)
    if result.pending_event_ids:
        background_tasks.add_task(detect_escalations, request.app, result.pending_event_ids)

    return WebhookAckResponse(
        message=(
            f"Logged {result.logged} event(s)"
            + (f", {result.duplicates} already seen" if result.duplicates else "")
        ),
        timestamp=datetime.now(UTC),
    )
