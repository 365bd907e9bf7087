from dataclasses import asdict

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import get_settings
from app.core.db import get_db_session
from app.core.security import admin_token_matches
from app.schemas.admin import (
    ConversationDebugResponse,
    ConversationStateResponse,
    DetectionResultResponse,
    RecalculateResponse,
    ReplayResponse,
    ResetResponse,
    WebhookEventResponse,
)
from app.services.admin_service import AdminService, ConversationDebug, ReplayResult
from app.services.errors import (
    ConversationStateNotFoundError,
    EscalationDetectionDisabledError,
)
from app.services.escalation_service import EscalationDetector
from app.services.support_service import SupportService

settings = get_settings()


async def require_admin_token(
    x_admin_token: str | None = Header(default=None, alias="X-Admin-Token"),
) -> None:
    if not settings.admin_api_token:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not Found")
    if not admin_token_matches(x_admin_token, settings.admin_api_token):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing or invalid admin token",
        )


router = APIRouter(dependencies=[Depends(require_admin_token)])


async def get_admin_service(
    request: Request,
    session: AsyncSession = Depends(get_db_session),
) -> AdminService:
    detector = EscalationDetector(
        session,
        settings.bot_assignee_ids,
        history_limit=settings.history_lookback_limit,
        max_attempts=settings.detector_max_attempts,
        alerts=getattr(request.app.state, "alert_dispatcher", None),
        locks=getattr(request.app.state, "conversation_locks", None),
    )
    return AdminService(session=session, detector=detector)


async def get_support_service(
    session: AsyncSession = Depends(get_db_session),
) -> SupportService:
    return SupportService(session=session)


def _raise_for_service_error(exc: Exception) -> None:
    if isinstance(exc, ConversationStateNotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    if isinstance(exc, EscalationDetectionDisabledError):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    raise exc


def _to_debug_response(debug: ConversationDebug) -> ConversationDebugResponse:
    return ConversationDebugResponse(
        conversation_id=debug.conversation_id,
        ownership=debug.ownership,
        state=(
            ConversationStateResponse.model_validate(asdict(debug.state))
            if debug.state is not None
            else None
        ),
        events=[WebhookEventResponse.model_validate(event) for event in debug.events],
    )


def _to_replay_response(result: ReplayResult) -> ReplayResponse:
    return ReplayResponse(
        conversation_id=result.conversation_id,
        rebuilt=result.rebuilt,
        counter_delta=result.counter_delta,
        results=[DetectionResultResponse.model_validate(item) for item in result.results],
    )


@router.get("/conversations/{conversation_id}", response_model=ConversationDebugResponse)
async def get_conversation(
    conversation_id: str,
    history_limit: int = Query(default=100, ge=1, le=1000),
    service: AdminService = Depends(get_admin_service),
) -> ConversationDebugResponse:
    try:
        debug = await service.get_conversation_debug(
            conversation_id, history_limit=history_limit
        )
    except ConversationStateNotFoundError as exc:
        _raise_for_service_error(exc)
    return _to_debug_response(debug)


@router.post("/escalations/recalculate", response_model=RecalculateResponse)
async def recalculate_escalations(
    service: SupportService = Depends(get_support_service),
) -> RecalculateResponse:
    result = await service.recalculate_escalations()
    return RecalculateResponse(
        previous=result.previous,
        recalculated=result.recalculated,
        drift=result.drift,
    )


@router.post("/escalations/reset", response_model=ResetResponse)
async def reset_escalations(
    purge_conversations: bool = Query(default=False),
    service: SupportService = Depends(get_support_service),
) -> ResetResponse:
    result = await service.reset_escalations(purge_conversations=purge_conversations)
    return ResetResponse(
        previous=result.previous,
        conversations_purged=result.conversations_purged,
        counted_flags_cleared=result.counted_flags_cleared,
    )


@router.post("/conversations/{conversation_id}/replay", response_model=ReplayResponse)
async def replay_conversation(
    conversation_id: str,
    rebuild: bool = Query(default=False),
    service: AdminService = Depends(get_admin_service),
) -> ReplayResponse:
    try:
        result = await service.replay_conversation(conversation_id, rebuild=rebuild)
    except (ConversationStateNotFoundError, EscalationDetectionDisabledError) as exc:
        _raise_for_service_error(exc)
    return _to_replay_response(result)
