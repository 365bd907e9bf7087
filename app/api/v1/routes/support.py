from datetime import UTC, datetime

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.db import get_db_session
from app.infra.db.models import SupportCounter
from app.schemas.common import ApiMessage
from app.schemas.support import (
    SessionCounts,
    SupportData,
    SupportDataResponse,
    TicketCounts,
    UpdateSupportDataRequest,
)
from app.services.errors import SupportDataUnavailableError
from app.services.support_service import SupportService

router = APIRouter()


async def get_support_service(
    session: AsyncSession = Depends(get_db_session),
) -> SupportService:
    return SupportService(session=session)


def _to_support_data(counter: SupportCounter) -> SupportData:
    return SupportData(
        tickets=TicketCounts(
            open=counter.tickets_open,
            chat=counter.tickets_chat,
            email=counter.tickets_email,
            other=counter.tickets_other,
        ),
        sessions=SessionCounts(
            active=counter.sessions_active,
            escalated=counter.sessions_escalated,
        ),
        last_updated=counter.updated_at,
        source=counter.source,
    )


def _not_found(exc: SupportDataUnavailableError) -> JSONResponse:
    body = ApiMessage(message=str(exc), timestamp=datetime.now(UTC))
    return JSONResponse(
        status_code=status.HTTP_404_NOT_FOUND,
        content=body.model_dump(mode="json"),
    )


@router.get(
    "",
    response_model=SupportDataResponse,
    responses={status.HTTP_404_NOT_FOUND: {"model": ApiMessage}},
)
async def get_support_data(
    service: SupportService = Depends(get_support_service),
):
    try:
        counter = await service.get_support_data()
    except SupportDataUnavailableError as exc:
        return _not_found(exc)
    return SupportDataResponse(
        message="Current support data retrieved successfully",
        data=_to_support_data(counter),
    )


@router.post("", response_model=SupportDataResponse)
async def update_support_data(
    payload: UpdateSupportDataRequest,
    service: SupportService = Depends(get_support_service),
) -> SupportDataResponse:
    counter = await service.update_reported_counts(
        tickets_open=payload.tickets.open,
        tickets_chat=payload.tickets.chat,
        tickets_email=payload.tickets.email,
        tickets_other=payload.tickets.other,
        sessions_active=payload.sessions.active,
        source=payload.source,
    )
    return SupportDataResponse(
        message="Support data updated successfully",
        data=_to_support_data(counter),
    )
