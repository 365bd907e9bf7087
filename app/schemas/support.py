from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class TicketCounts(BaseModel):
    open: int = Field(ge=0)
    chat: int = Field(ge=0)
    email: int = Field(ge=0)
    other: int = Field(default=0, ge=0)


class SessionCounts(BaseModel):
    active: int | None = None
    escalated: int | None = None


class SupportData(BaseModel):
    tickets: TicketCounts
    sessions: SessionCounts
    last_updated: datetime = Field(serialization_alias="lastUpdated")
    source: str | None = None

    model_config = ConfigDict(populate_by_name=True)


class SupportDataResponse(BaseModel):
    success: bool = True
    message: str
    data: SupportData


class ReportedSessionCounts(BaseModel):
    active: int | None = Field(default=None, ge=0)


class UpdateSupportDataRequest(BaseModel):
    tickets: TicketCounts
    sessions: ReportedSessionCounts
    source: str = Field(default="reconciliation-job", min_length=1, max_length=64)
