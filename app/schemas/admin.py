from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict

from app.domain.enums import ConversationStatus, DetectionOutcome, OwnershipState


class ConversationStateResponse(BaseModel):
    conversation_id: str
    current_assignee: str | None
    has_had_bot_assignment: bool
    escalated: bool
    escalated_at: datetime | None
    escalated_from: str | None
    escalated_to: str | None
    escalation_counted: bool
    status: ConversationStatus
    closed_at: datetime | None
    last_assignment_at: datetime | None
    last_status_at: datetime | None
    version: int | None

    model_config = ConfigDict(from_attributes=True)


class WebhookEventResponse(BaseModel):
    id: UUID
    event_key: str
    subscription_type: str
    property_name: str | None
    property_value: str | None
    occurred_at: datetime | None
    observed_at: datetime
    processed_at: datetime | None
    processing_error: str | None
    attempt_count: int

    model_config = ConfigDict(from_attributes=True)


class ConversationDebugResponse(BaseModel):
    conversation_id: str
    ownership: OwnershipState
    state: ConversationStateResponse | None
    events: list[WebhookEventResponse]


class RecalculateResponse(BaseModel):
    previous: int | None
    recalculated: int
    drift: int


class ResetResponse(BaseModel):
    previous: int | None
    conversations_purged: int
    counted_flags_cleared: int


class DetectionResultResponse(BaseModel):
    event_id: UUID
    outcome: DetectionOutcome
    counter_delta: int
    escalated_from: str | None
    error: str | None

    model_config = ConfigDict(from_attributes=True)


class ReplayResponse(BaseModel):
    conversation_id: str
    rebuilt: bool
    counter_delta: int
    results: list[DetectionResultResponse]
