from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

from app.domain.enums import EventAction, PropertyName, SubscriptionType

UNASSIGNED_SENTINEL = "unassigned"


@dataclass(frozen=True, slots=True)
class AssignmentEvent:
    conversation_id: str
    assignee: str
    observed_at: datetime
    event_id: UUID


def normalize_assignee(value: str | None) -> str:
    if value is None or not str(value).strip():
        return UNASSIGNED_SENTINEL
    return str(value).strip()


def classify_event(
    subscription_type: str,
    property_name: str | None,
    property_value: str | None,
) -> EventAction:
    if subscription_type == SubscriptionType.CONVERSATION_CREATION.value:
        return EventAction.NEW_CONVERSATION
    if subscription_type == SubscriptionType.CONVERSATION_DELETION.value:
        return EventAction.CLOSE
    if subscription_type != SubscriptionType.CONVERSATION_PROPERTY_CHANGE.value:
        return EventAction.IGNORE

    if property_name == PropertyName.ASSIGNED_TO.value:
        return EventAction.ASSIGN
    if property_name == PropertyName.STATUS.value:
        status_value = (property_value or "").strip().upper()
        if status_value == "CLOSED":
            return EventAction.CLOSE
        if status_value == "OPEN":
            return EventAction.REOPEN
    return EventAction.IGNORE
