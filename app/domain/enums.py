from enum import Enum


class ConversationStatus(str, Enum):
    OPEN = "open"
    CLOSED = "closed"


class OwnershipState(str, Enum):
    UNASSIGNED = "unassigned"
    BOT_OWNED = "bot_owned"
    HUMAN_OWNED = "human_owned"
    ESCALATED = "escalated"
    CLOSED = "closed"


class AlertKind(str, Enum):
    NEW_CHAT = "new_chat"
    ESCALATION = "escalation"
    CLOSURE = "closure"
    GENERIC = "generic"


class SubscriptionType(str, Enum):
    CONVERSATION_CREATION = "conversation.creation"
    CONVERSATION_DELETION = "conversation.deletion"
    CONVERSATION_PROPERTY_CHANGE = "conversation.propertyChange"
    TICKET_CREATION = "ticket.creation"
    TICKET_PROPERTY_CHANGE = "ticket.propertyChange"


class PropertyName(str, Enum):
    ASSIGNED_TO = "assignedTo"
    STATUS = "status"
    PIPELINE_STAGE = "hs_pipeline_stage"


class EventAction(str, Enum):
    ASSIGN = "assign"
    CLOSE = "close"
    REOPEN = "reopen"
    NEW_CONVERSATION = "new_conversation"
    IGNORE = "ignore"


class DetectionOutcome(str, Enum):
    DISABLED = "disabled"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    UPDATED = "updated"
    ESCALATED = "escalated"
    CLOSED = "closed"
    REOPENED = "reopened"
    ALERTED = "alerted"
    FAILED = "failed"
