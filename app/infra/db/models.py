from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Boolean,
    DateTime,
    Enum,
    Index,
    Integer,
    String,
    Text,
    Uuid,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from app.domain.enums import AlertKind, ConversationStatus

CURRENT_COUNTER_ID = "current"


def _enum_values(enum_cls) -> list[str]:
    return [member.value for member in enum_cls]


class Base(DeclarativeBase):
    pass


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class WebhookEvent(Base):
    __tablename__ = "webhook_events"
    __table_args__ = (
        Index("ix_webhook_events_conversation_observed", "conversation_id", "observed_at"),
    )

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    event_key: Mapped[str] = mapped_column(String(200), unique=True, nullable=False)
    conversation_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    subscription_type: Mapped[str] = mapped_column(String(80), nullable=False)
    property_name: Mapped[str | None] = mapped_column(String(80), nullable=True)
    property_value: Mapped[str | None] = mapped_column(String(255), nullable=True)
    change_flag: Mapped[str | None] = mapped_column(String(40), nullable=True)
    occurred_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    observed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    payload: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    processing_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class ConversationState(Base, TimestampMixin):
    __tablename__ = "conversation_states"

    conversation_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    current_assignee: Mapped[str | None] = mapped_column(String(255), nullable=True)
    has_had_bot_assignment: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    escalated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    escalated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    escalated_from: Mapped[str | None] = mapped_column(String(255), nullable=True)
    escalated_to: Mapped[str | None] = mapped_column(String(255), nullable=True)
    escalation_counted: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, index=True
    )
    status: Mapped[ConversationStatus] = mapped_column(
        Enum(ConversationStatus, name="conversation_status", values_callable=_enum_values),
        nullable=False,
        default=ConversationStatus.OPEN,
    )
    closed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_assignment_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_status_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)


class SupportCounter(Base):
    __tablename__ = "support_counters"
    __table_args__ = (
        CheckConstraint(
            "sessions_escalated IS NULL OR sessions_escalated >= 0",
            name="ck_support_counters_escalated_non_negative",
        ),
    )

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=CURRENT_COUNTER_ID)
    tickets_open: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    tickets_chat: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    tickets_email: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    tickets_other: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    sessions_active: Mapped[int | None] = mapped_column(Integer, nullable=True)
    sessions_escalated: Mapped[int | None] = mapped_column(Integer, nullable=True, default=0)
    source: Mapped[str] = mapped_column(String(80), nullable=False, default="bootstrap")
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class AlertRecord(Base):
    __tablename__ = "alert_log"

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    kind: Mapped[AlertKind] = mapped_column(Enum(AlertKind, name="alert_kind", values_callable=_enum_values), nullable=False)
    conversation_id: Mapped[str | None] = mapped_column(String(64), index=True, nullable=True)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    details: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
