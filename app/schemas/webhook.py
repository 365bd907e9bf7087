from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class HubSpotWebhookEvent(BaseModel):
    subscription_type: str = Field(alias="subscriptionType", min_length=1, max_length=80)
    object_id: str = Field(alias="objectId", min_length=1, max_length=64)
    property_name: str | None = Field(default=None, alias="propertyName", max_length=80)
    property_value: str | None = Field(default=None, alias="propertyValue", max_length=255)
    change_flag: str | None = Field(default=None, alias="changeFlag", max_length=40)
    event_id: str | None = Field(default=None, alias="eventId", max_length=64)
    occurred_at: datetime | None = Field(default=None, alias="occurredAt")
    attempt_number: int | None = Field(default=None, alias="attemptNumber", ge=0)
    portal_id: str | None = Field(default=None, alias="portalId", max_length=64)

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    @field_validator(
        "object_id",
        "event_id",
        "portal_id",
        "property_value",
        mode="before",
    )
    @classmethod
    def _coerce_identifier(cls, value: Any) -> Any:
        # HubSpot sends numeric ids; they are stored and compared as strings.
        if isinstance(value, bool):
            raise ValueError("identifier must be a string or integer")
        if isinstance(value, int):
            return str(value)
        if isinstance(value, str):
            return value.strip()
        return value


class WebhookAckResponse(BaseModel):
    success: bool = True
    message: str
    timestamp: datetime
