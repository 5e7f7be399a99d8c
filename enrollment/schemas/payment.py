from __future__ import annotations

from typing import Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


class WebhookData(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    tx_ref: Optional[str] = None
    status: str = ""
    amount: Optional[float] = None
    currency: Optional[str] = None

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, value):
        return str(value) if value is not None else value


class WebhookEvent(BaseModel):
    """Push notification body; Flutterwave names the discriminator `event`."""

    model_config = ConfigDict(extra="ignore")

    event_type: str = Field(validation_alias=AliasChoices("event", "eventType", "event_type"))
    data: WebhookData

    @property
    def is_successful_charge(self) -> bool:
        return self.event_type == "charge.completed" and self.data.status.lower() == "successful"

    @property
    def is_failed_charge(self) -> bool:
        return self.event_type == "charge.completed" and self.data.status.lower() == "failed"


class ManualConfirmRequest(BaseModel):
    tx_ref: str = Field(min_length=1, validation_alias=AliasChoices("tx_ref", "txRef"))


class ConfirmationResponse(BaseModel):
    outcome: str
    tx_ref: str
    subscription_status: str
    transaction_id: Optional[str] = None
    draft_id: Optional[str] = None
    account_id: Optional[str] = None
    message: str
