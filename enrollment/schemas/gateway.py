"""Typed results exchanged with the payment gateway, validated at the trust boundary."""
from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class GatewayCustomer(BaseModel):
    email: str
    name: str
    phone_number: Optional[str] = None


class HostedOrder(BaseModel):
    checkout_url: str = Field(min_length=1)
    provider_order_id: Optional[str] = None


class VerificationResult(BaseModel):
    success: bool
    provider_status: str
    amount: Optional[float] = None
    currency: Optional[str] = None
    tx_ref: Optional[str] = None
    transaction_id: Optional[str] = None


class FlutterwaveEnvelope(BaseModel):
    """Outer `{status, message, data}` shape shared by Flutterwave responses."""

    model_config = ConfigDict(extra="ignore")

    status: str
    message: Optional[str] = None
    data: Optional[dict] = None


class FlutterwaveTransaction(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    tx_ref: Optional[str] = None
    status: str
    amount: Optional[float] = None
    currency: Optional[str] = None

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, value):
        return str(value) if value is not None else value
