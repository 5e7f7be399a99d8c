from __future__ import annotations

from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from enrollment.models import PaymentMethod


class DraftCreate(BaseModel):
    first_name: str = Field(min_length=1, max_length=100)
    last_name: str = Field(min_length=1, max_length=100)
    age: int = Field(ge=3, le=25)
    grade: Optional[str] = None
    password: str = Field(min_length=6, max_length=128)
    image_url: Optional[str] = None


class DraftOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    first_name: str
    last_name: str
    age: Optional[int] = None
    grade: Optional[str] = None
    image_url: Optional[str] = None
    payment_url: Optional[str] = None
    created_at: datetime


class DraftCreated(BaseModel):
    draft: DraftOut
    message: str = "Student draft data collected. Complete payment to finish student registration."


class CheckoutRequest(BaseModel):
    amount: int = Field(gt=0)
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    payment_method: PaymentMethod = PaymentMethod.CARD


class CheckoutResponse(BaseModel):
    checkout_url: str
    tx_ref: str
    draft_id: str
    message: str


class AccountOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    first_name: str
    last_name: str
    age: Optional[int] = None
    grade: Optional[str] = None
    image_url: Optional[str] = None
    role: str
    subscription_id: UUID
    initial_quiz_id: Optional[str] = None
    created_at: datetime


class SubscriptionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tx_ref: str
    draft_id: Optional[str] = None
    status: str
    payment_status: str
    payment_method: str
    child_id: Optional[UUID] = None
    amount: int
    currency: str
    start_date: datetime
    end_date: datetime
    is_active: bool
