"""
Opens hosted checkout orders and records the matching PENDING subscription.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from enrollment.config import Settings, settings as default_settings
from enrollment.core.exceptions import ConflictError, NotFoundError, ValidationError
from enrollment.core.logger import audit
from enrollment.integrations import PaymentGateway
from enrollment.models import (
    Parent,
    PaymentMethod,
    PaymentStatus,
    Subscription,
    SubscriptionStatus,
    utcnow,
)
from enrollment.schemas.gateway import GatewayCustomer
from enrollment.services.draft_store import DraftStore

logger = logging.getLogger(__name__)

OPEN_STATUSES = (SubscriptionStatus.PENDING.value, SubscriptionStatus.ACTIVE.value)

PAYMENT_OPTIONS = {
    PaymentMethod.CARD: "card",
    PaymentMethod.MOBILE_MONEY: "mobilemoneyrwanda",
}


def new_tx_ref() -> str:
    return f"sub-{uuid.uuid4()}"


@dataclass
class OrderResult:
    checkout_url: str
    tx_ref: str
    subscription: Subscription


class PaymentOrderCoordinator:
    def __init__(self, db: Session, gateway: PaymentGateway, config: Optional[Settings] = None):
        self.db = db
        self.gateway = gateway
        self.config = config or default_settings
        self.drafts = DraftStore(db)

    async def initiate_order(
        self,
        payer_id: uuid.UUID,
        draft_id: str,
        amount: int,
        currency: Optional[str],
        method: PaymentMethod | str,
    ) -> OrderResult:
        currency = self._normalize_currency(currency)
        method = self._normalize_method(method)
        if amount is None or amount <= 0:
            raise ValidationError("Amount must be greater than zero")

        payer = self.db.get(Parent, payer_id)
        if payer is None:
            raise NotFoundError("Parent not found")
        self.drafts.get(draft_id, parent_id=payer_id)
        self._ensure_no_open_order(draft_id)

        tx_ref = new_tx_ref()
        customer = GatewayCustomer(
            email=payer.email,
            name=payer.full_name,
            phone_number=self._phone(payer.phone_number),
        )
        # No row is written until the gateway has accepted the order.
        order = await self.gateway.create_order(
            amount=amount,
            currency=currency,
            tx_ref=tx_ref,
            customer=customer,
            payment_options=PAYMENT_OPTIONS[method],
            redirect_url=self.config.payment_redirect_url.format(draft_id=draft_id),
        )

        now = utcnow()
        subscription = Subscription(
            payer_id=payer_id,
            draft_id=draft_id,
            tx_ref=tx_ref,
            status=SubscriptionStatus.PENDING.value,
            payment_status=PaymentStatus.PENDING.value,
            payment_method=method.value,
            amount=amount,
            currency=currency,
            checkout_url=order.checkout_url,
            start_date=now,
            end_date=now + timedelta(days=self.config.subscription_period_days),
            is_active=False,
        )
        self.db.add(subscription)
        try:
            self.db.commit()
        except IntegrityError as exc:
            self.db.rollback()
            logger.warning("Concurrent order for draft %s lost the race; tx_ref %s discarded", draft_id, tx_ref)
            raise ConflictError("A payment is already in progress for this registration") from exc

        audit(
            "order.created",
            subscription=subscription.id,
            tx_ref=tx_ref,
            payer=payer_id,
            draft=draft_id,
            amount=amount,
            currency=currency,
            method=method.value,
            provider_order=order.provider_order_id,
        )
        return OrderResult(checkout_url=order.checkout_url, tx_ref=tx_ref, subscription=subscription)

    def _ensure_no_open_order(self, draft_id: str) -> None:
        existing = self.db.execute(
            select(Subscription).where(
                Subscription.draft_id == draft_id,
                Subscription.status.in_(OPEN_STATUSES) | Subscription.child_id.isnot(None),
            )
        ).scalars().first()
        if existing is None:
            return
        if existing.child_id is not None:
            raise ConflictError("This registration has already been completed")
        if existing.status == SubscriptionStatus.ACTIVE.value:
            raise ConflictError("Payment for this registration is already confirmed")
        raise ConflictError("A payment is already in progress for this registration")

    def _normalize_currency(self, currency: Optional[str]) -> str:
        value = (currency or self.config.default_currency).strip().upper()
        if len(value) != 3 or not value.isalpha():
            raise ValidationError(f"Unsupported currency: {currency}")
        return value

    @staticmethod
    def _normalize_method(method: PaymentMethod | str) -> PaymentMethod:
        try:
            return PaymentMethod(method)
        except ValueError as exc:
            raise ValidationError("Unsupported payment method") from exc

    def _phone(self, phone_number: Optional[str]) -> Optional[str]:
        if not phone_number:
            return None
        phone_number = phone_number.strip()
        if phone_number.startswith("+"):
            return phone_number
        return f"{self.config.phone_country_code}{phone_number.lstrip('0')}"
