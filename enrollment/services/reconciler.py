"""
Confirmation reconciliation for hosted-checkout payments.

Three entry points can confirm the same order, in any order and from any
process: the provider's push webhook, the browser redirect (verified
server-to-server) and a privileged manual override. They all funnel into
``try_activate``, a single conditional UPDATE that only matches a PENDING
row. Whichever caller's UPDATE matches first wins; every later caller sees
zero affected rows and gets ``ALREADY_PROCESSED``, which is a success.
A declined charge goes through the same guard to FAILED, which frees the
draft for a new checkout.
"""
from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Any, Mapping, Optional, Tuple

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from enrollment.config import Settings, settings as default_settings
from enrollment.core.exceptions import ConflictError, NotFoundError, ValidationError
from enrollment.core.logger import audit
from enrollment.core.security import verify_webhook_signature
from enrollment.integrations import PaymentGateway
from enrollment.models import PaymentStatus, Subscription, SubscriptionStatus, utcnow
from enrollment.schemas.payment import WebhookEvent

logger = logging.getLogger(__name__)

DECLINED_STATUS = "failed"


class ActivationOutcome(str, Enum):
    ACTIVATED = "activated"
    ALREADY_PROCESSED = "already_processed"


class PushOutcome(str, Enum):
    ACTIVATED = "activated"
    ALREADY_PROCESSED = "already_processed"
    FAILED = "failed"
    IGNORED = "ignored"


@dataclass
class ActivationResult:
    outcome: ActivationOutcome
    subscription: Subscription

    @property
    def activated(self) -> bool:
        return self.outcome is ActivationOutcome.ACTIVATED


@dataclass
class PushResult:
    outcome: PushOutcome
    tx_ref: Optional[str] = None
    subscription: Optional[Subscription] = None


class ConfirmationReconciler:
    def __init__(
        self,
        db: Session,
        gateway: Optional[PaymentGateway] = None,
        config: Optional[Settings] = None,
    ):
        self.db = db
        self.gateway = gateway
        self.config = config or default_settings

    def try_activate(self, tx_ref: str, external_id: str, channel: str = "unknown") -> ActivationResult:
        """Move the subscription for ``tx_ref`` from PENDING to ACTIVE exactly once."""
        now = utcnow()
        activated, subscription = self._transition_pending(
            tx_ref,
            channel,
            status=SubscriptionStatus.ACTIVE.value,
            payment_status=PaymentStatus.COMPLETED.value,
            is_active=True,
            external_id=external_id,
            start_date=now,
            end_date=now + timedelta(days=self.config.subscription_period_days),
            updated_at=now,
        )

        if activated:
            audit(
                "subscription.activated",
                subscription=subscription.id,
                tx_ref=tx_ref,
                external_id=external_id,
                channel=channel,
                end_date=subscription.end_date.isoformat(),
            )
            return ActivationResult(ActivationOutcome.ACTIVATED, subscription)

        audit(
            "subscription.already_processed",
            subscription=subscription.id,
            tx_ref=tx_ref,
            status=subscription.status,
            attempted_external_id=external_id,
            channel=channel,
        )
        return ActivationResult(ActivationOutcome.ALREADY_PROCESSED, subscription)

    def mark_failed(self, tx_ref: str, external_id: str, channel: str = "unknown") -> Tuple[bool, Subscription]:
        """Close a declined PENDING order so the draft can be checked out again.

        Returns whether this call made the transition, plus the stored row.
        """
        failed, subscription = self._transition_pending(
            tx_ref,
            channel,
            status=SubscriptionStatus.FAILED.value,
            payment_status=PaymentStatus.FAILED.value,
            is_active=False,
            external_id=external_id,
            updated_at=utcnow(),
        )
        audit(
            "subscription.failed" if failed else "subscription.already_processed",
            subscription=subscription.id,
            tx_ref=tx_ref,
            status=subscription.status,
            attempted_external_id=external_id,
            channel=channel,
        )
        return failed, subscription

    def _transition_pending(self, tx_ref: str, channel: str, **values: Any) -> Tuple[bool, Subscription]:
        # Only a PENDING row matches, so the first caller wins and later ones change nothing.
        result = self.db.execute(
            update(Subscription)
            .where(
                Subscription.tx_ref == tx_ref,
                Subscription.status == SubscriptionStatus.PENDING.value,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        changed = result.rowcount == 1

        subscription = self.db.execute(
            select(Subscription).where(Subscription.tx_ref == tx_ref).execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if subscription is None:
            logger.warning("No subscription found for tx_ref %s (channel=%s)", tx_ref, channel)
            raise NotFoundError(f"No subscription found with transaction reference {tx_ref}")
        return changed, subscription

    def handle_push(self, signature: Optional[str], payload: bytes | Mapping[str, Any]) -> PushResult:
        """Authenticate and apply a provider push notification.

        The signature is checked before the body is even parsed. Once
        authenticated, the provider always gets a 2xx answer unless the body
        is unusable, so unknown references are acknowledged and ignored.
        """
        verify_webhook_signature(signature, self.config.flutterwave_hash.get_secret_value())

        try:
            if isinstance(payload, (bytes, str)):
                event = WebhookEvent.model_validate_json(payload)
            else:
                event = WebhookEvent.model_validate(payload)
        except PydanticValidationError as exc:
            logger.warning("Rejected malformed webhook payload: %s", exc.errors()[:3])
            raise ValidationError("Malformed webhook payload") from exc

        tx_ref = event.data.tx_ref
        if not (event.is_successful_charge or event.is_failed_charge):
            logger.info(
                "Ignored webhook event=%s status=%s tx_ref=%s",
                event.event_type,
                event.data.status,
                tx_ref,
            )
            return PushResult(PushOutcome.IGNORED, tx_ref=tx_ref)

        if not tx_ref:
            raise ValidationError("Webhook payload is missing tx_ref")

        external_id = event.data.id or tx_ref
        try:
            if event.is_failed_charge:
                failed, subscription = self.mark_failed(tx_ref, external_id, channel="push")
                outcome = PushOutcome.FAILED if failed else PushOutcome.ALREADY_PROCESSED
                return PushResult(outcome, tx_ref=tx_ref, subscription=subscription)
            activation = self.try_activate(tx_ref, external_id, channel="push")
        except NotFoundError:
            logger.warning("Acknowledged webhook for unknown tx_ref %s without changes", tx_ref)
            return PushResult(PushOutcome.IGNORED, tx_ref=tx_ref)
        return PushResult(PushOutcome(activation.outcome.value), tx_ref=tx_ref, subscription=activation.subscription)

    async def confirm_redirect(
        self,
        payer_id: uuid.UUID,
        draft_id: str,
        transaction_id: str,
        tx_ref: Optional[str] = None,
    ) -> ActivationResult:
        """Verify the returning browser's transaction with the provider, then activate."""
        if not transaction_id:
            raise ValidationError("transaction_id is required")
        if self.gateway is None:
            raise RuntimeError("Redirect confirmation needs a payment gateway")

        subscription = self._subscription_for_draft(payer_id, draft_id, tx_ref)

        verification = await self.gateway.verify(transaction_id)
        if not verification.success:
            audit(
                "redirect.unverified",
                subscription=subscription.id,
                transaction_id=transaction_id,
                provider_status=verification.provider_status,
            )
            declined = verification.provider_status.lower() == DECLINED_STATUS and (
                not verification.tx_ref or verification.tx_ref == subscription.tx_ref
            )
            if declined:
                self.mark_failed(subscription.tx_ref, verification.transaction_id or transaction_id, channel="redirect")
                raise ConflictError("Payment was declined. Please start a new checkout")
            raise ConflictError("Payment could not be verified")
        if verification.tx_ref and verification.tx_ref != subscription.tx_ref:
            audit(
                "redirect.tx_ref_mismatch",
                subscription=subscription.id,
                expected=subscription.tx_ref,
                received=verification.tx_ref,
            )
            raise ConflictError("Verified transaction does not belong to this registration")
        if verification.amount is not None and verification.amount < subscription.amount:
            audit(
                "redirect.amount_short",
                subscription=subscription.id,
                expected=subscription.amount,
                received=verification.amount,
            )
            raise ConflictError("Verified amount is lower than the order amount")
        if verification.currency and verification.currency.upper() != subscription.currency:
            raise ConflictError("Verified currency does not match the order currency")

        return self.try_activate(
            subscription.tx_ref,
            verification.transaction_id or transaction_id,
            channel="redirect",
        )

    def manual_confirm(self, tx_ref: str, payer_id: Optional[uuid.UUID] = None) -> ActivationResult:
        """Trusted escape hatch: activate without asking the provider.

        With ``payer_id`` only that parent's own orders can be confirmed.
        """
        if payer_id is not None:
            owned = self.db.execute(
                select(Subscription.id).where(Subscription.tx_ref == tx_ref, Subscription.payer_id == payer_id)
            ).first()
            if owned is None:
                raise NotFoundError(f"No subscription found with transaction reference {tx_ref}")
        external_id = f"manual-{int(time.time() * 1000)}"
        logger.warning("Manual payment confirmation requested for tx_ref %s", tx_ref)
        return self.try_activate(tx_ref, external_id, channel="manual")

    def _subscription_for_draft(
        self, payer_id: uuid.UUID, draft_id: str, tx_ref: Optional[str]
    ) -> Subscription:
        query = select(Subscription).where(
            Subscription.payer_id == payer_id,
            Subscription.draft_id == draft_id,
        )
        if tx_ref:
            query = query.where(Subscription.tx_ref == tx_ref)
        subscription = self.db.execute(
            query.order_by(Subscription.created_at.desc())
        ).scalars().first()
        if subscription is None:
            raise NotFoundError("Subscription not found")
        return subscription
