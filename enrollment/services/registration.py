"""
Turns a paid draft into a permanent student account.

``finalize`` may run concurrently from the webhook's background task and
from the client's own finalize/redirect call. The account insert and the
guarded child link share one transaction; the loser's link UPDATE matches no
row, its transaction is rolled back (taking its account with it) and it
returns the winner's account instead.
"""
from __future__ import annotations

import logging
import uuid
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from enrollment.core.exceptions import ConflictError, NotFoundError
from enrollment.core.logger import audit
from enrollment.models import (
    Account,
    Draft,
    LedgerTransaction,
    PaymentStatus,
    Subscription,
    SubscriptionStatus,
    TransactionType,
    utcnow,
)
from enrollment.services.provisioning import InitialResourceProvisioner

logger = logging.getLogger(__name__)


class RegistrationFinalizer:
    def __init__(self, db: Session, provisioner: Optional[InitialResourceProvisioner] = None):
        self.db = db
        self.provisioner = provisioner

    async def finalize(self, draft_id: str, payer_id: uuid.UUID) -> Account:
        subscriptions = self._subscriptions_for(draft_id, payer_id)
        if not subscriptions:
            raise NotFoundError("No subscription found for this student registration")

        linked = next((s for s in subscriptions if s.child_id is not None), None)
        if linked is not None:
            account = self._linked_account(linked)
            logger.info("Draft %s already finalized as account %s", draft_id, account.id)
            self._record_ledger(linked, account)
            return account

        subscription = next(
            (s for s in subscriptions if s.status == SubscriptionStatus.ACTIVE.value),
            subscriptions[0],
        )
        self._ensure_eligible(subscription)

        draft = self.db.get(Draft, draft_id)
        if draft is None:
            raise NotFoundError("Temporary student data not found")

        account = Account(
            parent_id=payer_id,
            subscription_id=subscription.id,
            first_name=draft.first_name,
            last_name=draft.last_name,
            age=draft.age,
            grade=draft.grade,
            password_hash=draft.password_hash,
            image_url=draft.image_url,
            role="student",
        )
        self.db.add(account)
        self.db.flush()

        result = self.db.execute(
            update(Subscription)
            .where(
                Subscription.id == subscription.id,
                Subscription.child_id.is_(None),
                Subscription.status == SubscriptionStatus.ACTIVE.value,
            )
            .values(child_id=account.id, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            self.db.rollback()
            self.db.refresh(subscription)
            if subscription.child_id is None:
                raise ConflictError("Subscription is no longer eligible for registration")
            winner = self._linked_account(subscription)
            audit(
                "finalize.lost_race",
                subscription=subscription.id,
                draft=draft_id,
                account=winner.id,
            )
            self._record_ledger(subscription, winner)
            return winner

        self.db.commit()
        self.db.refresh(subscription)
        audit(
            "finalize.account_created",
            subscription=subscription.id,
            draft=draft_id,
            payer=payer_id,
            account=account.id,
        )

        await self._provision(account)
        self._record_ledger(subscription, account)
        return account

    def _subscriptions_for(self, draft_id: str, payer_id: uuid.UUID) -> List[Subscription]:
        return list(
            self.db.execute(
                select(Subscription)
                .where(Subscription.draft_id == draft_id, Subscription.payer_id == payer_id)
                .order_by(Subscription.created_at.desc())
            ).scalars()
        )

    def _linked_account(self, subscription: Subscription) -> Account:
        account = self.db.get(Account, subscription.child_id)
        if account is None:
            raise NotFoundError("Linked student account not found")
        return account

    @staticmethod
    def _ensure_eligible(subscription: Subscription) -> None:
        if subscription.payment_status != PaymentStatus.COMPLETED.value:
            raise ConflictError("Payment not completed. Please complete payment before finalizing registration")
        if subscription.status != SubscriptionStatus.ACTIVE.value or not subscription.is_active:
            raise ConflictError("Subscription is not active. Please contact support if you have completed payment")
        if subscription.end_date <= utcnow():
            logger.error("Subscription %s has already expired. Cannot register student.", subscription.id)
            raise ConflictError("Subscription has expired")

    async def _provision(self, account: Account) -> None:
        if self.provisioner is None:
            return
        try:
            quiz_id = await self.provisioner.provision(account)
        except Exception as exc:
            logger.error("Failed to generate initial quiz for student %s: %s", account.id, exc)
            return
        if not quiz_id:
            return
        self.db.execute(
            update(Account)
            .where(Account.id == account.id, Account.initial_quiz_id.is_(None))
            .values(initial_quiz_id=quiz_id)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        self.db.refresh(account)
        logger.info("Generated initial career quiz %s for student %s", quiz_id, account.id)

    def _record_ledger(self, subscription: Subscription, account: Account) -> LedgerTransaction:
        existing = self._existing_ledger(subscription.payer_id, account.id)
        if existing is not None:
            logger.info("Transaction already exists for this registration: %s", existing.id)
            return existing

        entry = LedgerTransaction(
            parent_id=subscription.payer_id,
            account_id=account.id,
            amount=subscription.amount,
            currency=subscription.currency,
            payment_method=subscription.payment_method,
            transaction_type=TransactionType.STUDENT_REGISTRATION.value,
            transaction_ref=subscription.external_id or subscription.tx_ref,
            transaction_date=utcnow(),
            notes=f"Student registration for {account.first_name} {account.last_name}",
        )
        self.db.add(entry)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            existing = self._existing_ledger(subscription.payer_id, account.id)
            if existing is None:
                raise
            logger.info("Concurrent ledger insert detected; keeping %s", existing.id)
            return existing

        audit(
            "ledger.recorded",
            transaction=entry.id,
            payer=subscription.payer_id,
            account=account.id,
            amount=entry.amount,
            currency=entry.currency,
            ref=entry.transaction_ref,
        )
        return entry

    def _existing_ledger(self, payer_id: uuid.UUID, account_id: uuid.UUID) -> Optional[LedgerTransaction]:
        return self.db.execute(
            select(LedgerTransaction).where(
                LedgerTransaction.parent_id == payer_id,
                LedgerTransaction.account_id == account_id,
                LedgerTransaction.transaction_type == TransactionType.STUDENT_REGISTRATION.value,
            )
        ).scalars().first()
