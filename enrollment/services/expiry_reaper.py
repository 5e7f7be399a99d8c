"""
Scheduled sweep that expires elapsed subscriptions.
Runs in-process on a cron expression and notifies owners best-effort.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional

from croniter import croniter
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from enrollment.core.logger import audit
from enrollment.models import Parent, Subscription, SubscriptionStatus, utcnow
from enrollment.services.notification_service import Notifier

logger = logging.getLogger(__name__)


@dataclass
class ExpiredSubscription:
    subscription_id: uuid.UUID
    payer_id: uuid.UUID


class ExpiryReaper:
    """Marks ACTIVE subscriptions whose validity window has elapsed as EXPIRED."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        notifier: Optional[Notifier] = None,
        schedule_cron: str = "0 0 1 * *",
    ):
        if not croniter.is_valid(schedule_cron):
            raise ValueError(f"Invalid expiry sweep cron expression: {schedule_cron}")
        self.session_factory = session_factory
        self.notifier = notifier
        self.schedule_cron = schedule_cron
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task | None = None
        self._sweep_lock = asyncio.Lock()

    def start(self) -> None:
        """Start sweep loop as background task."""
        if self._task and not self._task.done():
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_loop())
        logger.info("ExpiryReaper started with schedule '%s'", self.schedule_cron)

    async def stop(self) -> None:
        """Stop sweep loop and wait for completion."""
        self._stop_event.set()
        if self._task:
            await self._task
        logger.info("ExpiryReaper stopped")

    async def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            now = utcnow()
            next_run = croniter(self.schedule_cron, now).get_next(datetime)
            delay = max((next_run - now).total_seconds(), 0)
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
                break
            except asyncio.TimeoutError:
                pass
            try:
                await self.tick()
            except Exception as exc:
                logger.exception("ExpiryReaper tick failed: %s", exc)

    async def tick(self) -> Optional[int]:
        """Run one sweep unless the previous one is still in flight."""
        if self._sweep_lock.locked():
            logger.warning("ExpiryReaper sweep still running; skipping this tick")
            return None
        async with self._sweep_lock:
            return await self.run_once()

    async def run_once(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        logger.info("Checking for expired subscriptions at %s", now.isoformat())

        db = self.session_factory()
        try:
            expired = self._expire_elapsed(db, now)
            recipients = self._recipients(db, expired)
        finally:
            db.close()

        for expired_sub in expired:
            await self._notify(expired_sub, recipients.get(expired_sub.payer_id))

        logger.info("Marked %s subscriptions as EXPIRED", len(expired))
        return len(expired)

    def _expire_elapsed(self, db: Session, now: datetime) -> List[ExpiredSubscription]:
        candidates = db.execute(
            select(Subscription.id, Subscription.payer_id).where(
                Subscription.status == SubscriptionStatus.ACTIVE.value,
                Subscription.end_date <= now,
            )
        ).all()

        expired: List[ExpiredSubscription] = []
        for subscription_id, payer_id in candidates:
            # Per-row guard: an overlapping sweep that already expired this row matches nothing.
            result = db.execute(
                update(Subscription)
                .where(
                    Subscription.id == subscription_id,
                    Subscription.status == SubscriptionStatus.ACTIVE.value,
                )
                .values(status=SubscriptionStatus.EXPIRED.value, is_active=False, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            db.commit()
            if result.rowcount == 1:
                expired.append(ExpiredSubscription(subscription_id, payer_id))
                audit("subscription.expired", subscription=subscription_id, payer=payer_id)
        return expired

    @staticmethod
    def _recipients(db: Session, expired: List[ExpiredSubscription]) -> dict:
        payer_ids = {item.payer_id for item in expired}
        if not payer_ids:
            return {}
        parents = db.execute(select(Parent).where(Parent.id.in_(payer_ids))).scalars().all()
        return {parent.id: (parent.email, parent.first_name) for parent in parents}

    async def _notify(self, expired_sub: ExpiredSubscription, recipient: Optional[tuple]) -> None:
        if self.notifier is None:
            return
        if recipient is None:
            logger.warning("No owner found for expired subscription %s", expired_sub.subscription_id)
            return
        email, first_name = recipient
        try:
            await self.notifier.send_expired_subscription_email(email, first_name)
        except Exception as exc:
            logger.error("Failed to email user %s: %s", email, exc)
