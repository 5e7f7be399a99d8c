from typing import List

from fastapi import APIRouter, Depends
from sqlalchemy import select
from sqlalchemy.orm import Session

from enrollment.api.dependencies import get_current_parent
from enrollment.database import get_db
from enrollment.models import Parent, Subscription, SubscriptionStatus, utcnow
from enrollment.schemas.registration import SubscriptionOut

router = APIRouter()


@router.get("/active", response_model=List[SubscriptionOut])
async def list_active_subscriptions(
    parent: Parent = Depends(get_current_parent),
    db: Session = Depends(get_db),
) -> List[SubscriptionOut]:
    subscriptions = db.execute(
        select(Subscription)
        .where(
            Subscription.payer_id == parent.id,
            Subscription.status == SubscriptionStatus.ACTIVE.value,
            Subscription.is_active.is_(True),
            Subscription.end_date > utcnow(),
        )
        .order_by(Subscription.end_date)
    ).scalars()
    return [SubscriptionOut.model_validate(s) for s in subscriptions]
