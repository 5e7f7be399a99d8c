"""
Payment confirmation routes: provider webhook, browser redirect, manual override
"""
import logging
import uuid
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Request, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from enrollment.api.dependencies import get_app_settings, get_current_parent, get_gateway, get_provisioner
from enrollment.config import Settings
from enrollment.core.exceptions import AppError
from enrollment.database import get_db, get_session_factory
from enrollment.integrations import PaymentGateway
from enrollment.models import Parent
from enrollment.schemas.payment import ConfirmationResponse, ManualConfirmRequest
from enrollment.services.provisioning import InitialResourceProvisioner
from enrollment.services.reconciler import ConfirmationReconciler, PushOutcome
from enrollment.services.registration import RegistrationFinalizer

logger = logging.getLogger(__name__)

router = APIRouter()

SIGNATURE_HEADER = "verif-hash"


async def finalize_in_background(
    session_factory: sessionmaker,
    provisioner: InitialResourceProvisioner,
    draft_id: str,
    payer_id: uuid.UUID,
) -> None:
    """Auto-finalize after a push activation; the client's own finalize call covers any failure here."""
    db = session_factory()
    try:
        account = await RegistrationFinalizer(db, provisioner).finalize(draft_id, payer_id)
        logger.info("Auto-finalized draft %s as account %s", draft_id, account.id)
    except AppError as exc:
        logger.warning("Auto-finalize for draft %s skipped: %s", draft_id, exc.message)
    except SQLAlchemyError:
        logger.exception("Auto-finalize for draft %s failed on the database", draft_id)
    finally:
        db.close()


@router.post("/flutterwave/webhook")
async def flutterwave_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    session_factory: sessionmaker = Depends(get_session_factory),
    provisioner: InitialResourceProvisioner = Depends(get_provisioner),
    config: Settings = Depends(get_app_settings),
) -> dict:
    body = await request.body()
    result = ConfirmationReconciler(db, config=config).handle_push(
        request.headers.get(SIGNATURE_HEADER), body
    )

    subscription = result.subscription
    if result.outcome is PushOutcome.ACTIVATED and subscription is not None and subscription.draft_id:
        background_tasks.add_task(
            finalize_in_background,
            session_factory,
            provisioner,
            subscription.draft_id,
            subscription.payer_id,
        )
    return {"status": "ok", "outcome": result.outcome.value}


@router.get("/callback/{draft_id}", response_model=ConfirmationResponse)
async def payment_callback(
    draft_id: str,
    transaction_id: str = Query(..., min_length=1),
    tx_ref: Optional[str] = Query(default=None),
    parent: Parent = Depends(get_current_parent),
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
    provisioner: InitialResourceProvisioner = Depends(get_provisioner),
    config: Settings = Depends(get_app_settings),
) -> ConfirmationResponse:
    """
    Browser return from hosted checkout: verify with the provider, activate, then register the student.
    """
    activation = await ConfirmationReconciler(db, gateway, config).confirm_redirect(
        payer_id=parent.id,
        draft_id=draft_id,
        transaction_id=transaction_id,
        tx_ref=tx_ref,
    )
    account = await RegistrationFinalizer(db, provisioner).finalize(draft_id, parent.id)
    subscription = activation.subscription
    db.refresh(subscription)

    return ConfirmationResponse(
        outcome=activation.outcome.value,
        tx_ref=subscription.tx_ref,
        subscription_status=subscription.status,
        transaction_id=transaction_id,
        draft_id=draft_id,
        account_id=str(account.id),
        message="Subscription payment successful. Your subscription is now active and your student is registered",
    )


@router.post("/manual-confirm", response_model=ConfirmationResponse)
async def manual_confirm(
    payload: ManualConfirmRequest,
    parent: Parent = Depends(get_current_parent),
    db: Session = Depends(get_db),
    config: Settings = Depends(get_app_settings),
) -> ConfirmationResponse:
    """
    Mark one of the caller's own subscriptions as paid without asking the provider.
    Disabled unless MANUAL_CONFIRMATION_ENABLED.
    """
    if not config.manual_confirmation_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not found")

    logger.warning("Manual confirmation of %s requested by parent %s", payload.tx_ref, parent.id)
    activation = ConfirmationReconciler(db, config=config).manual_confirm(payload.tx_ref, payer_id=parent.id)
    subscription = activation.subscription
    return ConfirmationResponse(
        outcome=activation.outcome.value,
        tx_ref=subscription.tx_ref,
        subscription_status=subscription.status,
        transaction_id=subscription.external_id,
        draft_id=subscription.draft_id,
        message=f"Manually marked subscription {subscription.id} as paid",
    )
