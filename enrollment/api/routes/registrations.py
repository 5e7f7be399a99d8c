"""
Registration API Routes
Draft a student, open checkout, finalize after payment
"""
from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from enrollment.api.dependencies import get_app_settings, get_current_parent, get_gateway, get_provisioner
from enrollment.config import Settings
from enrollment.database import get_db
from enrollment.integrations import PaymentGateway
from enrollment.models import Parent
from enrollment.schemas.registration import (
    AccountOut,
    CheckoutRequest,
    CheckoutResponse,
    DraftCreate,
    DraftCreated,
    DraftOut,
)
from enrollment.services.draft_store import DraftStore
from enrollment.services.payment_orders import PaymentOrderCoordinator
from enrollment.services.provisioning import InitialResourceProvisioner
from enrollment.services.registration import RegistrationFinalizer

router = APIRouter()


@router.post("/drafts", response_model=DraftCreated, status_code=status.HTTP_201_CREATED)
async def create_draft(
    payload: DraftCreate,
    parent: Parent = Depends(get_current_parent),
    db: Session = Depends(get_db),
) -> DraftCreated:
    draft = DraftStore(db).create(parent.id, payload)
    return DraftCreated(draft=DraftOut.model_validate(draft))


@router.get("/drafts/{draft_id}", response_model=DraftOut)
async def get_draft(
    draft_id: str,
    parent: Parent = Depends(get_current_parent),
    db: Session = Depends(get_db),
) -> DraftOut:
    return DraftOut.model_validate(DraftStore(db).get(draft_id, parent_id=parent.id))


@router.post("/drafts/{draft_id}/checkout", response_model=CheckoutResponse)
async def start_checkout(
    draft_id: str,
    payload: CheckoutRequest,
    parent: Parent = Depends(get_current_parent),
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
    config: Settings = Depends(get_app_settings),
) -> CheckoutResponse:
    """
    Open a hosted checkout for the draft; the PENDING subscription is stored only once the provider accepts.
    """
    order = await PaymentOrderCoordinator(db, gateway, config).initiate_order(
        payer_id=parent.id,
        draft_id=draft_id,
        amount=payload.amount,
        currency=payload.currency,
        method=payload.payment_method,
    )
    return CheckoutResponse(
        checkout_url=order.checkout_url,
        tx_ref=order.tx_ref,
        draft_id=draft_id,
        message=f"{payload.payment_method.value} payment link generated successfully",
    )


@router.post("/drafts/{draft_id}/finalize", response_model=AccountOut)
async def finalize_registration(
    draft_id: str,
    parent: Parent = Depends(get_current_parent),
    db: Session = Depends(get_db),
    provisioner: InitialResourceProvisioner = Depends(get_provisioner),
) -> AccountOut:
    account = await RegistrationFinalizer(db, provisioner).finalize(draft_id, parent.id)
    return AccountOut.model_validate(account)
