import json
import uuid
from concurrent.futures import ThreadPoolExecutor

import pytest
from pydantic import SecretStr

from enrollment.core.exceptions import AuthenticationError, ConflictError, NotFoundError, ValidationError
from enrollment.models import Subscription, SubscriptionStatus
from enrollment.schemas.gateway import VerificationResult
from enrollment.services.reconciler import (
    ActivationOutcome,
    ConfirmationReconciler,
    PushOutcome,
)

WEBHOOK_HASH = 'test-webhook-hash'


def _charge(tx_ref, status='successful', event='charge.completed', transaction_id=48211):
    return json.dumps(
        {
            'event': event,
            'data': {
                'id': transaction_id,
                'tx_ref': tx_ref,
                'status': status,
                'amount': 20000,
                'currency': 'RWF',
            },
        }
    ).encode()


def _reload(session_factory, tx_ref):
    session = session_factory()
    try:
        return session.query(Subscription).filter_by(tx_ref=tx_ref).one()
    finally:
        session.close()


def test_try_activate_moves_pending_to_active(db, pending_subscription, config):
    result = ConfirmationReconciler(db, config=config).try_activate(pending_subscription.tx_ref, 'flw-1')

    assert result.outcome is ActivationOutcome.ACTIVATED
    assert result.activated
    subscription = result.subscription
    assert subscription.status == 'ACTIVE'
    assert subscription.payment_status == 'COMPLETED'
    assert subscription.is_active is True
    assert subscription.external_id == 'flw-1'
    assert subscription.end_date > subscription.start_date


def test_try_activate_is_idempotent(db, pending_subscription, config):
    reconciler = ConfirmationReconciler(db, config=config)
    first = reconciler.try_activate(pending_subscription.tx_ref, 'flw-1')
    second = reconciler.try_activate(pending_subscription.tx_ref, 'flw-2')

    assert first.outcome is ActivationOutcome.ACTIVATED
    assert second.outcome is ActivationOutcome.ALREADY_PROCESSED
    assert second.subscription.external_id == 'flw-1'
    assert second.subscription.end_date == first.subscription.end_date


def test_try_activate_unknown_reference_raises_not_found(db, config):
    with pytest.raises(NotFoundError):
        ConfirmationReconciler(db, config=config).try_activate('sub-unknown', 'flw-1')


def test_try_activate_does_not_revive_expired_subscription(db, subscription_factory, config):
    expired = subscription_factory(status=SubscriptionStatus.EXPIRED)

    result = ConfirmationReconciler(db, config=config).try_activate(expired.tx_ref, 'flw-late')

    assert result.outcome is ActivationOutcome.ALREADY_PROCESSED
    assert result.subscription.status == 'EXPIRED'
    assert result.subscription.external_id is None


def test_concurrent_activations_transition_exactly_once(session_factory, pending_subscription, config):
    tx_ref = pending_subscription.tx_ref

    def attempt(index):
        session = session_factory()
        try:
            return ConfirmationReconciler(session, config=config).try_activate(tx_ref, f'flw-{index}').outcome
        finally:
            session.close()

    with ThreadPoolExecutor(max_workers=6) as pool:
        outcomes = list(pool.map(attempt, range(6)))

    assert outcomes.count(ActivationOutcome.ACTIVATED) == 1
    assert outcomes.count(ActivationOutcome.ALREADY_PROCESSED) == 5
    winner = outcomes.index(ActivationOutcome.ACTIVATED)
    assert _reload(session_factory, tx_ref).external_id == f'flw-{winner}'


def test_push_with_valid_signature_activates(db, pending_subscription, config):
    result = ConfirmationReconciler(db, config=config).handle_push(WEBHOOK_HASH, _charge(pending_subscription.tx_ref))

    assert result.outcome is PushOutcome.ACTIVATED
    assert result.tx_ref == pending_subscription.tx_ref
    assert result.subscription.external_id == '48211'


def test_duplicate_push_is_already_processed(db, pending_subscription, config):
    reconciler = ConfirmationReconciler(db, config=config)
    reconciler.handle_push(WEBHOOK_HASH, _charge(pending_subscription.tx_ref))
    result = reconciler.handle_push(WEBHOOK_HASH, _charge(pending_subscription.tx_ref))

    assert result.outcome is PushOutcome.ALREADY_PROCESSED


@pytest.mark.parametrize('signature', [None, '', 'wrong-hash', WEBHOOK_HASH + 'x'])
def test_push_with_bad_signature_mutates_nothing(session_factory, db, pending_subscription, config, signature):
    with pytest.raises(AuthenticationError):
        ConfirmationReconciler(db, config=config).handle_push(signature, _charge(pending_subscription.tx_ref))

    assert _reload(session_factory, pending_subscription.tx_ref).status == 'PENDING'


def test_push_rejected_when_secret_not_configured(db, pending_subscription, config):
    config = config.model_copy(update={'flutterwave_hash': SecretStr('')})

    with pytest.raises(AuthenticationError):
        ConfirmationReconciler(db, config=config).handle_push('', _charge(pending_subscription.tx_ref))


@pytest.mark.parametrize(
    'status,event',
    [
        ('cancelled', 'charge.completed'),
        ('pending', 'charge.completed'),
        ('failed', 'transfer.completed'),
        ('successful', 'transfer.completed'),
    ],
)
def test_non_success_push_is_ignored(session_factory, db, pending_subscription, config, status, event):
    result = ConfirmationReconciler(db, config=config).handle_push(
        WEBHOOK_HASH, _charge(pending_subscription.tx_ref, status=status, event=event)
    )

    assert result.outcome is PushOutcome.IGNORED
    assert _reload(session_factory, pending_subscription.tx_ref).status == 'PENDING'


def test_push_status_is_case_insensitive(db, pending_subscription, config):
    result = ConfirmationReconciler(db, config=config).handle_push(
        WEBHOOK_HASH, _charge(pending_subscription.tx_ref, status='SUCCESSFUL')
    )
    assert result.outcome is PushOutcome.ACTIVATED


def test_malformed_push_payload_is_rejected(db, config):
    with pytest.raises(ValidationError):
        ConfirmationReconciler(db, config=config).handle_push(WEBHOOK_HASH, b'not json')


def test_successful_push_without_reference_is_rejected(db, config):
    payload = json.dumps({'event': 'charge.completed', 'data': {'id': 1, 'status': 'successful'}}).encode()
    with pytest.raises(ValidationError):
        ConfirmationReconciler(db, config=config).handle_push(WEBHOOK_HASH, payload)


@pytest.mark.asyncio
async def test_redirect_verifies_then_activates(db, parent, draft, pending_subscription, gateway, config):
    gateway.approve('48211', pending_subscription.tx_ref)

    result = await ConfirmationReconciler(db, gateway, config).confirm_redirect(parent.id, draft.id, '48211')

    assert result.outcome is ActivationOutcome.ACTIVATED
    assert result.subscription.external_id == '48211'


@pytest.mark.asyncio
async def test_redirect_after_push_is_already_processed(db, parent, draft, pending_subscription, gateway, config):
    reconciler = ConfirmationReconciler(db, gateway, config)
    reconciler.handle_push(WEBHOOK_HASH, _charge(pending_subscription.tx_ref))
    gateway.approve('48211', pending_subscription.tx_ref)

    result = await reconciler.confirm_redirect(parent.id, draft.id, '48211')

    assert result.outcome is ActivationOutcome.ALREADY_PROCESSED
    assert result.subscription.status == 'ACTIVE'


@pytest.mark.asyncio
async def test_unverified_redirect_does_not_activate(session_factory, db, parent, draft, pending_subscription, gateway, config):
    with pytest.raises(ConflictError):
        await ConfirmationReconciler(db, gateway, config).confirm_redirect(parent.id, draft.id, '99999')

    assert _reload(session_factory, pending_subscription.tx_ref).status == 'PENDING'


@pytest.mark.asyncio
@pytest.mark.parametrize(
    'tx_ref,amount,currency',
    [
        ('sub-someone-else', 20000, 'RWF'),
        (None, 100, 'RWF'),
        (None, 20000, 'USD'),
    ],
)
async def test_redirect_rejects_mismatched_verification(
    session_factory, db, parent, draft, pending_subscription, gateway, config, tx_ref, amount, currency
):
    gateway.approve('48211', tx_ref or pending_subscription.tx_ref, amount=amount, currency=currency)

    with pytest.raises(ConflictError):
        await ConfirmationReconciler(db, gateway, config).confirm_redirect(parent.id, draft.id, '48211')

    assert _reload(session_factory, pending_subscription.tx_ref).status == 'PENDING'


@pytest.mark.asyncio
async def test_redirect_for_unknown_draft_raises_not_found(db, parent, gateway, config):
    with pytest.raises(NotFoundError):
        await ConfirmationReconciler(db, gateway, config).confirm_redirect(parent.id, 'student-missing', '48211')


@pytest.mark.asyncio
async def test_redirect_requires_transaction_id(db, parent, draft, gateway, config):
    with pytest.raises(ValidationError):
        await ConfirmationReconciler(db, gateway, config).confirm_redirect(parent.id, draft.id, '')


def test_manual_confirm_activates_with_synthetic_reference(db, pending_subscription, config):
    result = ConfirmationReconciler(db, config=config).manual_confirm(pending_subscription.tx_ref)

    assert result.outcome is ActivationOutcome.ACTIVATED
    assert result.subscription.external_id.startswith('manual-')


def test_manual_confirm_after_push_keeps_provider_reference(db, pending_subscription, config):
    reconciler = ConfirmationReconciler(db, config=config)
    reconciler.handle_push(WEBHOOK_HASH, _charge(pending_subscription.tx_ref))

    result = reconciler.manual_confirm(pending_subscription.tx_ref)

    assert result.outcome is ActivationOutcome.ALREADY_PROCESSED
    assert result.subscription.external_id == '48211'


def test_declined_push_closes_pending_order(session_factory, db, pending_subscription, config):
    result = ConfirmationReconciler(db, config=config).handle_push(
        WEBHOOK_HASH, _charge(pending_subscription.tx_ref, status='failed')
    )

    assert result.outcome is PushOutcome.FAILED
    stored = _reload(session_factory, pending_subscription.tx_ref)
    assert stored.status == 'FAILED'
    assert stored.payment_status == 'FAILED'
    assert stored.is_active is False
    assert stored.external_id == '48211'


def test_declined_push_after_activation_changes_nothing(session_factory, db, pending_subscription, config):
    reconciler = ConfirmationReconciler(db, config=config)
    reconciler.handle_push(WEBHOOK_HASH, _charge(pending_subscription.tx_ref))

    result = reconciler.handle_push(WEBHOOK_HASH, _charge(pending_subscription.tx_ref, status='failed', transaction_id=1))

    assert result.outcome is PushOutcome.ALREADY_PROCESSED
    stored = _reload(session_factory, pending_subscription.tx_ref)
    assert stored.status == 'ACTIVE'
    assert stored.external_id == '48211'


@pytest.mark.parametrize('status', ['successful', 'failed'])
def test_push_for_unknown_reference_is_acknowledged(db, config, status):
    result = ConfirmationReconciler(db, config=config).handle_push(
        WEBHOOK_HASH, _charge('sub-does-not-exist', status=status)
    )

    assert result.outcome is PushOutcome.IGNORED
    assert result.tx_ref == 'sub-does-not-exist'
    assert db.query(Subscription).count() == 0


@pytest.mark.asyncio
async def test_declined_redirect_closes_pending_order(session_factory, db, parent, draft, pending_subscription, gateway, config):
    gateway.verifications['5150'] = VerificationResult(
        success=False,
        provider_status='failed',
        amount=20000,
        currency='RWF',
        tx_ref=pending_subscription.tx_ref,
        transaction_id='5150',
    )

    with pytest.raises(ConflictError) as excinfo:
        await ConfirmationReconciler(db, gateway, config).confirm_redirect(parent.id, draft.id, '5150')

    assert 'declined' in excinfo.value.message
    stored = _reload(session_factory, pending_subscription.tx_ref)
    assert stored.status == 'FAILED'
    assert stored.payment_status == 'FAILED'


def test_manual_confirm_is_limited_to_own_orders(session_factory, db, pending_subscription, config):
    with pytest.raises(NotFoundError):
        ConfirmationReconciler(db, config=config).manual_confirm(pending_subscription.tx_ref, payer_id=uuid.uuid4())

    assert _reload(session_factory, pending_subscription.tx_ref).status == 'PENDING'


def test_manual_confirm_for_owner_activates(db, parent, pending_subscription, config):
    result = ConfirmationReconciler(db, config=config).manual_confirm(pending_subscription.tx_ref, payer_id=parent.id)

    assert result.outcome is ActivationOutcome.ACTIVATED
