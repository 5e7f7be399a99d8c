import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

os.environ.setdefault('APP_ENV', 'test')
os.environ.setdefault('DATABASE_URL', 'sqlite:///:memory:')
os.environ.setdefault('SECRET_KEY', 'test-secret-key')
os.environ.setdefault('FLW_SECRET_KEY', 'FLWSECK_TEST-secret')
os.environ.setdefault('FLUTTERWAVE_HASH', 'test-webhook-hash')
os.environ.setdefault('EXPIRY_SWEEP_ENABLED', 'false')

from datetime import timedelta
from typing import Dict, List, Optional

import pytest
from sqlalchemy.orm import sessionmaker

from enrollment.config import Settings
from enrollment.core.exceptions import ExternalServiceError
from enrollment.database import build_engine, init_db
from enrollment.models import Parent, PaymentStatus, Subscription, SubscriptionStatus, utcnow
from enrollment.schemas.gateway import HostedOrder, VerificationResult
from enrollment.schemas.registration import DraftCreate
from enrollment.services.draft_store import DraftStore

WEBHOOK_HASH = 'test-webhook-hash'


class FakeGateway:
    """In-memory stand-in for the hosted checkout provider."""

    def __init__(self):
        self.orders: List[dict] = []
        self.verifications: Dict[str, VerificationResult] = {}
        self.fail_create: Optional[Exception] = None
        self.fail_verify: Optional[Exception] = None

    async def create_order(self, amount, currency, tx_ref, customer, payment_options, redirect_url):
        if self.fail_create is not None:
            raise self.fail_create
        self.orders.append(
            {
                'amount': amount,
                'currency': currency,
                'tx_ref': tx_ref,
                'customer': customer,
                'payment_options': payment_options,
                'redirect_url': redirect_url,
            }
        )
        return HostedOrder(checkout_url=f'https://checkout.flutterwave.test/pay/{tx_ref}', provider_order_id=None)

    async def verify(self, transaction_id):
        if self.fail_verify is not None:
            raise self.fail_verify
        return self.verifications.get(
            transaction_id,
            VerificationResult(success=False, provider_status='not_found', transaction_id=transaction_id),
        )

    def approve(self, transaction_id, tx_ref, amount=20000, currency='RWF'):
        self.verifications[transaction_id] = VerificationResult(
            success=True,
            provider_status='successful',
            amount=amount,
            currency=currency,
            tx_ref=tx_ref,
            transaction_id=transaction_id,
        )


class FakeNotifier:
    def __init__(self, fail: bool = False):
        self.sent: List[tuple] = []
        self.fail = fail

    async def send_expired_subscription_email(self, recipient, name):
        if self.fail:
            raise ExternalServiceError('mail relay down')
        self.sent.append((recipient, name))
        return {'status': 'sent', 'to': recipient}


@pytest.fixture
def config():
    return Settings(
        app_env='test',
        database_url='sqlite:///:memory:',
        flutterwave_hash=WEBHOOK_HASH,
        flw_secret_key='FLWSECK_TEST-secret',
        subscription_period_days=30,
        payment_redirect_url='https://parents.example.test/payment-success/{draft_id}',
        manual_confirmation_enabled=True,
    )


@pytest.fixture
def engine(tmp_path):
    engine = build_engine(f'sqlite:///{tmp_path / "enrollment.db"}')
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def failing_notifier():
    return FakeNotifier(fail=True)


@pytest.fixture
def parent(db):
    parent = Parent(
        email='aline.uwase@example.rw',
        first_name='Aline',
        last_name='Uwase',
        phone_number='0788123456',
    )
    db.add(parent)
    db.commit()
    return parent


@pytest.fixture
def draft(db, parent):
    return DraftStore(db).create(
        parent.id,
        DraftCreate(first_name='Keza', last_name='Uwase', age=10, grade='P5', password='s3cret-pass'),
    )


def make_subscription(db, parent, draft, status=SubscriptionStatus.PENDING, end_delta=timedelta(days=30), **extra):
    now = utcnow()
    active = status == SubscriptionStatus.ACTIVE
    values = dict(
        payer_id=parent.id,
        draft_id=draft.id,
        tx_ref=extra.pop('tx_ref', f'sub-{draft.id}'),
        status=status.value,
        payment_status=PaymentStatus.COMPLETED.value if active else PaymentStatus.PENDING.value,
        payment_method='card',
        amount=20000,
        currency='RWF',
        start_date=now,
        end_date=now + end_delta,
        is_active=active,
    )
    values.update(extra)
    subscription = Subscription(**values)
    db.add(subscription)
    db.commit()
    return subscription


@pytest.fixture
def subscription_factory(db, parent, draft):
    def factory(status=SubscriptionStatus.PENDING, **extra):
        return make_subscription(db, parent, draft, status=status, **extra)

    return factory


@pytest.fixture
def pending_subscription(subscription_factory):
    return subscription_factory()
