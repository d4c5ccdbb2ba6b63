import importlib.util
import os
import sys
import uuid
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from pathlib import Path
from types import ModuleType

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import DateTime, create_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

# Create a test engine BEFORE any harbor_billing imports
_test_engine = create_engine(
    "sqlite+pysqlite:///:memory:",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)


class TestBase(DeclarativeBase):
    pass


_TestSessionLocal = sessionmaker(bind=_test_engine, autoflush=False, autocommit=False)


class TimestampMixin:
    """Mixin that adds created_at / updated_at columns to any model."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )


mock_db_module = ModuleType("harbor_billing.db")
mock_db_module.Base = TestBase
mock_db_module.TimestampMixin = TimestampMixin
mock_db_module.SessionLocal = _TestSessionLocal
mock_db_module.get_engine = lambda: _test_engine


def _load_real_config() -> ModuleType:
    path = Path(__file__).resolve().parents[1] / "harbor_billing" / "config.py"
    spec = importlib.util.spec_from_file_location("harbor_billing_real_config", path)
    module = importlib.util.module_from_spec(spec)  # type: ignore[arg-type]
    spec.loader.exec_module(module)  # type: ignore[union-attr]
    return module


real_config = _load_real_config()

# Mock harbor_billing.config to prevent .env driven settings
mock_config_module = ModuleType("harbor_billing.config")


class MockSettings:
    database_url = "sqlite+pysqlite:///:memory:"
    redis_url = "redis://localhost:6379/0"
    secret_key = "test-secret-key"
    db_pool_size = 5
    db_max_overflow = 10
    db_pool_timeout = 30
    db_pool_recycle = 1800
    payment_processor = "stripe"
    processor_timeout_seconds = 5.0
    processor_fee_percent = "2.9"
    processor_fee_fixed = "0.30"
    billing_currency = "USD"
    stripe_secret_key = "sk_test_123"
    stripe_webhook_secret = "whsec_test"
    stripe_api_base = "https://api.stripe.test/v1"
    stripe_webhook_tolerance_seconds = 300
    paypal_client_id = "paypal-client"
    paypal_client_secret = "paypal-secret"
    paypal_environment = "sandbox"
    paypal_webhook_id = "WH-TEST"
    dunning_max_attempts = 3
    dunning_retry_delays_days = "1,3,7"
    dunning_grace_period_days = 7
    sweep_interval_seconds = 300
    renewal_job_token = "job-token-test"
    cors_origins = ""


mock_config_module.settings = MockSettings()
mock_config_module.Settings = MockSettings
mock_config_module.validate_settings = lambda s: []
mock_config_module.parse_retry_delays = real_config.parse_retry_delays

sys.modules["harbor_billing.config"] = mock_config_module
sys.modules["harbor_billing.db"] = mock_db_module

os.environ["JWT_SECRET"] = "test-secret"
os.environ["JWT_ALGORITHM"] = "HS256"

from harbor_billing.models.billing import (  # noqa: E402
    BillingAccount,
    BillingAccountStatus,
    BillingCycle,
    ProcessorType,
    Transaction,
    TransactionStatus,
    TransactionType,
)
from harbor_billing.models.user import User, UserType  # noqa: E402
from harbor_billing.services.store import BillingStore  # noqa: E402
from tests.mocks import FakeProcessor  # noqa: E402

TestBase.metadata.create_all(_test_engine)

Base = TestBase


@pytest.fixture(scope="session")
def engine():
    return _test_engine


@pytest.fixture()
def db_session(engine):
    """Create a database session for testing.

    Tables are emptied afterwards so sweeps only see the current test's rows.
    """
    Session = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    session = Session()
    try:
        yield session
    finally:
        session.rollback()
        for table in reversed(TestBase.metadata.sorted_tables):
            session.execute(table.delete())
        session.commit()
        session.close()


def _unique_email() -> str:
    return f"test-{uuid.uuid4().hex}@example.com"


@pytest.fixture()
def store(db_session):
    return BillingStore(db_session)


@pytest.fixture()
def processor():
    return FakeProcessor()


@pytest.fixture()
def user(db_session):
    user = User(email=_unique_email(), name="Test Boater", user_type=UserType.individual)
    db_session.add(user)
    db_session.commit()
    db_session.refresh(user)
    return user


@pytest.fixture()
def dealer(db_session):
    user = User(email=_unique_email(), name="Test Marina", user_type=UserType.dealer)
    db_session.add(user)
    db_session.commit()
    db_session.refresh(user)
    return user


@pytest.fixture()
def billing_account(db_session, user):
    """A billing account with a payment method and no subscription yet."""
    account = BillingAccount(
        user_id=user.id,
        customer_id=f"cus_{uuid.uuid4().hex[:8]}",
        payment_method_id="pm_card_visa",
        processor_type=ProcessorType.stripe,
        status=BillingAccountStatus.incomplete,
        amount=Decimal("0.00"),
        currency="USD",
        payment_history=[],
        metadata_={},
    )
    db_session.add(account)
    db_session.commit()
    db_session.refresh(account)
    return account


@pytest.fixture()
def make_subscribed_account(db_session):
    """Factory for an account already on a premium plan."""

    def _make(
        user: User,
        *,
        plan: str = "premium_individual",
        cycle: BillingCycle = BillingCycle.monthly,
        amount: str = "29.99",
        status: BillingAccountStatus = BillingAccountStatus.active,
        next_billing_date: datetime | None = None,
    ) -> BillingAccount:
        account = BillingAccount(
            user_id=user.id,
            customer_id=f"cus_{uuid.uuid4().hex[:8]}",
            payment_method_id="pm_card_visa",
            processor_type=ProcessorType.stripe,
            plan=plan,
            billing_cycle=cycle,
            amount=Decimal(amount),
            currency="USD",
            status=status,
            subscription_id=f"sub_{uuid.uuid4().hex[:8]}",
            next_billing_date=next_billing_date or datetime.now(UTC) + timedelta(days=15),
            payment_history=[],
            metadata_={},
        )
        user.premium_active = True
        user.premium_plan = plan
        user.premium_expires_at = account.next_billing_date
        db_session.add(account)
        db_session.commit()
        db_session.refresh(account)
        return account

    return _make


@pytest.fixture()
def subscribed_account(user, make_subscribed_account):
    return make_subscribed_account(user)


@pytest.fixture()
def completed_charge(db_session, subscribed_account):
    txn = Transaction(
        transaction_id=f"txn_{uuid.uuid4().hex[:24]}",
        type=TransactionType.payment,
        amount=Decimal("29.99"),
        currency="USD",
        status=TransactionStatus.completed,
        user_id=subscribed_account.user_id,
        billing_account_id=subscribed_account.id,
        processor_transaction_id=f"pi_{uuid.uuid4().hex[:12]}",
        fees=Decimal("1.17"),
        net_amount=Decimal("28.82"),
        description="premium_individual monthly",
        metadata_={},
        completed_at=datetime.now(UTC),
    )
    db_session.add(txn)
    db_session.commit()
    db_session.refresh(txn)
    return txn


# ============ FastAPI Test Client Fixtures ============


@pytest.fixture()
def client(db_session, processor):
    """Create a test client with database and processor overrides."""
    from harbor_billing.api.deps import get_db, get_processor_factory, get_sweep_processors
    from harbor_billing.main import app

    def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_processor_factory] = lambda: lambda name=None: processor
    app.dependency_overrides[get_sweep_processors] = lambda: [processor]

    with TestClient(app, raise_server_exceptions=False) as test_client:
        yield test_client

    app.dependency_overrides.clear()


def _create_access_token(user_id: str, roles: list[str] = None, typ: str = "access") -> str:
    """Create a JWT access token for testing."""
    secret = os.getenv("JWT_SECRET", "test-secret")
    algorithm = os.getenv("JWT_ALGORITHM", "HS256")
    now = datetime.now(UTC)
    expire = now + timedelta(minutes=15)
    payload = {
        "sub": user_id,
        "roles": roles or [],
        "typ": typ,
        "exp": int(expire.timestamp()),
        "iat": int(now.timestamp()),
    }
    return jwt.encode(payload, secret, algorithm=algorithm)


@pytest.fixture()
def auth_headers(user):
    return {"Authorization": f"Bearer {_create_access_token(str(user.id))}"}


@pytest.fixture()
def admin_headers():
    token = _create_access_token(str(uuid.uuid4()), roles=["admin"])
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture()
def job_headers():
    return {"Authorization": f"Bearer {MockSettings.renewal_job_token}"}
