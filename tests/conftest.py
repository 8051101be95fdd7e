import pytest
from datetime import timedelta
from unittest.mock import Mock, patch

from faker import Faker
from flask_jwt_extended import create_access_token

from storefront import create_app
from storefront.extensions import db
from storefront.models import Account, ExtraStoreCredit, Store, Subscription
from storefront.utils.timeutils import utcnow

# Initialize Faker for generating test data
fake = Faker()

AUTOMATION_SECRET = "test-automation-secret"


# Custom pytest marks for organizing tests
def pytest_configure(config):
    config.addinivalue_line(
        "markers",
        "db: mark test as database-intensive"
    )
    config.addinivalue_line(
        "markers",
        "payment: mark test as payment-related"
    )
    config.addinivalue_line(
        "markers",
        "automation: mark test as automation-scheduling-related"
    )
    config.addinivalue_line(
        "markers",
        "concurrency: mark test as exercising competing writers"
    )


@pytest.fixture()
def app():
    """Application with a fresh in-memory database per test"""
    app = create_app("testing")

    with app.app_context():
        db.create_all()

        yield app

        db.session.remove()
        db.drop_all()


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def now():
    return utcnow().replace(microsecond=0)


@pytest.fixture()
def account_factory(app):
    def make(email=None):
        account = Account(email=email or fake.unique.email())
        db.session.add(account)
        db.session.commit()
        return account

    return make


@pytest.fixture()
def account(account_factory):
    return account_factory()


@pytest.fixture()
def subscription_factory(app):
    def make(account, plan="standard", status="active", store=None, period_end="default",
             stripe_subscription_id=None, updated_at=None):
        if period_end == "default":
            period_end = utcnow() + timedelta(days=30)
        subscription = Subscription(
            account_id=account.id,
            store_id=store.id if store is not None else None,
            plan=plan,
            status=status,
            current_period_end=period_end,
            stripe_subscription_id=stripe_subscription_id or f"sub_{fake.uuid4()[:14]}",
        )
        if updated_at is not None:
            subscription.updated_at = updated_at
        db.session.add(subscription)
        db.session.commit()
        return subscription

    return make


@pytest.fixture()
def store_factory(app):
    def make(account, slot_number=None, **overrides):
        if slot_number is None:
            slot_number = Store.query.filter_by(account_id=account.id).count() + 1
        fields = {
            "store_name": fake.company()[:60],
            "category": fake.random_element(["Fashion", "Home", "Electronics", "Beauty"]),
            "phone": fake.msisdn(),
            "currency": "USD",
            "price_cents": 2990,
        }
        fields.update(overrides)
        store = Store(account_id=account.id, slot_number=slot_number, **fields)
        db.session.add(store)
        db.session.commit()
        return store

    return make


@pytest.fixture()
def provisioned_store_factory(store_factory):
    """Store on a cadence whose first run became due at ``provisioned_at``"""
    def make(account, interval_hours=8, provisioned_at=None, state="waiting", **overrides):
        provisioned_at = provisioned_at or utcnow() - timedelta(minutes=1)
        return store_factory(
            account,
            automation_interval_hours=interval_hours,
            automation_provisioned_at=provisioned_at,
            next_automation_at=provisioned_at,
            automation_state=state,
            **overrides,
        )

    return make


@pytest.fixture()
def credit_factory(app):
    def make(account, plan="standard", status="paid", store=None):
        credit = ExtraStoreCredit(
            account_id=account.id,
            plan=plan,
            status=status,
            stripe_session_id=f"cs_test_{fake.uuid4()[:18]}",
            store_id=store.id if store is not None else None,
        )
        db.session.add(credit)
        db.session.commit()
        return credit

    return make


@pytest.fixture()
def auth_headers(app):
    def make(account):
        token = create_access_token(identity=account.id)
        return {"Authorization": f"Bearer {token}"}

    return make


@pytest.fixture()
def cron_headers():
    return {"Authorization": f"Bearer {AUTOMATION_SECRET}"}


@pytest.fixture()
def mock_checkout_session():
    """Patch Stripe checkout session creation"""
    session = Mock(id="cs_test_123", url="https://checkout.stripe.test/c/pay/cs_test_123")
    with patch("stripe.checkout.Session.create", return_value=session) as create:
        yield create


@pytest.fixture()
def reload(app):
    """Fresh copy of a row after a request wrote it through another session"""
    def fetch(instance):
        db.session.expire_all()
        return db.session.get(type(instance), instance.id)

    return fetch
