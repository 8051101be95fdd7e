import pytest
from unittest.mock import Mock

from storefront.billing.plan_catalog import (
    DEFAULT_PLANS,
    PlanCatalog,
    get_plan_catalog,
    normalize_plan,
    set_plan_price,
    yearly_price,
)
from storefront.errors import UnknownPlan
from storefront.extensions import db
from storefront.models import PlanPrice, Store


class FakeClock:
    def __init__(self, start=1000.0):
        self.value = start

    def __call__(self):
        return self.value

    def advance(self, seconds):
        self.value += seconds


def test_default_plan_table():
    catalog = PlanCatalog(pricing_source=None)

    standard = catalog.lookup("standard")
    assert standard.included_store_limit == 4
    assert standard.monthly_price_cents == 2990
    assert standard.extra_store_price_cents == 2000
    assert standard.automation_interval_hours == 8

    pro = catalog.lookup("pro")
    assert (pro.included_store_limit, pro.monthly_price_cents, pro.extra_store_price_cents) == (6, 4990, 2000)
    assert pro.automation_interval_hours == 4

    turbo = catalog.lookup("turbo")
    assert (turbo.included_store_limit, turbo.monthly_price_cents, turbo.extra_store_price_cents) == (8, 7990, 1000)
    assert turbo.automation_interval_hours == 2


@pytest.mark.parametrize("plan_id, monthly, expected_yearly", [
    ("standard", 2990, 26910),
    ("pro", 4990, 44910),
    ("turbo", 7990, 71910),
])
def test_yearly_price_applies_25_percent_discount(plan_id, monthly, expected_yearly):
    plan = PlanCatalog(pricing_source=None).lookup(plan_id)

    assert plan.yearly_discount_percent == 25
    assert plan.yearly_price_cents == expected_yearly == yearly_price(monthly)


def test_lookup_unknown_plan_raises():
    with pytest.raises(UnknownPlan) as exc:
        PlanCatalog(pricing_source=None).lookup("enterprise")
    assert exc.value.code == "UNKNOWN_PLAN"


@pytest.mark.parametrize("value, expected", [
    ("starter", "standard"),
    ("Starter", "standard"),
    (" PRO ", "pro"),
    ("turbo", "turbo"),
    ("gold", None),
    (None, None),
    (42, None),
])
def test_normalize_plan(value, expected):
    assert normalize_plan(value) == expected


def test_lookup_accepts_alias():
    assert PlanCatalog(pricing_source=None).lookup("starter").id == "standard"


def test_plans_listed_in_rank_order():
    ids = [plan.id for plan in PlanCatalog(pricing_source=None).plans()]
    assert ids == ["standard", "pro", "turbo"]


def test_upgrade_options_are_strictly_larger_plans():
    catalog = PlanCatalog(pricing_source=None)

    assert [p.id for p in catalog.upgrade_options("standard")] == ["pro", "turbo"]
    assert [p.id for p in catalog.upgrade_options("pro")] == ["turbo"]
    assert catalog.upgrade_options("turbo") == []


def test_monthly_override_rederives_yearly_price():
    catalog = PlanCatalog(pricing_source=lambda: {("pro", "month"): 5990})

    pro = catalog.lookup("pro")
    assert pro.monthly_price_cents == 5990
    assert pro.yearly_price_cents == yearly_price(5990)
    assert pro.included_store_limit == DEFAULT_PLANS["pro"].included_store_limit


def test_yearly_override_is_used_verbatim():
    catalog = PlanCatalog(pricing_source=lambda: {("turbo", "year"): 70000})

    turbo = catalog.lookup("turbo")
    assert turbo.monthly_price_cents == 7990
    assert turbo.yearly_price_cents == 70000


def test_failing_pricing_source_serves_defaults(caplog):
    source = Mock(side_effect=RuntimeError("pricing backend down"))
    catalog = PlanCatalog(pricing_source=source)

    plan = catalog.lookup("standard")

    assert plan == DEFAULT_PLANS["standard"]
    assert "pricing source failed" in caplog.text


@pytest.mark.db
def test_unreadable_price_table_leaves_pending_work_alone(app, account):
    PlanPrice.__table__.drop(db.engine)
    store = Store(
        account_id=account.id,
        store_name="Pending",
        category="Home",
        phone="+15551234567",
        slot_number=1,
    )
    db.session.add(store)
    db.session.flush()
    store_id = store.id

    plan = PlanCatalog().lookup("pro")
    db.session.commit()

    assert plan == DEFAULT_PLANS["pro"]
    db.session.expire_all()
    assert db.session.get(Store, store_id) is not None


def test_overrides_are_cached_until_ttl_expires():
    clock = FakeClock()
    source = Mock(return_value={("standard", "month"): 3490})
    catalog = PlanCatalog(pricing_source=source, ttl_seconds=60, clock=clock)

    catalog.lookup("standard")
    catalog.lookup("pro")
    assert source.call_count == 1

    clock.advance(61)
    catalog.lookup("standard")
    assert source.call_count == 2


def test_invalidate_forces_reload():
    source = Mock(return_value={})
    catalog = PlanCatalog(pricing_source=source, ttl_seconds=600)

    catalog.lookup("standard")
    catalog.invalidate()
    catalog.lookup("standard")

    assert source.call_count == 2


@pytest.mark.db
def test_set_plan_price_overrides_table_and_invalidates_cache(app):
    catalog = get_plan_catalog()
    assert catalog.lookup("pro").monthly_price_cents == 4990

    set_plan_price("pro", "month", 5490)

    assert get_plan_catalog() is catalog
    assert catalog.lookup("pro").monthly_price_cents == 5490
    assert catalog.lookup("pro").yearly_price_cents == yearly_price(5490)


@pytest.mark.db
def test_set_plan_price_rejects_unknown_plan_and_interval(app):
    with pytest.raises(UnknownPlan):
        set_plan_price("platinum", "month", 100)
    with pytest.raises(ValueError):
        set_plan_price("pro", "week", 100)


def test_plans_endpoint_is_public(client):
    response = client.get("/api/billing/plans")

    assert response.status_code == 200
    plans = response.get_json()["plans"]
    assert [p["plan"] for p in plans] == ["standard", "pro", "turbo"]
    assert plans[0] == {
        "plan": "standard",
        "includedStores": 4,
        "monthlyPriceCents": 2990,
        "yearlyPriceCents": 26910,
        "yearlyDiscountPercent": 25,
        "extraStorePriceCents": 2000,
        "automationIntervalHours": 8,
    }
