"""
Plan catalog.

Plans are immutable value objects keyed by id. Prices may be overridden by a
pricing source (the ``plan_prices`` table by default); capacity and cadence
are fixed per plan. A failing pricing source never breaks a lookup: the
fixed defaults are served and the failure is logged.
"""

import logging
import threading
import time
from dataclasses import dataclass, replace
from typing import Callable, Dict, List, Optional, Tuple

from flask import current_app, has_app_context
from sqlalchemy import select

from storefront.errors import UnknownPlan
from storefront.extensions import db

logger = logging.getLogger(__name__)

YEARLY_DISCOUNT_PERCENT = 25

PLAN_RANK = {
    "standard": 1,
    "pro": 2,
    "turbo": 3,
}

PLAN_ALIASES = {
    "starter": "standard",
}

BILLING_INTERVALS = ("month", "year")

PriceOverrides = Dict[Tuple[str, str], int]


def yearly_price(monthly_price_cents: int, discount_percent: int = YEARLY_DISCOUNT_PERCENT) -> int:
    return int(round(monthly_price_cents * 12 * (100 - discount_percent) / 100))


@dataclass(frozen=True)
class Plan:
    id: str
    included_store_limit: int
    monthly_price_cents: int
    yearly_price_cents: int
    yearly_discount_percent: int
    extra_store_price_cents: int
    automation_interval_hours: int

    @property
    def rank(self) -> int:
        return PLAN_RANK[self.id]

    def price_for(self, interval: str) -> int:
        return self.yearly_price_cents if interval == "year" else self.monthly_price_cents

    def to_dict(self):
        return {
            "plan": self.id,
            "includedStores": self.included_store_limit,
            "monthlyPriceCents": self.monthly_price_cents,
            "yearlyPriceCents": self.yearly_price_cents,
            "yearlyDiscountPercent": self.yearly_discount_percent,
            "extraStorePriceCents": self.extra_store_price_cents,
            "automationIntervalHours": self.automation_interval_hours,
        }


def _default_plan(plan_id, stores, monthly, extra_store, interval_hours) -> Plan:
    return Plan(
        id=plan_id,
        included_store_limit=stores,
        monthly_price_cents=monthly,
        yearly_price_cents=yearly_price(monthly),
        yearly_discount_percent=YEARLY_DISCOUNT_PERCENT,
        extra_store_price_cents=extra_store,
        automation_interval_hours=interval_hours,
    )


DEFAULT_PLANS: Dict[str, Plan] = {
    "standard": _default_plan("standard", 4, 2990, 2000, 8),
    "pro": _default_plan("pro", 6, 4990, 2000, 4),
    "turbo": _default_plan("turbo", 8, 7990, 1000, 2),
}


def normalize_plan(value, default: Optional[str] = None) -> Optional[str]:
    """Canonical plan id for a user or provider supplied value, or ``default``."""
    if not isinstance(value, str):
        return default
    key = value.strip().lower()
    key = PLAN_ALIASES.get(key, key)
    return key if key in DEFAULT_PLANS else default


def plan_rank(plan_id) -> int:
    return PLAN_RANK.get(normalize_plan(plan_id), 0)


def plan_price_table_source() -> PriceOverrides:
    """
    Active rows of the ``plan_prices`` table.

    The read runs in a savepoint of the caller's session. Lookups happen in
    the middle of store creation and webhook handling, so a failing read must
    roll back to the savepoint only, never the caller's pending work.
    """
    from storefront.models import PlanPrice

    with db.session.begin_nested():
        rows = db.session.execute(
            select(PlanPrice.plan, PlanPrice.interval, PlanPrice.amount_cents).where(PlanPrice.active.is_(True))
        ).all()
    return {(row.plan, row.interval): row.amount_cents for row in rows}


class PlanCatalog:
    def __init__(
        self,
        pricing_source: Optional[Callable[[], PriceOverrides]] = plan_price_table_source,
        ttl_seconds: int = 300,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._pricing_source = pricing_source
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._overrides: Optional[PriceOverrides] = None
        self._expires_at = 0.0

    def invalidate(self):
        with self._lock:
            self._overrides = None
            self._expires_at = 0.0

    def _price_overrides(self) -> PriceOverrides:
        if self._pricing_source is None:
            return {}

        with self._lock:
            if self._overrides is not None and self._clock() < self._expires_at:
                return self._overrides

        try:
            overrides = self._pricing_source() or {}
        except Exception as e:
            logger.warning(
                f"Plan pricing source failed, serving default prices: {e}",
                extra={"error_type": type(e).__name__},
            )
            return {}

        with self._lock:
            self._overrides = overrides
            self._expires_at = self._clock() + self._ttl_seconds
        return overrides

    def lookup(self, plan_id) -> Plan:
        canonical = normalize_plan(plan_id)
        if canonical is None:
            raise UnknownPlan(plan_id)

        plan = DEFAULT_PLANS[canonical]
        overrides = self._price_overrides()
        monthly = overrides.get((canonical, "month"))
        yearly = overrides.get((canonical, "year"))
        if monthly is None and yearly is None:
            return plan

        monthly = plan.monthly_price_cents if monthly is None else int(monthly)
        if yearly is None:
            yearly = yearly_price(monthly, plan.yearly_discount_percent)
        return replace(plan, monthly_price_cents=monthly, yearly_price_cents=int(yearly))

    def plans(self) -> List[Plan]:
        return [self.lookup(plan_id) for plan_id in sorted(PLAN_RANK, key=PLAN_RANK.get)]

    def upgrade_options(self, plan_id) -> List[Plan]:
        """Plans with more included stores than ``plan_id``, smallest first."""
        current = self.lookup(plan_id)
        larger = [p for p in self.plans() if p.included_store_limit > current.included_store_limit]
        return sorted(larger, key=lambda p: p.included_store_limit)

    @staticmethod
    def normalize(value, default: Optional[str] = None) -> Optional[str]:
        return normalize_plan(value, default)

    @staticmethod
    def rank(plan_id) -> int:
        return plan_rank(plan_id)


def stripe_price_id_for(plan_id, interval: str) -> Optional[str]:
    """Provider price id configured for a plan, when prices are managed in Stripe."""
    from storefront.models import PlanPrice

    row = PlanPrice.query.filter_by(plan=normalize_plan(plan_id), interval=interval, active=True).first()
    return row.stripe_price_id if row is not None else None


def get_plan_catalog() -> PlanCatalog:
    """The catalog bound to the current app, created on first use."""
    if not has_app_context():
        return PlanCatalog(pricing_source=None)

    catalog = current_app.extensions.get("plan_catalog")
    if catalog is None:
        catalog = PlanCatalog(ttl_seconds=current_app.config.get("PLAN_CATALOG_TTL_SECONDS", 300))
        current_app.extensions["plan_catalog"] = catalog
    return catalog


def set_plan_price(plan_id, interval: str, amount_cents: int, stripe_price_id: str = None):
    """Upsert a price override and drop the cached overrides."""
    from storefront.models import PlanPrice

    canonical = normalize_plan(plan_id)
    if canonical is None:
        raise UnknownPlan(plan_id)
    if interval not in BILLING_INTERVALS:
        raise ValueError(f"interval must be one of {BILLING_INTERVALS}, got {interval!r}")
    if amount_cents < 0:
        raise ValueError("amount_cents must not be negative")

    row = PlanPrice.query.filter_by(plan=canonical, interval=interval).first()
    if row is None:
        row = PlanPrice(plan=canonical, interval=interval)
        db.session.add(row)
    row.amount_cents = amount_cents
    row.active = True
    if stripe_price_id:
        row.stripe_price_id = stripe_price_id
    db.session.commit()

    get_plan_catalog().invalidate()
    logger.info(
        f"Plan price set: {canonical}/{interval} = {amount_cents}",
        extra={"plan": canonical, "interval": interval, "amount_cents": amount_cents},
    )
    return row
