import logging
from dataclasses import dataclass, field
from typing import List, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

from storefront.billing.plan_catalog import PlanCatalog, get_plan_catalog, normalize_plan, plan_rank
from storefront.errors import AccountNotFound
from storefront.extensions import db
from storefront.models import Account, ExtraStoreCredit, Store, Subscription
from storefront.utils.timeutils import utcnow

logger = logging.getLogger(__name__)

DEFAULT_PLAN = "standard"


@dataclass(frozen=True)
class Quota:
    plan: str
    has_active_subscription: bool
    included_store_limit: int
    total_stores: int
    purchased_extra_stores: int
    used_extra_stores: int
    remaining_slots: int
    can_create_store: bool
    extra_store_price_cents: int
    upgrade_options: List[dict] = field(default_factory=list)
    subscription_id: Optional[str] = None

    @property
    def capacity(self) -> int:
        return self.included_store_limit + self.purchased_extra_stores

    def to_dict(self):
        return {
            "plan": self.plan,
            "hasActiveSubscription": self.has_active_subscription,
            "includedStoreLimit": self.included_store_limit,
            "totalStores": self.total_stores,
            "purchasedExtraStores": self.purchased_extra_stores,
            "usedExtraStores": self.used_extra_stores,
            "remainingSlots": self.remaining_slots,
            "canCreateStore": self.can_create_store,
            "extraStorePriceCents": self.extra_store_price_cents,
            "upgradeOptions": list(self.upgrade_options),
        }


def effective_subscription(subscriptions, now=None) -> Optional[Subscription]:
    """Highest-ranked active subscription, most recently updated first."""
    active = [s for s in subscriptions if s.is_active(now)]
    if not active:
        return None
    return max(active, key=lambda s: (plan_rank(s.plan), s.updated_at or s.created_at))


class QuotaResolver:
    """Read-only computation of an account's store capacity."""

    def __init__(self, session=None, catalog: PlanCatalog = None, clock=utcnow):
        self.session = session if session is not None else db.session
        self.catalog = catalog
        self.clock = clock

    def _catalog(self) -> PlanCatalog:
        return self.catalog or get_plan_catalog()

    def resolve(self, account_id: str) -> Quota:
        try:
            return self._resolve(account_id)
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(
                f"Quota resolution failed for account {account_id}, failing closed: {e}",
                extra={"account_id": account_id},
            )
            return self._fail_closed()

    def _resolve(self, account_id: str) -> Quota:
        if self.session.get(Account, account_id) is None:
            raise AccountNotFound()

        # Store-scoped subscriptions pin a single store; capacity and the
        # cadence of new stores come from the account-level plan only.
        subscriptions = self.session.execute(
            select(Subscription)
            .where(Subscription.account_id == account_id, Subscription.store_id.is_(None))
            .order_by(Subscription.updated_at.desc())
        ).scalars().all()

        current = effective_subscription(subscriptions, self.clock())
        if current is not None:
            plan_id = normalize_plan(current.plan, DEFAULT_PLAN)
        elif subscriptions:
            plan_id = normalize_plan(subscriptions[0].plan, DEFAULT_PLAN)
        else:
            plan_id = DEFAULT_PLAN

        total_stores = self.session.execute(
            select(func.count(Store.id)).where(Store.account_id == account_id)
        ).scalar_one()
        purchased = self.session.execute(
            select(func.count(ExtraStoreCredit.id)).where(
                ExtraStoreCredit.account_id == account_id,
                ExtraStoreCredit.status == ExtraStoreCredit.STATUS_PAID,
            )
        ).scalar_one()

        return self.build(
            plan_id,
            has_active_subscription=current is not None,
            total_stores=total_stores,
            purchased_extra_stores=purchased,
            subscription_id=current.id if current is not None else None,
        )

    def build(self, plan_id, has_active_subscription, total_stores, purchased_extra_stores,
              subscription_id=None) -> Quota:
        catalog = self._catalog()
        plan = catalog.lookup(plan_id)
        remaining = max(0, plan.included_store_limit + purchased_extra_stores - total_stores)
        return Quota(
            plan=plan.id,
            has_active_subscription=has_active_subscription,
            included_store_limit=plan.included_store_limit,
            total_stores=total_stores,
            purchased_extra_stores=purchased_extra_stores,
            used_extra_stores=max(0, total_stores - plan.included_store_limit),
            remaining_slots=remaining,
            can_create_store=has_active_subscription and remaining > 0,
            extra_store_price_cents=plan.extra_store_price_cents,
            upgrade_options=[
                {
                    "plan": option.id,
                    "includedStores": option.included_store_limit,
                    "monthlyPriceCents": option.monthly_price_cents,
                }
                for option in catalog.upgrade_options(plan.id)
            ],
            subscription_id=subscription_id,
        )

    def _fail_closed(self) -> Quota:
        plan = PlanCatalog(pricing_source=None).lookup(DEFAULT_PLAN)
        return Quota(
            plan=plan.id,
            has_active_subscription=False,
            included_store_limit=plan.included_store_limit,
            total_stores=0,
            purchased_extra_stores=0,
            used_extra_stores=0,
            remaining_slots=0,
            can_create_store=False,
            extra_store_price_cents=plan.extra_store_price_cents,
        )
