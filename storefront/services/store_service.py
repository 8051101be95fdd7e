"""
Store creation, deletion and the store overview.

Creation is resolve-then-act: the quota is resolved fresh, then the store is
inserted into the lowest free slot of the account's capacity. The unique
``(account_id, slot_number)`` constraint turns a lost race into an
IntegrityError, after which the whole decision is retried from a fresh
quota.

Deletion is check-then-act with a re-check: the guard decides, then a
conditional UPDATE fences off in-flight automation before the row goes.
"""

import logging
from typing import Optional

from flask import current_app, has_app_context
from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError

from storefront.automation.scheduler import AutomationScheduler, get_scheduler
from storefront.automation.states import IN_FLIGHT_STATES
from storefront.billing.plan_catalog import get_plan_catalog, normalize_plan
from storefront.errors import (
    DeletionBlocked,
    QuotaExceeded,
    StoreNotFound,
    SubscriptionRequired,
    ValidationError,
)
from storefront.extensions import db
from storefront.models import ACTIVE_SUBSCRIPTION_STATUSES, AutomationRun, ExtraStoreCredit, Store, Subscription
from storefront.observability.metrics import QUOTA_DENIALS
from storefront.services.lifecycle_guard import (
    ACTIVE_SUBSCRIPTION,
    AUTOMATION_RUNNING,
    StoreLifecycleGuard,
)
from storefront.services.quota_resolver import DEFAULT_PLAN, QuotaResolver, effective_subscription
from storefront.utils.timeutils import utcnow

logger = logging.getLogger(__name__)

SUPPORTED_CURRENCIES = ("USD", "TRY")
MAX_STORE_NAME_LENGTH = 120


class _SlotTaken(Exception):
    """Another request took the slot or the extra-store credit first."""


def _setting(name, default):
    if has_app_context():
        return current_app.config.get(name, default)
    return default


def subscription_status(primary: Optional[Subscription], active: Optional[Subscription]) -> Optional[str]:
    """Status shown for a store; a lapsed period reads ``expired`` whatever Stripe last said."""
    if primary is None:
        return None
    if active is None and primary.status in ACTIVE_SUBSCRIPTION_STATUSES:
        return "expired"
    return primary.status


def lowest_free_slot(used_slots, capacity: int) -> Optional[int]:
    used = set(used_slots)
    for slot in range(1, capacity + 1):
        if slot not in used:
            return slot
    return None


class StoreService:
    def __init__(self, session=None, resolver: QuotaResolver = None, guard: StoreLifecycleGuard = None,
                 scheduler: AutomationScheduler = None, clock=utcnow):
        self.session = session if session is not None else db.session
        self.resolver = resolver or QuotaResolver(session=self.session, clock=clock)
        self.guard = guard or StoreLifecycleGuard(session=self.session, clock=clock)
        self.scheduler = scheduler or get_scheduler(self.session)
        self.clock = clock

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------
    def _validated_fields(self, data: dict) -> dict:
        data = data or {}

        phone = data.get("phone")
        if not isinstance(phone, str) or not phone.strip():
            raise ValidationError("Phone number is required", payload={"field": "phone"})

        currency = data.get("currency") or "USD"
        if not isinstance(currency, str) or currency.strip().upper() not in SUPPORTED_CURRENCIES:
            raise ValidationError(
                f"currency must be one of {', '.join(SUPPORTED_CURRENCIES)}",
                payload={"field": "currency"},
            )

        price_cents = data.get("priceCents")
        if price_cents is None:
            price_cents = _setting("DEFAULT_STORE_PRICE_CENTS", 2990)
        elif isinstance(price_cents, bool) or not isinstance(price_cents, int) or price_cents < 0:
            raise ValidationError("priceCents must be a non-negative integer", payload={"field": "priceCents"})

        store_name = data.get("storeName")
        if store_name is not None and not isinstance(store_name, str):
            raise ValidationError("storeName must be a string", payload={"field": "storeName"})

        category = data.get("category")
        if category is not None and not isinstance(category, str):
            raise ValidationError("category must be a string", payload={"field": "category"})

        return {
            "phone": phone.strip(),
            "currency": currency.strip().upper(),
            "price_cents": price_cents,
            "store_name": (store_name or "").strip()[:MAX_STORE_NAME_LENGTH] or None,
            "category": (category or "").strip() or _setting("DEFAULT_STORE_CATEGORY", "General"),
        }

    def create_store(self, account_id: str, data: dict) -> Store:
        fields = self._validated_fields(data)
        max_retries = _setting("STORE_CREATE_MAX_RETRIES", 2)

        quota = None
        for attempt in range(max_retries + 1):
            quota = self.resolver.resolve(account_id)
            if not quota.has_active_subscription:
                QUOTA_DENIALS.labels(reason="subscription_required").inc()
                logger.info(
                    f"Store creation refused for account {account_id}: no active subscription",
                    extra={"account_id": account_id, "plan": quota.plan},
                )
                raise SubscriptionRequired(quota)
            if not quota.can_create_store:
                QUOTA_DENIALS.labels(reason="quota_exceeded").inc()
                logger.info(
                    f"Store creation refused for account {account_id}: limit reached",
                    extra={"account_id": account_id, "quota": quota.to_dict()},
                )
                raise QuotaExceeded(quota)

            try:
                store = self._insert_store(account_id, quota, fields)
            except (IntegrityError, _SlotTaken) as e:
                self.session.rollback()
                logger.warning(
                    f"Store creation raced for account {account_id}, retrying",
                    extra={"account_id": account_id, "attempt": attempt + 1, "error_type": type(e).__name__},
                )
                continue

            logger.info(
                f"Store {store.id} created for account {account_id}",
                extra={"account_id": account_id, "store_id": store.id, "slot_number": store.slot_number},
            )
            return store

        QUOTA_DENIALS.labels(reason="quota_exceeded").inc()
        raise QuotaExceeded(self.resolver.resolve(account_id))

    def _insert_store(self, account_id: str, quota, fields: dict) -> Store:
        used_slots = self.session.execute(
            select(Store.slot_number).where(Store.account_id == account_id)
        ).scalars().all()
        slot = lowest_free_slot(used_slots, quota.capacity)
        if slot is None:
            raise _SlotTaken()

        store_name = fields["store_name"] or (
            f"{_setting('DEFAULT_STORE_NAME_PREFIX', 'My Store')} {len(used_slots) + 1}"
        )
        store = Store(
            account_id=account_id,
            store_name=store_name,
            category=fields["category"],
            phone=fields["phone"],
            currency=fields["currency"],
            price_cents=fields["price_cents"],
            slot_number=slot,
        )
        self.session.add(store)
        self.session.flush()

        if slot > quota.included_store_limit:
            self._assign_extra_credit(account_id, store.id)

        account_subscription = self.active_account_subscription(account_id)
        if account_subscription is not None:
            plan = get_plan_catalog().lookup(normalize_plan(account_subscription.plan, DEFAULT_PLAN))
            self.scheduler.provision(store, plan)

        self.session.commit()
        return store

    def _assign_extra_credit(self, account_id: str, store_id: str):
        credit_id = self.session.execute(
            select(ExtraStoreCredit.id)
            .where(
                ExtraStoreCredit.account_id == account_id,
                ExtraStoreCredit.status == ExtraStoreCredit.STATUS_PAID,
                ExtraStoreCredit.store_id.is_(None),
            )
            .order_by(ExtraStoreCredit.created_at.asc())
            .limit(1)
        ).scalar_one_or_none()
        if credit_id is None:
            raise _SlotTaken()

        result = self.session.execute(
            update(ExtraStoreCredit)
            .where(ExtraStoreCredit.id == credit_id, ExtraStoreCredit.store_id.is_(None))
            .values(store_id=store_id, updated_at=self.clock())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise _SlotTaken()

    def active_account_subscription(self, account_id: str) -> Optional[Subscription]:
        subscriptions = self.session.execute(
            select(Subscription).where(
                Subscription.account_id == account_id,
                Subscription.store_id.is_(None),
            )
        ).scalars().all()
        return effective_subscription(subscriptions, self.clock())

    # ------------------------------------------------------------------
    # Deletion
    # ------------------------------------------------------------------
    def get_owned_store(self, account_id: str, store_id: str) -> Store:
        store = self.session.execute(
            select(Store).where(Store.id == store_id, Store.account_id == account_id)
        ).scalar_one_or_none()
        if store is None:
            raise StoreNotFound()
        return store

    def delete_store(self, account_id: str, store_id: str):
        store = self.get_owned_store(account_id, store_id)
        self.guard.assert_deletable(store)

        now = self.clock()
        fenced = self.session.execute(
            update(Store)
            .where(
                Store.id == store_id,
                Store.account_id == account_id,
                Store.automation_state.notin_(IN_FLIGHT_STATES),
                Store.pending_deletion_at.is_(None),
            )
            .values(pending_deletion_at=now)
            .execution_options(synchronize_session=False)
        )
        if fenced.rowcount != 1:
            self.session.rollback()
            self.get_owned_store(account_id, store_id)
            self._blocked(store_id, AUTOMATION_RUNNING)

        if self.guard.has_active_store_subscription(store_id):
            self.session.rollback()
            self._blocked(store_id, ACTIVE_SUBSCRIPTION)

        released = self.session.execute(
            update(ExtraStoreCredit)
            .where(ExtraStoreCredit.store_id == store_id)
            .values(store_id=None, updated_at=now)
            .execution_options(synchronize_session=False)
        ).rowcount
        self.session.execute(
            update(Subscription)
            .where(Subscription.store_id == store_id)
            .values(store_id=None)
            .execution_options(synchronize_session=False)
        )
        self.session.execute(
            delete(AutomationRun)
            .where(AutomationRun.store_id == store_id)
            .execution_options(synchronize_session=False)
        )
        self.session.delete(store)
        self.session.commit()

        logger.info(
            f"Store {store_id} deleted",
            extra={"account_id": account_id, "store_id": store_id, "released_credits": released},
        )

    def _blocked(self, store_id, reason):
        QUOTA_DENIALS.labels(reason=f"delete_{reason}").inc()
        logger.info(
            f"Deletion of store {store_id} blocked: {reason}",
            extra={"store_id": store_id, "reason": reason},
        )
        raise DeletionBlocked(reason)

    # ------------------------------------------------------------------
    # Overview
    # ------------------------------------------------------------------
    def overview(self, account_id: str) -> dict:
        quota = self.resolver.resolve(account_id)
        now = self.clock()

        stores = self.session.execute(
            select(Store).where(Store.account_id == account_id).order_by(Store.slot_number.asc())
        ).scalars().all()
        subscriptions = self.session.execute(
            select(Subscription)
            .where(Subscription.account_id == account_id)
            .order_by(Subscription.updated_at.desc())
        ).scalars().all()

        by_store = {}
        account_level = []
        for subscription in subscriptions:
            if subscription.store_id:
                by_store.setdefault(subscription.store_id, []).append(subscription)
            else:
                account_level.append(subscription)
        account_active = effective_subscription(account_level, now)

        rows = []
        for store in stores:
            # Subscription fields describe the store's own subscriptions only,
            # the same ones the deletion guard looks at.
            store_subscriptions = by_store.get(store.id, [])
            store_active = effective_subscription(store_subscriptions, now)
            primary = store_active or (store_subscriptions[0] if store_subscriptions else None)
            decision = self.guard.evaluate(store, store_subscription_active=store_active is not None)

            row = store.to_dict()
            row.update({
                "hasActiveSubscription": store_active is not None,
                "coveredByAccountPlan": account_active is not None,
                "plan": normalize_plan(primary.plan, quota.plan) if primary else quota.plan,
                "subscriptionStatus": subscription_status(primary, store_active),
                "canDelete": decision.can_delete,
                "deleteBlockedReason": decision.delete_blocked_reason,
                "countdownSeconds": self.scheduler.countdown_seconds(store, now),
            })
            row.pop("phone", None)
            rows.append(row)

        return {"stores": rows, "quota": quota.to_dict()}

    # ------------------------------------------------------------------
    # Provisioning
    # ------------------------------------------------------------------
    def provision_automation(self, subscription: Subscription) -> int:
        """
        Attach the subscription plan's cadence to the stores it covers.
        The caller owns the transaction. Returns the number of stores touched.
        """
        plan = get_plan_catalog().lookup(normalize_plan(subscription.plan, DEFAULT_PLAN))
        if subscription.store_id:
            store = self.session.get(Store, subscription.store_id)
            stores = [store] if store is not None else []
        else:
            stores = self.session.execute(
                select(Store).where(
                    Store.account_id == subscription.account_id,
                    Store.pending_deletion_at.is_(None),
                )
            ).scalars().all()

        for store in stores:
            self.scheduler.provision(store, plan)
        return len(stores)
