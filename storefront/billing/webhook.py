"""
Stripe webhook processing.

Events are applied at most once: the event id is recorded in the same
transaction as the state change it caused, and a replay of an id that is
already recorded is acknowledged without touching anything.
"""

import logging
from typing import Any, Dict, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from storefront.billing.plan_catalog import normalize_plan
from storefront.extensions import db
from storefront.models import Account, ExtraStoreCredit, Store, StripeWebhookEvent, Subscription
from storefront.services.checkout_service import (
    PURPOSE_STORE_CAPACITY,
    PURPOSE_STORE_PAYMENT,
    PURPOSE_SUBSCRIPTION,
)
from storefront.services.quota_resolver import DEFAULT_PLAN
from storefront.services.store_service import StoreService
from storefront.utils.timeutils import from_timestamp, utcnow

logger = logging.getLogger(__name__)


def _metadata(obj: Dict[str, Any]) -> Dict[str, Any]:
    return obj.get("metadata") or {}


def _period_end(obj: Dict[str, Any]):
    if obj.get("current_period_end"):
        return from_timestamp(obj["current_period_end"])
    # Newer API versions report the period on the subscription items
    items = (obj.get("items") or {}).get("data") or []
    ends = [item.get("current_period_end") for item in items if item.get("current_period_end")]
    return from_timestamp(max(ends)) if ends else None


class StripeWebhookHandler:
    def __init__(self, session=None):
        self.session = session if session is not None else db.session

    def handle(self, event: Dict[str, Any]) -> Dict[str, Any]:
        event_id = event.get("id")
        event_type = event.get("type", "")
        if not event_id:
            logger.warning("Stripe webhook without event id ignored")
            return {"received": True, "ignored": True}

        if StripeWebhookEvent.already_processed(event_id):
            logger.info(f"Duplicate Stripe event {event_id} ignored", extra={"event_id": event_id})
            return {"received": True, "duplicate": True}

        obj = (event.get("data") or {}).get("object") or {}
        handler = {
            "checkout.session.completed": self._checkout_completed,
            "customer.subscription.created": self._subscription_changed,
            "customer.subscription.updated": self._subscription_changed,
            "customer.subscription.deleted": self._subscription_changed,
        }.get(event_type)

        try:
            if handler is not None:
                handler(obj)
            self.session.add(StripeWebhookEvent(event_id=event_id, event_type=event_type))
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            if StripeWebhookEvent.already_processed(event_id):
                logger.info(f"Concurrent delivery of Stripe event {event_id}", extra={"event_id": event_id})
                return {"received": True, "duplicate": True}
            raise
        except SQLAlchemyError:
            self.session.rollback()
            raise

        logger.info(
            f"Stripe event {event_type} processed",
            extra={"event_id": event_id, "event_type": event_type, "handled": handler is not None},
        )
        return {"received": True}

    # ------------------------------------------------------------------
    # checkout.session.completed
    # ------------------------------------------------------------------
    def _checkout_completed(self, session_obj: Dict[str, Any]):
        metadata = _metadata(session_obj)
        purpose = metadata.get("purpose")
        account_id = metadata.get("accountId") or session_obj.get("client_reference_id")

        if not account_id or self.session.get(Account, account_id) is None:
            logger.warning(
                "Checkout completed for unknown account",
                extra={"session_id": session_obj.get("id"), "purpose": purpose},
            )
            return

        if purpose == PURPOSE_STORE_CAPACITY:
            self._grant_extra_store(account_id, session_obj, metadata)
        elif purpose == PURPOSE_SUBSCRIPTION:
            self._subscription_from_checkout(account_id, session_obj, metadata)
        elif purpose == PURPOSE_STORE_PAYMENT:
            self._store_paid(account_id, session_obj, metadata)
        else:
            logger.info(f"Checkout completed with unhandled purpose {purpose!r}")

    def _grant_extra_store(self, account_id, session_obj, metadata):
        if session_obj.get("payment_status") != "paid":
            logger.info(
                "Extra store checkout completed without payment",
                extra={"session_id": session_obj.get("id"), "account_id": account_id},
            )
            return

        session_id = session_obj.get("id")
        existing = self.session.execute(
            select(ExtraStoreCredit).where(ExtraStoreCredit.stripe_session_id == session_id)
        ).scalar_one_or_none()
        if existing is not None:
            return

        credit = ExtraStoreCredit(
            account_id=account_id,
            plan=normalize_plan(metadata.get("plan"), DEFAULT_PLAN),
            stripe_session_id=session_id,
            amount_cents=session_obj.get("amount_total"),
            status=ExtraStoreCredit.STATUS_PAID,
        )
        self.session.add(credit)
        logger.info(
            f"Extra store credit granted to account {account_id}",
            extra={"account_id": account_id, "session_id": session_id, "plan": credit.plan},
        )

    def _subscription_from_checkout(self, account_id, session_obj, metadata):
        stripe_subscription_id = session_obj.get("subscription")
        if not stripe_subscription_id:
            return
        subscription = self._upsert_subscription(
            stripe_subscription_id,
            account_id=account_id,
            store_id=metadata.get("storeId"),
            plan=metadata.get("plan"),
            interval=metadata.get("interval"),
            status="active",
            customer_id=session_obj.get("customer"),
        )
        self._after_status_change(subscription)

    def _store_paid(self, account_id, session_obj, metadata):
        store_id = metadata.get("storeId")
        store = self.session.get(Store, store_id) if store_id else None
        if store is None or store.account_id != account_id:
            logger.warning("Store payment for unknown store", extra={"store_id": store_id})
            return
        if session_obj.get("payment_status") == "paid" and store.status != "active":
            store.status = "active"
            logger.info(f"Store {store_id} activated by payment", extra={"store_id": store_id})

    # ------------------------------------------------------------------
    # customer.subscription.*
    # ------------------------------------------------------------------
    def _subscription_changed(self, sub_obj: Dict[str, Any]):
        metadata = _metadata(sub_obj)
        existing = Subscription.find_by_stripe_id(sub_obj.get("id"))
        account_id = metadata.get("accountId") or (existing.account_id if existing else None)
        if not account_id or self.session.get(Account, account_id) is None:
            logger.warning(
                "Subscription event for unknown account ignored",
                extra={"stripe_subscription_id": sub_obj.get("id")},
            )
            return

        subscription = self._upsert_subscription(
            sub_obj.get("id"),
            account_id=account_id,
            store_id=metadata.get("storeId"),
            plan=metadata.get("plan"),
            interval=metadata.get("interval"),
            status=sub_obj.get("status"),
            customer_id=sub_obj.get("customer"),
            period_end=_period_end(sub_obj),
        )
        self._after_status_change(subscription)

    def _upsert_subscription(self, stripe_subscription_id, *, account_id, store_id, plan, interval,
                             status, customer_id, period_end=None) -> Subscription:
        subscription = Subscription.find_by_stripe_id(stripe_subscription_id)
        if subscription is None:
            subscription = Subscription(
                stripe_subscription_id=stripe_subscription_id,
                account_id=account_id,
                store_id=store_id,
            )
            self.session.add(subscription)
        elif store_id and not subscription.store_id:
            subscription.store_id = store_id

        if subscription.store_id:
            store = self.session.get(Store, subscription.store_id)
            if store is None or store.account_id != account_id:
                subscription.store_id = None

        subscription.plan = normalize_plan(plan, subscription.plan or DEFAULT_PLAN)
        subscription.interval = interval or subscription.interval
        if status:
            subscription.status = status
        subscription.stripe_customer_id = customer_id or subscription.stripe_customer_id
        if period_end is not None:
            subscription.current_period_end = period_end
        subscription.updated_at = utcnow()
        self.session.flush()

        logger.info(
            f"Subscription {subscription.id} is {subscription.status}",
            extra={
                "account_id": account_id,
                "subscription_id": subscription.id,
                "store_id": subscription.store_id,
                "plan": subscription.plan,
                "status": subscription.status,
            },
        )
        return subscription

    def _after_status_change(self, subscription: Subscription):
        if not subscription.is_active():
            return
        if subscription.store_id is None:
            self._cancel_superseded(subscription)
        touched = StoreService(session=self.session).provision_automation(subscription)
        logger.info(
            f"Automation provisioned for {touched} store(s)",
            extra={"subscription_id": subscription.id, "stores": touched},
        )

    def _cancel_superseded(self, current: Subscription) -> Optional[int]:
        """Keep at most one active account-level subscription per account."""
        others = self.session.execute(
            select(Subscription).where(
                Subscription.account_id == current.account_id,
                Subscription.store_id.is_(None),
                Subscription.id != current.id,
            )
        ).scalars().all()
        cancelled = 0
        for other in others:
            if other.is_active():
                other.status = "canceled"
                other.updated_at = utcnow()
                cancelled += 1
        if cancelled:
            logger.info(
                f"Cancelled {cancelled} superseded subscription(s)",
                extra={"account_id": current.account_id, "subscription_id": current.id},
            )
        return cancelled
