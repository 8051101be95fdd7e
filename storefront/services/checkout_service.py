import logging

from flask import current_app

from storefront.billing.checkout import PaymentCheckout, SubscriptionCheckout
from storefront.billing.payment_provider import get_payment_provider
from storefront.billing.plan_catalog import get_plan_catalog, stripe_price_id_for
from storefront.errors import AccountNotFound, LimitNotReached, SubscriptionRequired
from storefront.extensions import db
from storefront.models import Account
from storefront.observability.metrics import QUOTA_DENIALS
from storefront.services.quota_resolver import QuotaResolver
from storefront.services.store_service import StoreService

logger = logging.getLogger(__name__)

PURPOSE_SUBSCRIPTION = "subscription"
PURPOSE_STORE_PAYMENT = "store_payment"
PURPOSE_STORE_CAPACITY = "store_capacity_topup"


def extra_store_shop_id(plan_id: str) -> str:
    return f"extra_store_credit:{plan_id}"


class CheckoutService:
    """Turns validated checkout intents into hosted checkout sessions."""

    @staticmethod
    def _account(account_id) -> Account:
        account = db.session.get(Account, account_id)
        if account is None:
            raise AccountNotFound()
        return account

    @staticmethod
    def _urls(kind: str):
        base = current_app.config.get("FRONTEND_URL", "http://localhost:3000")
        return (
            f"{base}/billing/success?checkout={kind}&session_id={{CHECKOUT_SESSION_ID}}",
            f"{base}/billing/cancel?checkout={kind}",
        )

    @staticmethod
    def start_checkout(account_id: str, intent) -> str:
        account = CheckoutService._account(account_id)
        provider = get_payment_provider()

        if isinstance(intent, SubscriptionCheckout):
            if intent.store_id:
                StoreService().get_owned_store(account_id, intent.store_id)
            plan = get_plan_catalog().lookup(intent.plan)
            metadata = {
                "purpose": PURPOSE_SUBSCRIPTION,
                "accountId": account.id,
                "plan": plan.id,
                "interval": intent.interval,
            }
            if intent.store_id:
                metadata["storeId"] = intent.store_id
            line_item = provider.line_item(
                f"{plan.id.title()} plan",
                plan.price_for(intent.interval),
                interval=intent.interval,
                price_id=stripe_price_id_for(plan.id, intent.interval),
            )
            mode = "subscription"
        elif isinstance(intent, PaymentCheckout):
            StoreService().get_owned_store(account_id, intent.store_id)
            metadata = {
                "purpose": PURPOSE_STORE_PAYMENT,
                "accountId": account.id,
                "storeId": intent.store_id,
            }
            if intent.order_id:
                metadata["orderId"] = intent.order_id
            if intent.plan:
                metadata["plan"] = intent.plan
            line_item = provider.line_item("Store payment", intent.amount_cents)
            mode = "payment"
        else:
            raise TypeError(f"Unsupported checkout intent: {type(intent).__name__}")

        success_url, cancel_url = CheckoutService._urls(metadata["purpose"])
        logger.info(
            f"Starting {mode} checkout for account {account.id}",
            extra={"account_id": account.id, "purpose": metadata["purpose"]},
        )
        return provider.create_checkout_session(
            mode=mode,
            line_items=[line_item],
            metadata=metadata,
            success_url=success_url,
            cancel_url=cancel_url,
            customer_email=account.email,
            client_reference_id=account.id,
        )

    @staticmethod
    def start_store_capacity_checkout(account_id: str) -> str:
        """One extra store slot, sold only to subscribed accounts that are at their limit."""
        account = CheckoutService._account(account_id)
        quota = QuotaResolver().resolve(account_id)

        if not quota.has_active_subscription:
            QUOTA_DENIALS.labels(reason="capacity_subscription_required").inc()
            raise SubscriptionRequired(quota)
        if quota.remaining_slots > 0:
            QUOTA_DENIALS.labels(reason="capacity_limit_not_reached").inc()
            raise LimitNotReached(quota)

        provider = get_payment_provider()
        metadata = {
            "purpose": PURPOSE_STORE_CAPACITY,
            "accountId": account.id,
            "plan": quota.plan,
            "shopId": extra_store_shop_id(quota.plan),
        }
        success_url, cancel_url = CheckoutService._urls(PURPOSE_STORE_CAPACITY)
        logger.info(
            f"Starting extra store checkout for account {account.id}",
            extra={"account_id": account.id, "plan": quota.plan, "amount_cents": quota.extra_store_price_cents},
        )
        return provider.create_checkout_session(
            mode="payment",
            line_items=[provider.line_item("Extra store slot", quota.extra_store_price_cents)],
            metadata=metadata,
            success_url=success_url,
            cancel_url=cancel_url,
            customer_email=account.email,
            client_reference_id=account.id,
        )
