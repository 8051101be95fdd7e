from .account import Account
from .subscription import Subscription, ACTIVE_SUBSCRIPTION_STATUSES
from .store import Store
from .extra_store_credit import ExtraStoreCredit
from .plan_price import PlanPrice
from .automation_run import AutomationRun
from .stripe_webhook_event import StripeWebhookEvent

__all__ = [
    "Account",
    "Subscription",
    "ACTIVE_SUBSCRIPTION_STATUSES",
    "Store",
    "ExtraStoreCredit",
    "PlanPrice",
    "AutomationRun",
    "StripeWebhookEvent",
]
