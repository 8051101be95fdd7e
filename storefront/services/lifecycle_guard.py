from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select

from storefront.automation.states import IN_FLIGHT_STATES
from storefront.errors import DeletionBlocked
from storefront.extensions import db
from storefront.models import Store, Subscription
from storefront.utils.timeutils import utcnow

ACTIVE_SUBSCRIPTION = "active_subscription"
AUTOMATION_RUNNING = "automation_running"


@dataclass(frozen=True)
class DeletionDecision:
    can_delete: bool
    delete_blocked_reason: Optional[str] = None

    def to_dict(self):
        return {"canDelete": self.can_delete, "deleteBlockedReason": self.delete_blocked_reason}


class StoreLifecycleGuard:
    """
    Decides whether a store may be deleted.

    A live store-scoped subscription wins over in-flight automation when both
    apply. Account-level subscriptions never pin an individual store.
    """

    def __init__(self, session=None, clock=utcnow):
        self.session = session if session is not None else db.session
        self.clock = clock

    def has_active_store_subscription(self, store_id: str) -> bool:
        now = self.clock()
        subscriptions = self.session.execute(
            select(Subscription).where(Subscription.store_id == store_id)
        ).scalars()
        return any(s.is_active(now) for s in subscriptions)

    def evaluate(self, store: Store, store_subscription_active: bool = None) -> DeletionDecision:
        if store_subscription_active is None:
            store_subscription_active = self.has_active_store_subscription(store.id)
        if store_subscription_active:
            return DeletionDecision(False, ACTIVE_SUBSCRIPTION)
        if store.automation_state in IN_FLIGHT_STATES:
            return DeletionDecision(False, AUTOMATION_RUNNING)
        return DeletionDecision(True)

    def assert_deletable(self, store: Store) -> DeletionDecision:
        decision = self.evaluate(store)
        if not decision.can_delete:
            raise DeletionBlocked(decision.delete_blocked_reason)
        return decision
