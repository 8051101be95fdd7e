# subscription.py
import uuid

from sqlalchemy import CheckConstraint, Index

from storefront.extensions import db
from storefront.utils.timeutils import as_naive_utc, isoformat, utcnow

ACTIVE_SUBSCRIPTION_STATUSES = ("active", "trialing")


class Subscription(db.Model):
    __tablename__ = "subscriptions"

    id = db.Column(db.String(36), primary_key=True, default=lambda: str(uuid.uuid4()))

    account_id = db.Column(
        db.String(36), db.ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    # Set for store-scoped subscriptions; account-level subscriptions leave it empty
    store_id = db.Column(
        db.String(36), db.ForeignKey("stores.id", ondelete="SET NULL"), nullable=True, index=True
    )

    plan = db.Column(db.String(50), nullable=False, default="standard")
    interval = db.Column(db.String(20), nullable=True)  # month, year
    status = db.Column(db.String(50), nullable=False, default="incomplete", index=True)
    current_period_end = db.Column(db.DateTime, nullable=True)

    stripe_subscription_id = db.Column(db.String(255), unique=True, nullable=True, index=True)
    stripe_customer_id = db.Column(db.String(255), nullable=True, index=True)

    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "status IN ('active', 'trialing', 'past_due', 'canceled', 'incomplete', "
            "'incomplete_expired', 'unpaid', 'paused')",
            name="valid_subscription_status",
        ),
        Index("idx_subscription_account_status", "account_id", "status"),
    )

    def is_active(self, now=None):
        """Active iff the status grants access and the paid period has not run out."""
        if self.status not in ACTIVE_SUBSCRIPTION_STATUSES:
            return False
        if self.current_period_end is None:
            return True
        return as_naive_utc(self.current_period_end) > (now or utcnow())

    def to_dict(self):
        return {
            "id": self.id,
            "accountId": self.account_id,
            "storeId": self.store_id,
            "plan": self.plan,
            "interval": self.interval,
            "status": self.status,
            "isActive": self.is_active(),
            "currentPeriodEnd": isoformat(self.current_period_end),
            "updatedAt": isoformat(self.updated_at),
        }

    @classmethod
    def find_by_stripe_id(cls, stripe_subscription_id):
        return cls.query.filter_by(stripe_subscription_id=stripe_subscription_id).first()

    def __repr__(self):
        return f"<Subscription {self.id} {self.plan}/{self.status}>"
