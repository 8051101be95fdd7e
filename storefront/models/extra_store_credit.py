# extra_store_credit.py
import uuid

from sqlalchemy import CheckConstraint

from storefront.extensions import db
from storefront.utils.timeutils import isoformat, utcnow


class ExtraStoreCredit(db.Model):
    """One purchased store slot above the plan's included limit."""

    __tablename__ = "extra_store_credits"

    STATUS_PAID = "paid"
    STATUS_REFUNDED = "refunded"

    id = db.Column(db.String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    account_id = db.Column(
        db.String(36), db.ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    plan = db.Column(db.String(50), nullable=False)
    stripe_session_id = db.Column(db.String(255), unique=True, nullable=True)
    amount_cents = db.Column(db.Integer, nullable=True)
    status = db.Column(db.String(20), nullable=False, default=STATUS_PAID, index=True)
    store_id = db.Column(
        db.String(36), db.ForeignKey("stores.id", ondelete="SET NULL"), nullable=True, index=True
    )

    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("status IN ('paid', 'refunded')", name="valid_credit_status"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "plan": self.plan,
            "status": self.status,
            "storeId": self.store_id,
            "createdAt": isoformat(self.created_at),
        }
