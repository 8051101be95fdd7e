# store.py
import uuid

from sqlalchemy import CheckConstraint, Index

from storefront.extensions import db
from storefront.utils.timeutils import isoformat, utcnow


class Store(db.Model):
    __tablename__ = "stores"

    id = db.Column(db.String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    account_id = db.Column(
        db.String(36), db.ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, index=True
    )

    store_name = db.Column(db.String(120), nullable=False)
    category = db.Column(db.String(120), nullable=False)
    phone = db.Column(db.String(40), nullable=False)
    currency = db.Column(db.String(3), nullable=False, default="USD")
    price_cents = db.Column(db.Integer, nullable=False, default=2990)
    status = db.Column(db.String(20), nullable=False, default="pending")  # pending, active
    order_count = db.Column(db.Integer, nullable=False, default=0)

    # Position within the account's capacity; unique per account
    slot_number = db.Column(db.Integer, nullable=False)

    # Automation profile
    automation_interval_hours = db.Column(db.Integer, nullable=True)
    automation_provisioned_at = db.Column(db.DateTime, nullable=True)
    automation_last_run_at = db.Column(db.DateTime, nullable=True)
    last_successful_automation_at = db.Column(db.DateTime, nullable=True)
    next_automation_at = db.Column(db.DateTime, nullable=True, index=True)
    automation_state = db.Column(db.String(20), nullable=False, default="waiting", index=True)
    automation_attempts = db.Column(db.Integer, nullable=False, default=0)
    automation_next_retry_at = db.Column(db.DateTime, nullable=True)
    automation_claim_token = db.Column(db.String(36), nullable=True)
    automation_claimed_at = db.Column(db.DateTime, nullable=True)
    automation_last_error = db.Column(db.Text, nullable=True)

    pending_deletion_at = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        db.UniqueConstraint("account_id", "slot_number", name="uq_store_account_slot"),
        CheckConstraint("slot_number >= 1", name="positive_slot_number"),
        CheckConstraint("currency IN ('USD', 'TRY')", name="valid_store_currency"),
        CheckConstraint(
            "automation_state IN ('waiting', 'due', 'processing', 'retrying', 'error')",
            name="valid_automation_state",
        ),
        Index("idx_store_automation_due", "automation_state", "next_automation_at"),
    )

    @property
    def is_provisioned(self):
        return bool(self.automation_interval_hours) and self.next_automation_at is not None

    def to_dict(self):
        return {
            "id": self.id,
            "storeName": self.store_name,
            "category": self.category,
            "phone": self.phone,
            "currency": self.currency,
            "priceCents": self.price_cents,
            "status": self.status,
            "orderCount": self.order_count,
            "slotNumber": self.slot_number,
            "automationIntervalHours": self.automation_interval_hours,
            "automationLastRunAt": isoformat(self.automation_last_run_at),
            "lastSuccessfulAutomationAt": isoformat(self.last_successful_automation_at),
            "nextAutomationAt": isoformat(self.next_automation_at),
            "automationState": self.automation_state,
            "createdAt": isoformat(self.created_at),
        }

    def __repr__(self):
        return f"<Store {self.id} {self.store_name!r}>"
