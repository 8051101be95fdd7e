# plan_price.py
from storefront.extensions import db
from storefront.utils.timeutils import utcnow


class PlanPrice(db.Model):
    """Overridable price for a plan and billing interval."""

    __tablename__ = "plan_prices"

    id = db.Column(db.Integer, primary_key=True)
    plan = db.Column(db.String(50), nullable=False)
    interval = db.Column(db.String(10), nullable=False)  # month, year
    amount_cents = db.Column(db.Integer, nullable=False)
    currency = db.Column(db.String(3), nullable=False, default="usd")
    active = db.Column(db.Boolean, nullable=False, default=True)
    stripe_price_id = db.Column(db.String(255), nullable=True)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        db.UniqueConstraint("plan", "interval", name="uq_plan_price_interval"),
        db.CheckConstraint("interval IN ('month', 'year')", name="valid_price_interval"),
        db.CheckConstraint("amount_cents >= 0", name="non_negative_price"),
    )

    def __repr__(self):
        return f"<PlanPrice {self.plan}/{self.interval} {self.amount_cents}>"
