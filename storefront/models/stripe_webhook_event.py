# stripe_webhook_event.py
from storefront.extensions import db
from storefront.utils.timeutils import utcnow


class StripeWebhookEvent(db.Model):
    __tablename__ = "stripe_webhook_events"

    id = db.Column(db.Integer, primary_key=True)
    event_id = db.Column(db.String(255), unique=True, nullable=False)
    event_type = db.Column(db.String(100), nullable=False)
    processed_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    @classmethod
    def already_processed(cls, event_id):
        return db.session.query(cls.id).filter_by(event_id=event_id).first() is not None
