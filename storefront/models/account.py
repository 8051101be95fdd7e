# account.py
import uuid

from storefront.extensions import db
from storefront.utils.timeutils import isoformat, utcnow


class Account(db.Model):
    """Tenant owning stores and subscriptions. Credentials live with the identity provider."""

    __tablename__ = "accounts"

    id = db.Column(db.String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    email = db.Column(db.String(255), unique=True, nullable=False, index=True)
    stripe_customer_id = db.Column(db.String(255), nullable=True, index=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    stores = db.relationship("Store", backref="account", lazy="dynamic")
    subscriptions = db.relationship("Subscription", backref="account", lazy="dynamic")

    def to_dict(self):
        return {
            "id": self.id,
            "email": self.email,
            "createdAt": isoformat(self.created_at),
        }

    def __repr__(self):
        return f"<Account {self.email}>"
