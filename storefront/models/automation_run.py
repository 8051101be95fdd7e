# automation_run.py
import uuid

from storefront.extensions import db
from storefront.utils.timeutils import isoformat, utcnow


class AutomationRun(db.Model):
    """One claimed automation attempt for a store."""

    __tablename__ = "automation_runs"

    STATUS_PROCESSING = "processing"
    STATUS_SUCCESS = "success"
    STATUS_FAILED = "failed"

    id = db.Column(db.String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    store_id = db.Column(
        db.String(36), db.ForeignKey("stores.id", ondelete="CASCADE"), nullable=False, index=True
    )
    claim_token = db.Column(db.String(36), unique=True, nullable=False)
    attempt = db.Column(db.Integer, nullable=False, default=1)
    status = db.Column(db.String(20), nullable=False, default=STATUS_PROCESSING, index=True)
    error_message = db.Column(db.Text, nullable=True)
    started_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    finished_at = db.Column(db.DateTime, nullable=True)

    def to_dict(self):
        return {
            "id": self.id,
            "storeId": self.store_id,
            "attempt": self.attempt,
            "status": self.status,
            "errorMessage": self.error_message,
            "startedAt": isoformat(self.started_at),
            "finishedAt": isoformat(self.finished_at),
        }
