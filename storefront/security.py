# storefront/security.py
import hmac
import logging
from functools import wraps

from flask import current_app, request

from storefront.errors import Unauthorized

logger = logging.getLogger(__name__)

CRON_SECRET_HEADER = "X-Cron-Secret"


def _presented_secret():
    auth = request.headers.get("Authorization", "")
    if auth.lower().startswith("bearer "):
        return auth[7:].strip()
    return request.headers.get(CRON_SECRET_HEADER, "").strip()


def shared_secret_required(f):
    """Guard machine-to-machine endpoints (cron, executor callbacks) with the automation secret."""

    @wraps(f)
    def decorated(*args, **kwargs):
        expected = current_app.config.get("AUTOMATION_SHARED_SECRET") or ""
        presented = _presented_secret()
        if not expected or not presented or not hmac.compare_digest(
            presented.encode("utf-8"), expected.encode("utf-8")
        ):
            logger.warning(
                f"Rejected automation call to {request.path}",
                extra={"ip": request.remote_addr},
            )
            raise Unauthorized("Invalid or missing automation secret")
        return f(*args, **kwargs)

    return decorated
