"""
Domain error taxonomy.

Every error carries a machine-readable ``code`` so that clients can branch on
it, and an HTTP status used by the error handlers when the error escapes a
request.
"""

from typing import Any, Dict, Optional


class DomainError(Exception):
    code = "DOMAIN_ERROR"
    status_code = 400

    def __init__(self, message: str = None, *, payload: Optional[Dict[str, Any]] = None):
        self.message = message or self.__class__.__doc__ or self.code
        self.payload = payload or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            **self.payload,
        }


class ValidationError(DomainError):
    """The request payload is invalid."""
    code = "VALIDATION_ERROR"
    status_code = 400


class Unauthorized(DomainError):
    """Authentication is required and has failed or has not been provided."""
    code = "UNAUTHORIZED"
    status_code = 401


class AccountNotFound(DomainError):
    """Account not found."""
    code = "ACCOUNT_NOT_FOUND"
    status_code = 404


class StoreNotFound(DomainError):
    """Store not found."""
    code = "STORE_NOT_FOUND"
    status_code = 404


class UnknownPlan(DomainError):
    """Unknown subscription plan."""
    code = "UNKNOWN_PLAN"
    status_code = 500

    def __init__(self, plan_id):
        self.plan_id = plan_id
        super().__init__(f"Unknown plan: {plan_id!r}")


class QuotaExceeded(DomainError):
    """Store limit reached for the current plan."""
    code = "QUOTA_EXCEEDED"
    status_code = 409

    def __init__(self, quota, message: str = None):
        self.quota = quota
        super().__init__(
            message or "Store limit reached. Upgrade your plan or purchase an extra store slot.",
            payload={"quota": quota.to_dict()},
        )


class SubscriptionRequired(DomainError):
    """An active subscription is required."""
    code = "SUBSCRIPTION_REQUIRED"
    status_code = 409

    def __init__(self, quota=None, message: str = None):
        self.quota = quota
        super().__init__(
            message or "An active subscription is required.",
            payload={"quota": quota.to_dict()} if quota is not None else None,
        )


class LimitNotReached(DomainError):
    """Extra store slots can only be purchased once the store limit is reached."""
    code = "LIMIT_NOT_REACHED"
    status_code = 409

    def __init__(self, quota):
        self.quota = quota
        super().__init__(payload={"quota": quota.to_dict()})


class ClaimConflict(DomainError):
    """The store is not claimable in its current automation state."""
    code = "CLAIM_CONFLICT"
    status_code = 409

    def __init__(self, store_id, state=None, message: str = None):
        self.store_id = store_id
        self.state = state
        super().__init__(
            message or f"Store {store_id} could not be claimed (state: {state})",
            payload={"storeId": store_id, "automationState": state},
        )


class AutomationRetryExhausted(DomainError):
    """Automation retry budget exhausted; the store is now in the error state."""
    code = "AUTOMATION_RETRY_EXHAUSTED"
    status_code = 409

    def __init__(self, store_id, attempts: int, last_error: str = None):
        self.store_id = store_id
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"Automation for store {store_id} failed after {attempts} attempt(s)",
            payload={
                "storeId": store_id,
                "attempts": attempts,
                "automationState": "error",
                "lastError": last_error,
            },
        )


class DeletionBlocked(DomainError):
    """The store cannot be deleted right now."""
    code = "DELETION_BLOCKED"
    status_code = 409

    MESSAGES = {
        "active_subscription": "Store cannot be deleted while there is an active subscription.",
        "automation_running": "Store cannot be deleted while automation is running.",
    }

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(
            self.MESSAGES.get(reason, "Store cannot be deleted."),
            payload={"deleteBlockedReason": reason},
        )


class PaymentProviderError(DomainError):
    """The payment provider could not complete the request."""
    code = "PAYMENT_PROVIDER_ERROR"
    status_code = 502
