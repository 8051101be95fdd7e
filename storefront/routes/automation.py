import logging

from flask import Blueprint, jsonify, request
from flask_jwt_extended import get_jwt_identity, jwt_required

from storefront.automation.scheduler import get_scheduler
from storefront.automation.sweep import sweep_due_stores
from storefront.errors import AutomationRetryExhausted, ValidationError
from storefront.extensions import limiter
from storefront.security import shared_secret_required
from storefront.services.store_service import StoreService

logger = logging.getLogger(__name__)

bp = Blueprint("automation", __name__, url_prefix="/api/automation")


@bp.route("/tick", methods=["POST"])
@limiter.exempt
@shared_secret_required
def tick():
    """Run one sweep; called by an external cron when beat is not used."""
    return jsonify({"summary": sweep_due_stores()}), 200


@bp.route("/stores/<store_id>/complete", methods=["POST"])
@limiter.exempt
@shared_secret_required
def complete(store_id):
    """Executor callback reporting the outcome of a claimed run"""
    payload = request.get_json(silent=True) or {}
    claim_token = payload.get("claimToken")
    success = payload.get("success")
    recoverable = payload.get("recoverable", True)
    error = payload.get("error")

    if not isinstance(claim_token, str) or not claim_token:
        raise ValidationError("claimToken is required", payload={"field": "claimToken"})
    if not isinstance(success, bool):
        raise ValidationError("success must be a boolean", payload={"field": "success"})
    if not isinstance(recoverable, bool):
        raise ValidationError("recoverable must be a boolean", payload={"field": "recoverable"})
    if error is not None and not isinstance(error, str):
        error = str(error)

    scheduler = get_scheduler()
    if success:
        store = scheduler.record_success(store_id, claim_token=claim_token)
    else:
        try:
            store = scheduler.record_failure(
                store_id, recoverable=recoverable, claim_token=claim_token, error=error
            )
        except AutomationRetryExhausted as e:
            body = e.to_dict()
            body["automation"] = scheduler.describe(scheduler.get_store(store_id))
            return jsonify(body), 200

    return jsonify({"automation": scheduler.describe(store)}), 200


@bp.route("/stores/<store_id>/reset", methods=["POST"])
@limiter.exempt
@shared_secret_required
def reset(store_id):
    """Operator reset of a store parked in the error state"""
    scheduler = get_scheduler()
    store = scheduler.reset(store_id)
    return jsonify({"automation": scheduler.describe(store)}), 200


@bp.route("/stores/<store_id>/state", methods=["GET"])
@jwt_required()
def state(store_id):
    store = StoreService().get_owned_store(get_jwt_identity(), store_id)
    return jsonify({"automation": get_scheduler().describe(store)}), 200
