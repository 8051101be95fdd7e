import logging

from flask import Blueprint, current_app, jsonify, request
from flask_jwt_extended import get_jwt_identity, jwt_required

from storefront.billing.checkout import parse_checkout_intent
from storefront.billing.payment_provider import get_payment_provider
from storefront.billing.plan_catalog import get_plan_catalog
from storefront.billing.webhook import StripeWebhookHandler
from storefront.extensions import limiter
from storefront.services.checkout_service import CheckoutService

logger = logging.getLogger(__name__)

bp = Blueprint("billing", __name__, url_prefix="/api/billing")


def _checkout_limit():
    return current_app.config.get("CHECKOUT_RATE_LIMIT", "30 per minute")


@bp.route("/plans", methods=["GET"])
def list_plans():
    """Public plan catalog"""
    return jsonify({"plans": [plan.to_dict() for plan in get_plan_catalog().plans()]}), 200


@bp.route("/checkout", methods=["POST"])
@jwt_required()
@limiter.limit(_checkout_limit)
def checkout():
    intent = parse_checkout_intent(request.get_json(silent=True))
    url = CheckoutService.start_checkout(get_jwt_identity(), intent)
    return jsonify({"url": url}), 200


@bp.route("/store-capacity-checkout", methods=["POST"])
@jwt_required()
@limiter.limit(_checkout_limit)
def store_capacity_checkout():
    url = CheckoutService.start_store_capacity_checkout(get_jwt_identity())
    return jsonify({"url": url}), 200


@bp.route("/webhook", methods=["POST"])
@limiter.exempt
def stripe_webhook():
    event = get_payment_provider().parse_webhook(
        request.get_data(),
        request.headers.get("Stripe-Signature"),
    )
    result = StripeWebhookHandler().handle(event)
    return jsonify(result), 200
