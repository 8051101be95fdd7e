import time

import redis
import stripe
from flask import Blueprint, current_app, jsonify
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from storefront.extensions import db, get_redis_client, limiter
from storefront.observability.metrics import metrics_response

bp = Blueprint("health", __name__)


def _check_database():
    start = time.time()
    try:
        db.session.execute(text("SELECT 1"))
        latency = round((time.time() - start) * 1000, 2)
        return {"status": "ok", "latency_ms": latency}
    except SQLAlchemyError as e:
        db.session.rollback()
        return {"status": "error", "error": str(e)}


def _check_redis():
    if current_app.config.get("TESTING"):
        return {"status": "skipped", "reason": "testing"}
    client = get_redis_client()
    if client is None:
        return {"status": "error", "error": "Redis unavailable"}

    start = time.time()
    try:
        client.ping()
        latency = round((time.time() - start) * 1000, 2)
        return {"status": "ok", "latency_ms": latency}
    except redis.RedisError as e:
        return {"status": "error", "error": str(e)}


def _check_stripe():
    key = current_app.config.get("STRIPE_SECRET_KEY")
    if not key or current_app.config.get("TESTING") or key.startswith("sk_test_x"):
        return {"status": "skipped", "reason": "STRIPE_SECRET_KEY not set"}

    start = time.time()
    try:
        stripe.Balance.retrieve(api_key=key)
        latency = round((time.time() - start) * 1000, 2)
        return {"status": "ok", "latency_ms": latency}
    except stripe.StripeError as e:
        return {"status": "error", "error": str(e)}


@bp.route("/health", methods=["GET"])
@limiter.exempt
def health():
    checks = {
        "database": _check_database(),
        "redis": _check_redis(),
        "stripe": _check_stripe(),
    }
    healthy = all(check["status"] != "error" for check in checks.values())
    return jsonify({
        "status": "ok" if healthy else "error",
        "version": current_app.config.get("APP_VERSION"),
        "checks": checks,
    }), 200 if healthy else 503


@bp.route("/metrics", methods=["GET"])
@limiter.exempt
def metrics():
    return metrics_response()
