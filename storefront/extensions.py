"""
Shared extension instances.

They are created unbound at import time so models, routes and tasks can
import them freely; ``init_extensions`` binds them to an app.
"""

import logging

import redis
from flask import jsonify
from flask_cors import CORS
from flask_jwt_extended import JWTManager, get_jwt_identity, verify_jwt_in_request
from flask_jwt_extended.exceptions import JWTExtendedException
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate
from flask_sqlalchemy import SQLAlchemy
from jwt.exceptions import PyJWTError

logger = logging.getLogger(__name__)


def account_or_ip_key():
    """Limit per account when a valid token is present, otherwise per client IP."""
    try:
        verify_jwt_in_request(optional=True)
    except (JWTExtendedException, PyJWTError):
        return f"ip:{get_remote_address()}"
    identity = get_jwt_identity()
    if identity:
        return f"account:{identity}"
    return f"ip:{get_remote_address()}"


db = SQLAlchemy()
jwt = JWTManager()
cors = CORS()
migrate = Migrate()
limiter = Limiter(key_func=account_or_ip_key)
redis_client = None


def init_extensions(app):
    db.init_app(app)
    migrate.init_app(app, db)

    jwt.init_app(app)
    register_jwt_errors()

    cors.init_app(
        app,
        resources={r"/api/*": {"origins": app.config.get("CORS_ORIGINS", [])}},
        allow_headers=app.config.get("CORS_ALLOW_HEADERS", ["Content-Type", "Authorization"]),
        max_age=app.config.get("CORS_MAX_AGE", 600),
    )

    limiter.init_app(app)
    init_redis(app)
    logger.info("Extensions bound", extra={"redis": redis_client is not None})
    return app


def init_redis(app):
    """Connect the client used for the sweep lock and the health probe.

    Tests run without Redis. Outside production an unreachable server is
    logged and the service keeps running with locking disabled.
    """
    global redis_client
    url = app.config.get("REDIS_URL")
    if not url or app.config.get("TESTING"):
        redis_client = None
        return

    client = redis.from_url(
        url,
        decode_responses=True,
        socket_timeout=5,
        socket_connect_timeout=5,
        retry_on_timeout=True,
        health_check_interval=30,
    )
    try:
        client.ping()
    except redis.ConnectionError as e:
        logger.error(f"Redis unreachable at startup: {e}")
        if app.config.get("ENVIRONMENT") == "production":
            raise
        redis_client = None
        return
    redis_client = client


def get_redis_client():
    """The live Redis client, or None when it is not configured or not answering."""
    if redis_client is None:
        return None
    try:
        redis_client.ping()
    except redis.RedisError as e:
        logger.warning(f"Redis ping failed: {e}")
        return None
    return redis_client


def _auth_error(error, code, message):
    return jsonify({"error": error, "code": code, "message": message}), 401


def register_jwt_errors():
    """JWT failures use the same body shape as every other API error."""

    @jwt.expired_token_loader
    def expired_token(jwt_header, jwt_payload):
        return _auth_error("token_expired", "TOKEN_EXPIRED", "The access token has expired.")

    @jwt.invalid_token_loader
    def invalid_token(reason):
        return _auth_error("invalid_token", "INVALID_TOKEN", "The access token is not valid.")

    @jwt.unauthorized_loader
    def missing_token(reason):
        return _auth_error("authorization_required", "AUTH_REQUIRED", "An access token is required.")


__all__ = [
    "db", "jwt", "cors", "migrate", "limiter", "redis_client",
    "init_extensions", "get_redis_client",
]
