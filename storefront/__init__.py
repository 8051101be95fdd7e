"""
Storefront capacity and automation service.
"""

import logging

import sentry_sdk
from flask import Flask
from sentry_sdk.integrations.flask import FlaskIntegration

from storefront.config import ConfigurationError, SecureConfig, get_config
from storefront.error_handlers import register_error_handlers
from storefront.extensions import init_extensions
from storefront.logging_config import setup_logging
from storefront.observability.metrics import register_metrics

logger = logging.getLogger(__name__)


def setup_sentry(app: Flask) -> None:
    """Initialize Sentry error tracking"""
    sentry_dsn = app.config.get("SENTRY_DSN")

    if sentry_dsn and app.config.get("ENVIRONMENT") == "production":
        sentry_sdk.init(
            dsn=sentry_dsn,
            integrations=[FlaskIntegration()],
            traces_sample_rate=0.1,
            environment="production",
            release=app.config.get("APP_VERSION", "1.0.0"),
            send_default_pii=False,
        )
        logger.info("Sentry error tracking initialized")


def create_app(config=None) -> Flask:
    """
    Application factory.

    ``config`` is an environment name (``development``, ``testing``,
    ``production``, ``staging``) or a config object; by default the
    environment is read from ``FLASK_CONFIG``.
    """
    if config is None or isinstance(config, str):
        config = get_config(config)
    if not isinstance(config, SecureConfig):
        raise ConfigurationError(f"Unsupported configuration object: {config!r}")

    app = Flask(__name__)
    app.config.from_object(config)
    app.config["ENVIRONMENT"] = config.ENV

    setup_logging(app)
    setup_sentry(app)
    init_extensions(app)
    register_metrics(app)
    register_error_handlers(app)

    from storefront.routes import register_blueprints
    from storefront.workers.celery_app import init_celery

    register_blueprints(app)
    init_celery(app)

    logger.info(
        "Application started",
        extra={"environment": config.ENV, "version": app.config.get("APP_VERSION")},
    )
    return app
