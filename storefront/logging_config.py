# storefront/logging_config.py
import logging
import logging.config
import os
import time
import uuid

from flask import g, has_request_context, request
from pythonjsonlogger import jsonlogger

REQUEST_ID_HEADER = "X-Request-ID"


class RequestIdFilter(logging.Filter):
    """
    Inject request_id into every log record if present.
    """

    def filter(self, record):
        if not hasattr(record, "request_id"):
            record.request_id = getattr(g, "request_id", None) if has_request_context() else None
        return True


def _logging_dict(level: str) -> dict:
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "filters": {
            "request_id": {
                "()": RequestIdFilter,
            },
        },
        "formatters": {
            "json": {
                "()": jsonlogger.JsonFormatter,
                "fmt": (
                    "%(asctime)s "
                    "%(levelname)s "
                    "%(name)s "
                    "%(message)s "
                    "%(request_id)s "
                    "%(module)s "
                    "%(funcName)s "
                    "%(lineno)d"
                ),
            },
        },
        "handlers": {
            "default": {
                "class": "logging.StreamHandler",
                "formatter": "json",
                "filters": ["request_id"],
            },
        },
        "loggers": {
            "werkzeug": {"level": "WARNING"},
            "sqlalchemy.engine": {"level": "WARNING"},
            "celery": {"level": "INFO"},
        },
        "root": {
            "level": level,
            "handlers": ["default"],
        },
    }


def setup_logging(app):
    """Configure structured JSON logging and per-request ids for the application"""
    log_level = app.config.get("LOG_LEVEL", os.getenv("LOG_LEVEL", "INFO")).upper()
    logging.config.dictConfig(_logging_dict(log_level))

    logger = logging.getLogger("storefront.requests")

    @app.before_request
    def assign_request_id():
        g.request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        g.start_time = time.monotonic()

        if app.config.get("LOG_REQUESTS", False):
            logger.info(
                f"Request: {request.method} {request.path}",
                extra={
                    "ip": request.remote_addr,
                    "user_agent": request.user_agent.string if request.user_agent else None,
                },
            )

    @app.after_request
    def echo_request_id(response):
        request_id = getattr(g, "request_id", None)
        if request_id:
            response.headers[REQUEST_ID_HEADER] = request_id

        if app.config.get("LOG_REQUESTS", False) and hasattr(g, "start_time"):
            duration = (time.monotonic() - g.start_time) * 1000
            logger.info(
                f"Response: {request.method} {request.path} - {response.status_code}",
                extra={
                    "status_code": response.status_code,
                    "duration_ms": round(duration, 2),
                    "method": request.method,
                    "path": request.path,
                },
            )
        return response

    return app


def configure_worker_logging(level: str = None):
    """Configure JSON logging for Celery workers and CLI commands outside a request"""
    logging.config.dictConfig(_logging_dict((level or os.getenv("LOG_LEVEL", "INFO")).upper()))
