# storefront/error_handlers.py
import logging
import traceback

from flask import jsonify, request
from werkzeug.exceptions import HTTPException

from .errors import DomainError
from .observability.metrics import DOMAIN_ERRORS

logger = logging.getLogger(__name__)


def _envelope(error, message, status_code, **payload):
    body = {"error": error, "message": message, "path": request.path}
    body.update(payload)
    return jsonify(body), status_code


def register_error_handlers(app):
    """Register all error handlers for the application"""

    @app.errorhandler(DomainError)
    def handle_domain_error(error):
        DOMAIN_ERRORS.labels(code=error.code).inc()
        log = logger.error if error.status_code >= 500 else logger.info
        log(
            f"{error.code}: {error.message} - Path: {request.path}",
            extra={"code": error.code, "status_code": error.status_code},
        )
        body = error.to_dict()
        body["path"] = request.path
        return jsonify(body), error.status_code

    @app.errorhandler(400)
    def bad_request(e):
        logger.warning(f"Bad request: {str(e)} - Path: {request.path}")
        return _envelope(
            "Bad request",
            "The request could not be understood or was missing required parameters.",
            400,
            code="VALIDATION_ERROR",
        )

    @app.errorhandler(404)
    def not_found(e):
        logger.info(f"Not found: {request.path}")
        return _envelope(
            "Not found",
            "The requested resource was not found on the server.",
            404,
            code="NOT_FOUND",
        )

    @app.errorhandler(405)
    def method_not_allowed(e):
        logger.warning(f"Method not allowed: {request.method} {request.path}")
        return _envelope(
            "Method not allowed",
            f"The {request.method} method is not supported for this endpoint.",
            405,
            code="METHOD_NOT_ALLOWED",
        )

    @app.errorhandler(429)
    def too_many_requests(e):
        logger.warning(f"Too many requests: {str(e)} - Path: {request.path}")
        return _envelope(
            "Too many requests",
            "Rate limit exceeded. Please try again later.",
            429,
            code="RATE_LIMITED",
        )

    @app.errorhandler(HTTPException)
    def handle_http_exception(e):
        return _envelope(e.name, e.description, e.code or 500)

    @app.errorhandler(Exception)
    def server_error(e):
        logger.error(f"Server error: {str(e)} - Path: {request.path}", exc_info=True)
        if app.config.get("DEBUG", False):
            logger.error(f"Traceback: {traceback.format_exc()}")
        return _envelope(
            "Server error",
            "An internal server error occurred. Please try again later.",
            500,
            code="INTERNAL_ERROR",
        )
