"""
Settings for the storefront capacity service.

Every value comes from the process environment. Secrets are properties so a
missing one only breaks the environment that needs it; ``ProductionConfig``
reads them all up front so a bad deploy dies at boot.
"""

import os
import logging
import warnings
from datetime import timedelta
from typing import Any, Dict, Optional
from urllib.parse import urlparse
from enum import Enum

logger = logging.getLogger(__name__)


class Environment(str, Enum):
    DEVELOPMENT = "development"
    PRODUCTION = "production"
    TESTING = "testing"
    STAGING = "staging"


class ConfigurationError(Exception):
    """A setting is missing or unusable for the selected environment."""


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}")


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


class SecureConfig:
    """Values shared by every environment."""

    APP_VERSION = os.getenv("APP_VERSION", "1.0.0")

    ENV = os.getenv("ENV", os.getenv("FLASK_ENV", Environment.DEVELOPMENT.value)).lower()
    DEBUG = _env_flag("FLASK_DEBUG", False)
    TESTING = False
    PROPAGATE_EXCEPTIONS = False

    @property
    def is_production(self) -> bool:
        return self.ENV == Environment.PRODUCTION

    def _secret(self, name: str, fallback: str, *aliases: str) -> str:
        for candidate in (name,) + aliases:
            value = os.getenv(candidate)
            if value:
                return value
        if self.is_production:
            raise ConfigurationError(f"{name} must be set when running in production")
        return fallback

    @property
    def FRONTEND_URL(self):
        """Where checkout sends the customer back to."""
        url = os.getenv("FRONTEND_URL", "http://localhost:3000").rstrip("/")
        if self.is_production and urlparse(url).scheme != "https":
            warnings.warn(f"FRONTEND_URL is not https in production: {url}")
        return url

    # Auth
    @property
    def SECRET_KEY(self):
        return self._secret("SECRET_KEY", "storefront-dev-secret")

    @property
    def JWT_SECRET_KEY(self):
        return self._secret("JWT_SECRET_KEY", "storefront-dev-jwt-secret")

    @property
    def AUTOMATION_SHARED_SECRET(self):
        """Bearer secret presented by the cron trigger and the store executor."""
        return self._secret("AUTOMATION_SHARED_SECRET", "storefront-dev-automation", "CRON_SECRET")

    JWT_TOKEN_LOCATION = ["headers"]
    JWT_HEADER_NAME = "Authorization"
    JWT_HEADER_TYPE = "Bearer"
    JWT_ALGORITHM = "HS256"
    JWT_ACCESS_TOKEN_EXPIRES = timedelta(minutes=_env_int("JWT_ACCESS_MINUTES", 30))
    JWT_ERROR_MESSAGE_KEY = "message"

    # Database
    @property
    def SQLALCHEMY_DATABASE_URI(self):
        uri = self._secret("DATABASE_URL", "sqlite:///storefront.db")
        if uri.startswith("postgres://"):
            uri = uri.replace("postgres://", "postgresql://", 1)
        if self.is_production and urlparse(uri).scheme.startswith("sqlite"):
            raise ConfigurationError("Production needs a PostgreSQL DATABASE_URL, not SQLite")
        return uri

    SQLALCHEMY_TRACK_MODIFICATIONS = False

    @property
    def SQLALCHEMY_ENGINE_OPTIONS(self):
        if self.SQLALCHEMY_DATABASE_URI.startswith("sqlite"):
            return {}
        return {
            "pool_size": _env_int("DATABASE_POOL_SIZE", 10),
            "max_overflow": _env_int("DATABASE_MAX_OVERFLOW", 20),
            "pool_recycle": _env_int("DATABASE_POOL_RECYCLE", 3600),
            "pool_timeout": _env_int("DATABASE_POOL_TIMEOUT", 30),
            "pool_pre_ping": True,
        }

    # Redis and the Celery broker
    REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")

    @property
    def CELERY_BROKER_URL(self):
        return os.getenv("CELERY_BROKER_URL", self.REDIS_URL)

    @property
    def CELERY_RESULT_BACKEND(self):
        return os.getenv("CELERY_RESULT_BACKEND", self.REDIS_URL)

    # Stripe
    @property
    def STRIPE_SECRET_KEY(self):
        key = self._secret("STRIPE_SECRET_KEY", "sk_test_placeholder")
        if self.is_production and key.startswith("sk_test"):
            raise ConfigurationError("STRIPE_SECRET_KEY is a test-mode key but ENV is production")
        return key

    @property
    def STRIPE_WEBHOOK_SECRET(self):
        return self._secret("STRIPE_WEBHOOK_SECRET", "")

    STRIPE_CURRENCY = os.getenv("STRIPE_CURRENCY", "usd")

    # CORS
    @property
    def CORS_ORIGINS(self):
        configured = [o.strip() for o in os.getenv("CORS_ORIGINS", "").split(",") if o.strip()]
        if not configured:
            return [self.FRONTEND_URL]
        if self.is_production and "*" in configured:
            raise ConfigurationError("CORS_ORIGINS may not contain '*' in production")
        return configured

    CORS_ALLOW_HEADERS = ["Content-Type", "Authorization", "X-Request-ID"]
    CORS_MAX_AGE = 600

    # Rate limits (flask-limiter reads the RATELIMIT_* keys)
    RATELIMIT_ENABLED = _env_flag("RATE_LIMIT_ENABLED", True)
    RATELIMIT_DEFAULT = os.getenv("RATELIMIT_DEFAULT", "200 per hour")
    RATELIMIT_HEADERS_ENABLED = True
    STORE_CREATE_RATE_LIMIT = os.getenv("STORE_CREATE_RATE_LIMIT", "20 per minute")
    CHECKOUT_RATE_LIMIT = os.getenv("CHECKOUT_RATE_LIMIT", "30 per minute")

    @property
    def RATELIMIT_STORAGE_URI(self):
        return os.getenv("RATE_LIMIT_STORAGE_URI", "memory://")

    # Automation
    AUTOMATION_MAX_ATTEMPTS = _env_int("AUTOMATION_MAX_ATTEMPTS", 3)
    AUTOMATION_RETRY_BASE_SECONDS = _env_int("AUTOMATION_RETRY_BASE_SECONDS", 60)
    AUTOMATION_RETRY_MAX_SECONDS = _env_int("AUTOMATION_RETRY_MAX_SECONDS", 960)
    AUTOMATION_SWEEP_MINUTES = _env_int("AUTOMATION_SWEEP_MINUTES", 5)
    AUTOMATION_SWEEP_BATCH_SIZE = _env_int("AUTOMATION_SWEEP_BATCH_SIZE", 200)
    AUTOMATION_SWEEP_LOCK_TTL = _env_int("AUTOMATION_SWEEP_LOCK_TTL", 240)
    AUTOMATION_DISPATCH_TASK = os.getenv("AUTOMATION_DISPATCH_TASK", "automation.execute_store_run")
    AUTOMATION_DISPATCH_QUEUE = os.getenv("AUTOMATION_DISPATCH_QUEUE", "automation")

    # Plans and store defaults
    PLAN_CATALOG_TTL_SECONDS = _env_int("PLAN_CATALOG_TTL_SECONDS", 300)
    STORE_CREATE_MAX_RETRIES = _env_int("STORE_CREATE_MAX_RETRIES", 2)
    DEFAULT_STORE_PRICE_CENTS = 2990
    DEFAULT_STORE_CATEGORY = os.getenv("DEFAULT_STORE_CATEGORY", "General")
    DEFAULT_STORE_NAME_PREFIX = os.getenv("DEFAULT_STORE_NAME_PREFIX", "My Store")

    # Logging and monitoring
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
    LOG_REQUESTS = _env_flag("LOG_REQUESTS", False)
    SENTRY_DSN = os.getenv("SENTRY_DSN")
    METRICS_ENABLED = _env_flag("METRICS_ENABLED", True)

    def __init__(self):
        self._check()
        self.ENVIRONMENT = self.ENV
        logger.info("Settings ready", extra={"environment": self.ENV})

    def _check(self):
        known = {e.value for e in Environment}
        if self.ENV not in known:
            raise ConfigurationError(
                f"ENV={self.ENV!r} is not one of {', '.join(sorted(known))}"
            )
        if self.is_production and self.DEBUG:
            warnings.warn("FLASK_DEBUG is on while ENV is production")
        if self.AUTOMATION_MAX_ATTEMPTS < 1:
            raise ConfigurationError("AUTOMATION_MAX_ATTEMPTS must be at least 1")


class DevelopmentConfig(SecureConfig):
    def __init__(self):
        self.ENV = Environment.DEVELOPMENT.value
        super().__init__()
        self.DEBUG = True
        self.PROPAGATE_EXCEPTIONS = True
        self.RATELIMIT_ENABLED = False


class ProductionConfig(SecureConfig):
    """Also used for staging."""

    def __init__(self, env: str = Environment.PRODUCTION.value):
        self.ENV = env
        super().__init__()
        self.DEBUG = False
        self.RATELIMIT_ENABLED = True
        for name in ("SECRET_KEY", "JWT_SECRET_KEY", "SQLALCHEMY_DATABASE_URI",
                     "STRIPE_SECRET_KEY", "STRIPE_WEBHOOK_SECRET", "AUTOMATION_SHARED_SECRET"):
            getattr(self, name)


class TestingConfig(SecureConfig):
    SQLALCHEMY_DATABASE_URI = os.getenv("TEST_DATABASE_URI", "sqlite:///:memory:")
    SQLALCHEMY_ENGINE_OPTIONS: Dict[str, Any] = {}
    SECRET_KEY = "test-secret-key"
    JWT_SECRET_KEY = "super-secret-test-key-with-enough-length"
    AUTOMATION_SHARED_SECRET = "test-automation-secret"
    STRIPE_SECRET_KEY = "sk_test_mock"
    STRIPE_WEBHOOK_SECRET = "whsec_test_mock"
    FRONTEND_URL = "http://localhost:3000"
    CORS_ORIGINS = ["http://localhost:3000"]
    RATELIMIT_STORAGE_URI = "memory://"
    CELERY_BROKER_URL = "memory://"
    CELERY_RESULT_BACKEND = "cache+memory://"

    def __init__(self):
        self.ENV = Environment.TESTING.value
        super().__init__()
        self.TESTING = True
        self.RATELIMIT_ENABLED = False
        self.METRICS_ENABLED = True
        self.LOG_LEVEL = "WARNING"


_CONFIGS = {
    Environment.DEVELOPMENT.value: DevelopmentConfig,
    Environment.TESTING.value: TestingConfig,
}


def get_config(env: Optional[str] = None) -> SecureConfig:
    """Build the settings object for ``env`` (defaults to FLASK_CONFIG, then ENV)."""
    if env is None:
        env = os.getenv("FLASK_CONFIG") or os.getenv("ENV") or os.getenv("FLASK_ENV") or "development"
    env = env.lower()

    if env in (Environment.PRODUCTION.value, Environment.STAGING.value):
        return ProductionConfig(env)
    config_class = _CONFIGS.get(env)
    if config_class is None:
        raise ConfigurationError(f"No settings defined for environment {env!r}")
    return config_class()
