# payment_provider.py
import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import stripe
from flask import current_app

from storefront.errors import PaymentProviderError, ValidationError

logger = logging.getLogger(__name__)


class PaymentProvider(ABC):
    """Hosted checkout and webhook verification."""

    @abstractmethod
    def create_checkout_session(self, *, mode: str, line_items: List[dict], metadata: Dict[str, str],
                                success_url: str, cancel_url: str, customer_email: str = None,
                                client_reference_id: str = None) -> str:
        """Create a hosted checkout session and return its URL."""

    @abstractmethod
    def parse_webhook(self, payload: bytes, signature: str) -> Dict[str, Any]:
        """Verify a webhook delivery and return the event as a plain dict."""


class StripePaymentProvider(PaymentProvider):
    def __init__(self, api_key: str, webhook_secret: str, currency: str = "usd"):
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.currency = currency

    @classmethod
    def from_config(cls, config):
        return cls(
            api_key=config.get("STRIPE_SECRET_KEY"),
            webhook_secret=config.get("STRIPE_WEBHOOK_SECRET"),
            currency=config.get("STRIPE_CURRENCY", "usd"),
        )

    def create_checkout_session(self, *, mode, line_items, metadata, success_url, cancel_url,
                                customer_email=None, client_reference_id=None) -> str:
        params = {
            "mode": mode,
            "line_items": line_items,
            "metadata": metadata,
            "success_url": success_url,
            "cancel_url": cancel_url,
            "api_key": self.api_key,
        }
        if customer_email:
            params["customer_email"] = customer_email
        if client_reference_id:
            params["client_reference_id"] = client_reference_id
        if mode == "subscription":
            params["subscription_data"] = {"metadata": metadata}
        else:
            params["payment_intent_data"] = {"metadata": metadata}

        try:
            session = stripe.checkout.Session.create(**params)
        except stripe.StripeError as e:
            logger.error(
                f"Stripe checkout session creation failed: {e}",
                extra={"mode": mode, "purpose": metadata.get("purpose")},
            )
            raise PaymentProviderError("Could not create checkout session")

        logger.info(
            "Stripe checkout session created",
            extra={"session_id": session.id, "mode": mode, "purpose": metadata.get("purpose")},
        )
        return session.url

    def parse_webhook(self, payload: bytes, signature: str) -> Dict[str, Any]:
        if not self.webhook_secret:
            raise PaymentProviderError("Webhook secret is not configured")
        if not signature:
            raise ValidationError("Missing Stripe-Signature header")

        try:
            stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except stripe.SignatureVerificationError:
            logger.warning("Stripe webhook signature verification failed")
            raise ValidationError("Invalid webhook signature")
        except ValueError:
            raise ValidationError("Invalid webhook payload")

        return json.loads(payload)

    def line_item(self, name: str, amount_cents: int, interval: str = None,
                  price_id: Optional[str] = None) -> dict:
        if price_id:
            return {"price": price_id, "quantity": 1}
        price_data = {
            "currency": self.currency,
            "unit_amount": amount_cents,
            "product_data": {"name": name},
        }
        if interval:
            price_data["recurring"] = {"interval": interval}
        return {"price_data": price_data, "quantity": 1}


def get_payment_provider() -> StripePaymentProvider:
    provider = current_app.extensions.get("payment_provider")
    if provider is None:
        provider = StripePaymentProvider.from_config(current_app.config)
        current_app.extensions["payment_provider"] = provider
    return provider
