"""
Checkout intents.

A checkout request is one of a closed set of shapes discriminated on
``mode``. Unknown modes, missing fields and unexpected keys are rejected
before anything reaches the payment provider.
"""

from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator
from pydantic import ValidationError as PydanticValidationError

from storefront.billing.plan_catalog import normalize_plan
from storefront.errors import ValidationError


class _Intent(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True, str_strip_whitespace=True)


class SubscriptionCheckout(_Intent):
    mode: Literal["subscription"]
    plan: str
    interval: Literal["month", "year"] = "month"
    store_id: Optional[str] = Field(default=None, alias="storeId", min_length=1)

    @field_validator("plan")
    @classmethod
    def known_plan(cls, value):
        plan = normalize_plan(value)
        if plan is None:
            raise ValueError(f"unknown plan {value!r}")
        return plan


class PaymentCheckout(_Intent):
    mode: Literal["payment"]
    amount_cents: int = Field(alias="amountCents", gt=0)
    store_id: str = Field(alias="storeId", min_length=1)
    order_id: Optional[str] = Field(default=None, alias="orderId", max_length=255)
    plan: Optional[str] = None

    @field_validator("plan")
    @classmethod
    def known_plan(cls, value):
        if value is None:
            return None
        plan = normalize_plan(value)
        if plan is None:
            raise ValueError(f"unknown plan {value!r}")
        return plan


CheckoutIntent = Annotated[Union[SubscriptionCheckout, PaymentCheckout], Field(discriminator="mode")]

_intent_adapter = TypeAdapter(CheckoutIntent)


def parse_checkout_intent(payload) -> Union[SubscriptionCheckout, PaymentCheckout]:
    if not isinstance(payload, dict):
        raise ValidationError("Checkout payload must be a JSON object")
    try:
        return _intent_adapter.validate_python(payload)
    except PydanticValidationError as e:
        details = [
            {"field": ".".join(str(part) for part in err["loc"]), "message": err["msg"]}
            for err in e.errors(include_url=False, include_context=False, include_input=False)
        ]
        raise ValidationError("Invalid checkout payload", payload={"details": details})
