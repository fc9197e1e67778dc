"""
Payment Gateway Adapter (Stripe).

The gateway is constructed with an optional secret key. Without one every call
returns a simulated result so checkout can be exercised without live
credentials. Stripe errors are not caught here; a refund the gateway reports as failed
raises PaymentError.
"""

import logging
import uuid
from decimal import Decimal
from typing import Optional

import stripe

from errors import PaymentError
from schemas import PaymentIntentOut, RefundOut, money

logger = logging.getLogger(__name__)

CURRENCY = "usd"


def to_minor_units(amount) -> int:
    return int(money(amount) * 100)


def _simulated_id(prefix: str) -> str:
    return f"{prefix}_sim_{uuid.uuid4().hex[:24]}"


def _field(obj, name: str, default=None):
    try:
        value = obj[name]
    except KeyError:
        return default
    return default if value is None else value


def _intent_out(intent) -> PaymentIntentOut:
    return PaymentIntentOut(
        id=intent["id"],
        status=intent["status"],
        amount=intent["amount"],
        currency=_field(intent, "currency", CURRENCY),
        client_secret=_field(intent, "client_secret"),
        metadata=dict(_field(intent, "metadata", {})),
    )


class PaymentGateway:
    def __init__(self, api_key: Optional[str] = None, publishable_key: Optional[str] = None):
        self.api_key = api_key or None
        self.publishable_key = publishable_key
        if self.api_key:
            logger.info("Stripe payment gateway initialized")
        else:
            logger.warning("Stripe secret key not configured - payment processing will be simulated")

    @property
    def live(self) -> bool:
        return self.api_key is not None

    def create_payment_intent(self, order: dict) -> PaymentIntentOut:
        """Intent for the order total, tagged with the order id and number."""
        amount = to_minor_units(order["total_amount"])
        metadata = {"order_id": str(order["_id"]), "order_number": order["order_number"]}
        if not self.live:
            logger.info("Simulated payment intent for order %s", order["order_number"])
            return PaymentIntentOut(
                id=_simulated_id("pi"),
                status="requires_payment_method",
                amount=amount,
                currency=CURRENCY,
                client_secret=None,
                metadata=metadata,
                simulated=True,
            )
        intent = stripe.PaymentIntent.create(
            api_key=self.api_key,
            amount=amount,
            currency=CURRENCY,
            automatic_payment_methods={"enabled": True},
            metadata=metadata,
            description=f"Order #{order['order_number']}",
        )
        logger.info("Created payment intent for order %s: %s", order["order_number"], intent["id"])
        return _intent_out(intent)

    def confirm_payment(self, payment_intent_id: str, amount: Optional[Decimal] = None) -> PaymentIntentOut:
        if not self.live:
            logger.info("Simulated payment confirmation for %s", payment_intent_id)
            return PaymentIntentOut(
                id=payment_intent_id,
                status="succeeded",
                amount=to_minor_units(amount) if amount is not None else 0,
                currency=CURRENCY,
                simulated=True,
            )
        intent = stripe.PaymentIntent.confirm(payment_intent_id, api_key=self.api_key)
        logger.info("Confirmed payment intent: %s", payment_intent_id)
        return _intent_out(intent)

    def retrieve_payment_intent(self, payment_intent_id: str) -> PaymentIntentOut:
        if not self.live:
            return PaymentIntentOut(id=payment_intent_id, status="requires_payment_method", amount=0,
                                    currency=CURRENCY, simulated=True)
        return _intent_out(stripe.PaymentIntent.retrieve(payment_intent_id, api_key=self.api_key))

    def refund_payment(self, payment_intent_id: str, amount) -> RefundOut:
        cents = to_minor_units(amount)
        if not self.live:
            logger.info("Simulated refund for payment intent %s amount %s", payment_intent_id, money(amount))
            return RefundOut(id=_simulated_id("re"), payment_intent_id=payment_intent_id, amount=cents,
                             status="succeeded", simulated=True)
        refund = stripe.Refund.create(api_key=self.api_key, payment_intent=payment_intent_id, amount=cents)
        if refund["status"] in ("failed", "canceled"):
            raise PaymentError(f"Refund {refund['id']} for payment intent {payment_intent_id} {refund['status']}")
        logger.info("Refund processed for payment intent %s amount %s", payment_intent_id, money(amount))
        return RefundOut(id=refund["id"], payment_intent_id=payment_intent_id, amount=refund["amount"],
                         status=refund["status"])
