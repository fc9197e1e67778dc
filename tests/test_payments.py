from decimal import Decimal

import pytest
import stripe

from errors import PaymentError
from payments import PaymentGateway, to_minor_units


ORDER = {"_id": "64b000000000000000000001", "order_number": "ORD-1-ABCDEF12", "total_amount": 31.6}


def test_to_minor_units():
    assert to_minor_units(31.6) == 3160
    assert to_minor_units(Decimal("0.015")) == 2
    assert to_minor_units("19.99") == 1999


class TestSimulated:

    @pytest.fixture
    def gateway(self):
        return PaymentGateway()

    def test_not_live_without_key(self, gateway):
        assert not gateway.live
        assert not PaymentGateway(api_key="").live

    def test_create_intent(self, gateway):
        intent = gateway.create_payment_intent(ORDER)
        assert intent.simulated
        assert intent.id.startswith("pi_sim_")
        assert intent.amount == 3160
        assert intent.currency == "usd"
        assert intent.metadata == {"order_id": ORDER["_id"], "order_number": "ORD-1-ABCDEF12"}

    def test_confirm_succeeds(self, gateway):
        intent = gateway.confirm_payment("pi_sim_x", Decimal("31.60"))
        assert intent.status == "succeeded"
        assert intent.amount == 3160

    def test_refund(self, gateway):
        refund = gateway.refund_payment("pi_sim_x", Decimal("5.00"))
        assert refund.simulated
        assert refund.amount == 500
        assert refund.status == "succeeded"


class TestLive:

    @pytest.fixture
    def gateway(self):
        return PaymentGateway(api_key="sk_test_123", publishable_key="pk_test_123")

    def test_create_intent_passes_order_details(self, gateway, monkeypatch):
        calls = {}

        def create(**kwargs):
            calls.update(kwargs)
            return {"id": "pi_123", "status": "requires_payment_method", "amount": kwargs["amount"],
                    "currency": "usd", "client_secret": "pi_123_secret", "metadata": kwargs["metadata"]}

        monkeypatch.setattr(stripe.PaymentIntent, "create", create)
        intent = gateway.create_payment_intent(ORDER)

        assert calls["api_key"] == "sk_test_123"
        assert calls["amount"] == 3160
        assert calls["currency"] == "usd"
        assert calls["description"] == "Order #ORD-1-ABCDEF12"
        assert intent.id == "pi_123"
        assert intent.client_secret == "pi_123_secret"
        assert not intent.simulated

    def test_confirm(self, gateway, monkeypatch):
        monkeypatch.setattr(stripe.PaymentIntent, "confirm",
                            lambda intent_id, **kwargs: {"id": intent_id, "status": "processing", "amount": 3160})
        intent = gateway.confirm_payment("pi_123")
        assert intent.status == "processing"
        assert intent.currency == "usd"

    def test_refund(self, gateway, monkeypatch):
        calls = {}

        def create(**kwargs):
            calls.update(kwargs)
            return {"id": "re_1", "amount": kwargs["amount"], "status": "succeeded"}

        monkeypatch.setattr(stripe.Refund, "create", create)
        refund = gateway.refund_payment("pi_123", Decimal("12.34"))
        assert calls["payment_intent"] == "pi_123"
        assert calls["amount"] == 1234
        assert refund.id == "re_1"

    def test_gateway_errors_propagate(self, gateway, monkeypatch):
        def fail(**kwargs):
            raise stripe.StripeError("card declined")

        monkeypatch.setattr(stripe.PaymentIntent, "create", fail)
        with pytest.raises(stripe.StripeError):
            gateway.create_payment_intent(ORDER)

    def test_failed_refund_raises(self, gateway, monkeypatch):
        monkeypatch.setattr(stripe.Refund, "create",
                            lambda **kwargs: {"id": "re_2", "amount": kwargs["amount"], "status": "failed"})
        with pytest.raises(PaymentError):
            gateway.refund_payment("pi_123", Decimal("1.00"))


def test_simulated_retrieve():
    intent = PaymentGateway().retrieve_payment_intent("pi_sim_abc")
    assert intent.id == "pi_sim_abc"
    assert intent.simulated
