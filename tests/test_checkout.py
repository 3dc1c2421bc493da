"""Tests for the checkout flow and the order write."""

import asyncio
from decimal import Decimal

import pytest

from storefront.checkout import (
    CheckoutFlow, CheckoutStep, OrderWriter, build_order_draft, shipping_fee_for,
)
from storefront.errors import InvalidInput, PaymentSetupError, PreconditionFailed, ValidationError
from storefront.models import CartLine, ShippingAddress
from tests.fakes import FakeApi, FakeCharge, StaticIdentity

ADDRESS = {
    "fullName": "Ada Lovelace",
    "address": "1 Main St",
    "city": "Austin",
    "state": "TX",
    "postalCode": "78701",
    "country": "US",
    "phone": "555-0100",
}


@pytest.fixture
def charge():
    return FakeCharge()


@pytest.fixture
def api():
    return FakeApi()


@pytest.fixture
def make_flow(make_engine, charge, api, notices):
    def _make(subject_id="u1", engine=None):
        cart = engine or make_engine()
        return CheckoutFlow(cart, charge, OrderWriter(api), StaticIdentity(subject_id), notify=notices)
    return _make


def _line(price, quantity=1, discounted=None):
    return CartLine(product_id="p", quantity=quantity, name="Thing", unit_price=Decimal(price),
                    discounted_unit_price=discounted)


class TestPricing:
    def test_free_shipping_above_threshold(self):
        assert shipping_fee_for(Decimal("100")) == Decimal("0")

    def test_flat_fee_at_threshold(self):
        assert shipping_fee_for(Decimal("99")) == Decimal("7.99")

    def test_draft_totals(self):
        draft = build_order_draft([_line("100")], ShippingAddress(**ADDRESS))
        assert draft.subtotal == Decimal("100.00")
        assert draft.shipping_fee == Decimal("0")
        assert draft.total_amount == Decimal("100.00")

        draft = build_order_draft([_line("33", quantity=3)], ShippingAddress(**ADDRESS))
        assert draft.subtotal == Decimal("99.00")
        assert draft.total_amount == Decimal("106.99")

    def test_draft_uses_discounted_price(self):
        draft = build_order_draft([_line("50", quantity=2, discounted=Decimal("40"))], ShippingAddress(**ADDRESS))
        assert draft.items[0].unit_price == Decimal("40")
        assert draft.subtotal == Decimal("80.00")


class TestShipping:
    def test_complete_address_moves_to_payment(self, make_flow):
        flow = make_flow()
        address = flow.submit_shipping(ADDRESS)
        assert address.full_name == "Ada Lovelace"
        assert flow.step == CheckoutStep.PAYMENT

    def test_missing_fields_are_reported(self, make_flow):
        flow = make_flow()
        data = dict(ADDRESS, phone="", city=None)
        with pytest.raises(ValidationError) as exc:
            flow.submit_shipping(data)
        assert exc.value.fields == ["city", "phone"]
        assert flow.step == CheckoutStep.SHIPPING

    def test_country_defaults(self, make_flow):
        flow = make_flow()
        data = dict(ADDRESS)
        del data["country"]
        assert flow.submit_shipping(data).country == "US"


class TestBeginPayment:
    def test_requires_identity(self, make_flow, dress):
        flow = make_flow(subject_id=None)
        flow.cart.add_item(dress)
        flow.submit_shipping(ADDRESS)
        with pytest.raises(PreconditionFailed) as exc:
            asyncio.run(flow.begin_payment())
        assert exc.value.redirect == "/login"

    def test_requires_items(self, make_flow, charge):
        flow = make_flow()
        flow.submit_shipping(ADDRESS)
        with pytest.raises(PreconditionFailed) as exc:
            asyncio.run(flow.begin_payment())
        assert exc.value.redirect == "/shop"
        assert charge.authorizations == []

    def test_requires_address(self, make_flow, dress):
        flow = make_flow()
        flow.cart.add_item(dress)
        with pytest.raises(ValidationError):
            asyncio.run(flow.begin_payment())

    def test_authorizes_draft_total(self, make_flow, charge, dress):
        flow = make_flow()
        flow.cart.add_item(dress, 1)
        flow.submit_shipping(ADDRESS)
        authorization = asyncio.run(flow.begin_payment())

        assert authorization.client_secret == "pi_1_secret"
        amount, metadata = charge.authorizations[0]
        assert amount == Decimal("87.99")
        assert metadata["items"][0]["productId"] == "42"
        assert metadata["shippingAddress"]["addressLine1"] == "1 Main St"

    def test_draft_is_frozen_against_cart_changes(self, make_flow, dress):
        flow = make_flow()
        flow.cart.add_item(dress, 1)
        flow.submit_shipping(ADDRESS)
        asyncio.run(flow.begin_payment())

        flow.cart.add_item(dress, 5)
        assert flow.draft.total_amount == Decimal("87.99")
        assert flow.draft.items[0].quantity == 1

    def test_setup_failure_leaves_cart_and_allows_retry(self, make_flow, charge, notices, dress):
        charge.fail_authorizations = 1
        flow = make_flow()
        flow.cart.add_item(dress, 2)
        flow.submit_shipping(ADDRESS)

        with pytest.raises(PaymentSetupError):
            asyncio.run(flow.begin_payment())
        assert flow.cart.count() == 2
        assert flow.authorization is None
        assert flow.step == CheckoutStep.PAYMENT
        assert "Payment Error" in notices.titles()

        authorization = asyncio.run(flow.begin_payment())
        assert authorization.client_secret == "pi_2_secret"

    def test_total_beyond_cents_precision_is_rejected(self, make_flow, charge, dress):
        flow = make_flow()
        flow.cart.add_item(dress, 10 ** 27)
        flow.submit_shipping(ADDRESS)
        with pytest.raises(InvalidInput):
            asyncio.run(flow.begin_payment())
        assert charge.authorizations == []
        assert flow.draft is None

    def test_new_address_drops_authorization(self, make_flow, dress):
        flow = make_flow()
        flow.cart.add_item(dress)
        flow.submit_shipping(ADDRESS)
        asyncio.run(flow.begin_payment())
        flow.submit_shipping(dict(ADDRESS, city="Dallas"))
        assert flow.authorization is None
        assert flow.draft is None


class TestSettle:
    def _paid_flow(self, make_flow, dress):
        flow = make_flow()
        flow.cart.add_item(dress, 1)
        flow.submit_shipping(ADDRESS)
        asyncio.run(flow.begin_payment())
        return flow

    def test_successful_write(self, make_flow, api, notices, dress):
        flow = self._paid_flow(make_flow, dress)
        result = asyncio.run(flow.confirm_payment({"card": "tok_visa"}))

        assert result.sync_warning is None
        assert result.order.id == "101"
        assert result.order.synced is True
        assert result.order.status == "processing"
        assert result.order.payment_status == "paid"
        assert flow.step == CheckoutStep.CONFIRMATION
        assert flow.cart.cart == {}
        assert notices.titles()[-1] == "Payment Successful"

        payload = api.created[0]
        assert payload["subjectId"] == "u1"
        assert payload["totalAmount"] == 87.99
        assert payload["paymentMethod"] == "card"
        assert isinstance(payload["orderDate"], str)

    def test_failed_write_still_completes_checkout(self, make_flow, api, notices, dress):
        api.fail_orders = True
        flow = self._paid_flow(make_flow, dress)
        result = asyncio.run(flow.settle())

        assert result.sync_warning is not None
        assert result.order.synced is False
        assert result.order.id.startswith("ORD")
        assert result.sync_warning.order_id == result.order.id
        assert "Payment successful" in result.sync_warning.detail
        assert flow.cart.cart == {}
        assert flow.step == CheckoutStep.CONFIRMATION
        assert notices.titles()[-1] == "Order Saved"

    def test_declined_confirmation_keeps_cart(self, make_flow, charge, api, dress):
        charge.fail_confirmation = True
        flow = self._paid_flow(make_flow, dress)
        with pytest.raises(PaymentSetupError):
            asyncio.run(flow.confirm_payment({}))
        assert flow.cart.count() == 1
        assert flow.step == CheckoutStep.PAYMENT
        assert api.created == []

    def test_settle_without_authorization(self, make_flow):
        flow = make_flow()
        with pytest.raises(PreconditionFailed):
            asyncio.run(flow.settle())

    def test_confirmed_checkout_is_final(self, make_flow, api, charge, dress):
        flow = self._paid_flow(make_flow, dress)
        first = asyncio.run(flow.settle())

        flow.submit_shipping(dict(ADDRESS, city="Dallas"))
        assert flow.address.city == "Austin"
        assert asyncio.run(flow.settle()) is first
        assert asyncio.run(flow.begin_payment()) is flow.authorization
        assert len(api.created) == 1
        assert len(charge.authorizations) == 1


class TestCheckoutScenarios:
    def test_anonymous_shopper_is_sent_to_login(self, make_flow):
        flow = make_flow(subject_id=None)
        flow.cart.add_item({"id": "42", "name": "Dress", "price": 80}, 1)
        flow.cart.add_item({"id": "42", "name": "Dress", "price": 80}, 2)
        assert flow.cart.total() == Decimal("240")
        flow.submit_shipping(ADDRESS)
        with pytest.raises(PreconditionFailed) as exc:
            asyncio.run(flow.begin_payment())
        assert exc.value.redirect == "/login"
        assert flow.cart.count() == 3
