"""Tests for the Stripe gateway (Stripe SDK patched)."""

from unittest.mock import Mock, patch

import pytest

from shopkeeper.billing.gateway import StripeGateway, to_plain
from shopkeeper.db.models import CheckoutMode


@pytest.fixture
def gateway() -> StripeGateway:
    return StripeGateway("sk_test_123")


def test_missing_api_key():
    """An empty API key is a configuration error."""
    with pytest.raises(ValueError, match="stripe_secret"):
        StripeGateway("")


def test_from_config():
    """The configured secret key is sent with each call."""
    config = Mock()
    config.stripe_secret.get_secret_value.return_value = "sk_test_cfg"

    with patch("shopkeeper.billing.gateway.stripe.Customer.create") as mock_create:
        mock_create.return_value = Mock(id="cus_1")
        StripeGateway.from_config(config).create_customer("user-1")

    assert mock_create.call_args.kwargs["api_key"] == "sk_test_cfg"


@patch("shopkeeper.billing.gateway.stripe.Customer.create")
def test_create_customer(mock_create, gateway):
    """Customers are tagged with the owner reference."""
    mock_create.return_value = Mock(id="cus_123")

    customer_id = gateway.create_customer("user-1", email="a@shop.test")

    assert customer_id == "cus_123"
    kwargs = mock_create.call_args.kwargs
    assert kwargs["api_key"] == "sk_test_123"
    assert kwargs["email"] == "a@shop.test"
    assert kwargs["metadata"] == {"owner_ref": "user-1"}
    assert "name" not in kwargs


@patch("shopkeeper.billing.gateway.stripe.checkout.Session.create")
def test_create_subscription_checkout(mock_create, gateway):
    """Subscription checkouts carry line items, owner and subscription metadata."""
    mock_create.return_value = {
        "id": "cs_test_123",
        "url": "https://checkout.stripe.com/c/pay/cs_test_123",
        "mode": "subscription",
        "customer": "cus_1",
        "metadata": {"owner_ref": "user-1"},
    }

    session = gateway.create_checkout_session(
        customer_id="cus_1",
        owner_ref="user-1",
        prices={"price_basic": 1, "price_addon": 2},
        success_url="https://shop.test/thanks",
        cancel_url="https://shop.test/cart",
        metadata={"owner_ref": "user-1"},
    )

    assert session.id == "cs_test_123"
    assert session.url == "https://checkout.stripe.com/c/pay/cs_test_123"
    assert session.customer_id == "cus_1"

    kwargs = mock_create.call_args.kwargs
    assert kwargs["mode"] == "subscription"
    assert kwargs["client_reference_id"] == "user-1"
    assert kwargs["line_items"] == [
        {"price": "price_basic", "quantity": 1},
        {"price": "price_addon", "quantity": 2},
    ]
    assert kwargs["subscription_data"] == {"metadata": {"owner_ref": "user-1"}}


@patch("shopkeeper.billing.gateway.stripe.checkout.Session.create")
def test_payment_checkout_has_no_subscription_data(mock_create, gateway):
    """Payment checkouts omit subscription_data."""
    mock_create.return_value = {"id": "cs_1", "url": None, "mode": "payment"}

    gateway.create_checkout_session(
        customer_id="cus_1",
        owner_ref="user-1",
        prices={"price_tee": 1},
        success_url="https://shop.test/thanks",
        cancel_url="https://shop.test/cart",
        mode=CheckoutMode.PAYMENT,
        metadata={"order_id": "ord_1"},
    )

    kwargs = mock_create.call_args.kwargs
    assert kwargs["mode"] == "payment"
    assert kwargs["metadata"] == {"order_id": "ord_1"}
    assert "subscription_data" not in kwargs


@patch("shopkeeper.billing.gateway.stripe.billing_portal.Session.create")
def test_create_portal_session(mock_create, gateway):
    """Portal sessions return the Stripe-hosted URL."""
    mock_create.return_value = Mock(url="https://billing.stripe.com/p/session/abc")

    url = gateway.create_portal_session("cus_1", "https://shop.test/account")

    assert url == "https://billing.stripe.com/p/session/abc"
    mock_create.assert_called_once_with(
        api_key="sk_test_123",
        customer="cus_1",
        return_url="https://shop.test/account",
    )


@patch("shopkeeper.billing.gateway.stripe.checkout.Session.retrieve")
def test_retrieve_checkout_session(mock_retrieve, gateway):
    """Retrieved sessions flatten expanded customers."""
    mock_retrieve.return_value = {
        "id": "cs_1",
        "url": None,
        "mode": "payment",
        "status": "complete",
        "payment_status": "paid",
        "customer": {"id": "cus_1", "object": "customer"},
        "metadata": {"order_id": "ord_1"},
    }

    session = gateway.retrieve_checkout_session("cs_1")

    assert session.payment_status == "paid"
    assert session.customer_id == "cus_1"
    assert session.metadata == {"order_id": "ord_1"}
    mock_retrieve.assert_called_once_with("cs_1", api_key="sk_test_123")


@patch("shopkeeper.billing.gateway.stripe.Subscription.retrieve")
def test_retrieve_subscription(mock_retrieve, gateway):
    """Subscriptions are returned as plain dicts."""
    mock_retrieve.return_value = {"id": "sub_1", "status": "active"}

    assert gateway.retrieve_subscription("sub_1") == {"id": "sub_1", "status": "active"}


def test_to_plain_uses_to_dict():
    """StripeObjects are converted with to_dict()."""
    obj = Mock()
    obj.to_dict.return_value = {"id": "sub_1"}

    assert to_plain(obj) == {"id": "sub_1"}
