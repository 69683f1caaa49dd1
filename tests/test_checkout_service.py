"""
Test suite for funnel and portal checkout.

Stripe objects are stood in for with ``SimpleNamespace`` records so field
reads behave like the SDK's attribute access.
"""

import pytest
import threading
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

from funnel_portal.config import AppConfig
from funnel_portal.integrations.errors import StripeGatewayError
from funnel_portal.schemas.database_models import Product, Profile, PurchaseSource
from funnel_portal.services.checkout_service import CheckoutService, dollars, stripe_field, stripe_id
from funnel_portal.services.errors import (
    NotFoundError,
    PaymentFailedError,
    ProvisioningError,
    ValidationFailedError,
)
from funnel_portal.services.purchase_service import GrantResult
from funnel_portal.utils.auth import AuthenticatedUser


@pytest.fixture
def config():
    return AppConfig()


@pytest.fixture
def gateway():
    gateway = MagicMock()
    gateway.find_or_create_customer.return_value = "cus_1"
    gateway.create_payment_intent.return_value = SimpleNamespace(
        id="pi_1", client_secret="pi_1_secret", amount=700, status="requires_payment_method"
    )
    gateway.create_checkout_session.return_value = SimpleNamespace(id="cs_1", url="https://checkout.stripe.com/cs_1")
    return gateway


@pytest.fixture
def purchases():
    purchases = MagicMock()
    purchases.grant_product_access = AsyncMock(return_value=GrantResult(user_id="user-1", granted=True))
    return purchases


@pytest.fixture
def klaviyo():
    klaviyo = MagicMock()
    klaviyo.enabled = True
    klaviyo.upsert_profile = AsyncMock(return_value="prof-1")
    klaviyo.add_profile_to_list = AsyncMock()
    klaviyo.track_event = AsyncMock()
    return klaviyo


@pytest.fixture
def shopify():
    shopify = MagicMock()
    shopify.enabled = True
    shopify.find_or_create_customer = AsyncMock(return_value={"id": 1})
    shopify.create_order = AsyncMock(return_value={"id": 2})
    return shopify


@pytest.fixture
def products():
    products = MagicMock()
    products.get_by_slug = AsyncMock(return_value=Product(
        id="prod-9", slug="pathless-path", name="The Pathless Path", price_cents=9700, portal_price_cents=4700
    ))
    return products


@pytest.fixture
def profiles():
    profiles = MagicMock()
    profiles.get_by_id = AsyncMock(return_value=Profile(
        id="user-1", email="Jane@Example.com", full_name="Jane Doe", created_at="2024-01-01T00:00:00+00:00"
    ))
    profiles.set_stripe_customer_id = AsyncMock()
    return profiles


@pytest.fixture
def service(gateway, purchases, products, profiles, klaviyo, shopify, config):
    return CheckoutService(
        gateway=gateway,
        purchases=purchases,
        products=products,
        profiles=profiles,
        klaviyo=klaviyo,
        shopify=shopify,
        config=config,
    )


class TestStripeHelpers:
    """Test Stripe field access helpers."""

    def test_field_from_mapping_and_object(self):
        assert stripe_field({"email": "a@b.c"}, "email") == "a@b.c"
        assert stripe_field(SimpleNamespace(email=None), "email", "x") == "x"
        assert stripe_field(None, "email", "x") == "x"

    def test_expandable_id(self):
        assert stripe_id("cus_1") == "cus_1"
        assert stripe_id(SimpleNamespace(id="cus_2")) == "cus_2"
        assert stripe_id(None) is None

    def test_dollars(self):
        assert dollars(1495) == "14.95"


class TestFunnelCheckout:
    """Test checkout session and payment intent creation."""

    def test_amount_with_order_bump(self, service):
        assert service.funnel_amount(False) == 700
        assert service.funnel_amount(True) == 3400

    def test_checkout_session(self, service, gateway):
        result = service.create_checkout_session(True, "Jane@Example.com")

        assert result == {"sessionId": "cs_1", "url": "https://checkout.stripe.com/cs_1"}
        kwargs = gateway.create_checkout_session.call_args.kwargs
        assert len(kwargs["line_items"]) == 2
        assert kwargs["success_url"] == "http://localhost:3000/upsell-1?session_id={CHECKOUT_SESSION_ID}"
        assert kwargs["cancel_url"] == "http://localhost:3000/checkout"
        assert kwargs["metadata"]["includeOrderBump"] == "true"
        assert kwargs["customer_email"] == "jane@example.com"

    def test_line_item_falls_back_to_price_data(self, service):
        item = service._line_item(None, "Guide", 700)
        assert item["price_data"]["unit_amount"] == 700
        assert item["price_data"]["currency"] == "aud"
        assert service._line_item("price_1", "Guide", 700) == {"price": "price_1", "quantity": 1}

    def test_payment_intent(self, service, gateway):
        result = service.create_payment_intent(True, "jane@example.com", "Jane")

        assert result == {"clientSecret": "pi_1_secret", "paymentIntentId": "pi_1", "amount": 3400}
        kwargs = gateway.create_payment_intent.call_args.kwargs
        assert kwargs["customer_id"] == "cus_1"
        assert kwargs["metadata"]["source"] == "funnel"
        assert kwargs["metadata"]["customerEmail"] == "jane@example.com"

    def test_payment_intent_without_email(self, service, gateway):
        service.create_payment_intent(False)
        gateway.find_or_create_customer.assert_not_called()

    def test_update_requires_id(self, service):
        with pytest.raises(ValidationFailedError, match="paymentIntentId is required"):
            service.update_payment_intent(None, False)

    def test_update_expired_intent(self, service, gateway):
        gateway.update_payment_intent.side_effect = StripeGatewayError("No such intent", code="resource_missing")
        with pytest.raises(ValidationFailedError, match="Payment session expired"):
            service.update_payment_intent("pi_1", True)

    def test_update_reprices(self, service, gateway):
        gateway.update_payment_intent.return_value = SimpleNamespace(id="pi_1", amount=3400)

        result = service.update_payment_intent("pi_1", True, "jane@example.com")

        assert result == {"success": True, "amount": 3400, "customerId": "cus_1"}
        kwargs = gateway.update_payment_intent.call_args.kwargs
        assert kwargs["amount"] == 3400
        assert kwargs["customer"] == "cus_1"


class TestSessionEmail:
    """Test the checkout session lookup."""

    def test_requires_session_id(self, service):
        with pytest.raises(ValidationFailedError, match="Session ID required"):
            service.get_session_email("")

    def test_missing_email(self, service, gateway):
        gateway.retrieve_checkout_session.return_value = SimpleNamespace(customer_details=None)
        with pytest.raises(NotFoundError):
            service.get_session_email("cs_1")

    def test_returns_email_and_name(self, service, gateway):
        gateway.retrieve_checkout_session.return_value = SimpleNamespace(
            customer_details=SimpleNamespace(email="jane@example.com", name="Jane Doe")
        )
        assert service.get_session_email("cs_1") == {"email": "jane@example.com", "name": "Jane Doe"}


class TestUpsell:
    """Test one-click upsells."""

    @pytest.fixture
    def session(self, gateway):
        gateway.retrieve_checkout_session.return_value = SimpleNamespace(
            customer=SimpleNamespace(id="cus_1"),
            customer_details=SimpleNamespace(email="jane@example.com", name="Jane Doe"),
            payment_intent=SimpleNamespace(id="pi_0", payment_method=SimpleNamespace(id="pm_1")),
            currency="aud",
        )

    @pytest.mark.asyncio
    async def test_unknown_offer(self, service):
        with pytest.raises(ValidationFailedError, match="Invalid upsell type"):
            await service.process_upsell("cs_1", "upsell-9", "accept")

    @pytest.mark.asyncio
    async def test_decline_tracks_event(self, service, klaviyo, gateway, session):
        result = await service.process_upsell("cs_1", "upsell-1", "decline")

        assert result == {"success": True, "action": "decline"}
        assert klaviyo.track_event.call_args.args[1] == "Upsell 1 Declined"
        gateway.charge_off_session.assert_not_called()

    @pytest.mark.asyncio
    async def test_accept_charges_and_grants(self, service, gateway, purchases, klaviyo, shopify, session):
        gateway.charge_off_session.return_value = SimpleNamespace(id="pi_up", status="succeeded")

        result = await service.process_upsell("cs_1", "upsell-1", "accept")

        assert result == {"success": True, "action": "accept", "paymentIntentId": "pi_up"}
        charge = gateway.charge_off_session.call_args.kwargs
        assert charge["customer_id"] == "cus_1"
        assert charge["payment_method_id"] == "pm_1"
        assert charge["amount"] == 9700
        grant = purchases.grant_product_access.call_args.kwargs
        assert grant["product_slug"] == "pathless-path"
        assert grant["stripe_checkout_session_id"] == "cs_1"
        assert klaviyo.track_event.call_args.args[1] == "Upsell 1 Accepted"
        assert shopify.create_order.call_args.kwargs["tags"] == ["upsell-1", "funnel-upsell"]

    @pytest.mark.asyncio
    async def test_stripe_calls_leave_event_loop_thread(self, service, gateway, session):
        loop_thread = threading.get_ident()
        stripe_threads = []

        def charge(**kwargs):
            stripe_threads.append(threading.get_ident())
            return SimpleNamespace(id="pi_up", status="succeeded")

        checkout_session = gateway.retrieve_checkout_session.return_value
        gateway.retrieve_checkout_session.side_effect = lambda *args, **kwargs: (
            stripe_threads.append(threading.get_ident()) or checkout_session
        )
        gateway.charge_off_session.side_effect = charge

        await service.process_upsell("cs_1", "upsell-1", "accept")

        assert len(stripe_threads) == 2
        assert loop_thread not in stripe_threads

    @pytest.mark.asyncio
    async def test_accept_from_payment_intent(self, service, gateway):
        gateway.retrieve_payment_intent.return_value = SimpleNamespace(
            customer=SimpleNamespace(id="cus_1", email="jane@example.com", name="Jane"),
            payment_method="pm_1",
            metadata={"customerEmail": "jane@example.com"},
            receipt_email=None,
            currency="aud",
        )
        gateway.charge_off_session.return_value = SimpleNamespace(id="pi_up", status="succeeded")

        result = await service.process_upsell("pi_123", "upsell-2", "accept")

        assert result["paymentIntentId"] == "pi_up"
        assert gateway.retrieve_payment_intent.call_args.args[0] == "pi_123"
        assert gateway.charge_off_session.call_args.kwargs["amount"] == 1495

    @pytest.mark.asyncio
    async def test_missing_payment_method(self, service, gateway):
        gateway.retrieve_checkout_session.return_value = SimpleNamespace(
            customer=None,
            customer_details=SimpleNamespace(email="jane@example.com", name=None),
            payment_intent=None,
            currency="aud",
        )
        with pytest.raises(ValidationFailedError):
            await service.process_upsell("cs_1", "upsell-1", "accept")

    @pytest.mark.asyncio
    async def test_card_error(self, service, gateway, session):
        gateway.charge_off_session.side_effect = StripeGatewayError(
            "Your card was declined.", code="card_declined", is_card_error=True
        )
        with pytest.raises(PaymentFailedError, match="Your card was declined."):
            await service.process_upsell("cs_1", "upsell-1", "accept")

    @pytest.mark.asyncio
    async def test_unsuccessful_charge(self, service, gateway, purchases, session):
        gateway.charge_off_session.return_value = SimpleNamespace(id="pi_up", status="requires_action")
        with pytest.raises(PaymentFailedError, match="Payment failed"):
            await service.process_upsell("cs_1", "upsell-1", "accept")
        purchases.grant_product_access.assert_not_called()


class TestWebhook:
    """Test webhook verification and fulfilment."""

    @pytest.mark.asyncio
    async def test_missing_signature(self, service):
        with pytest.raises(ValidationFailedError, match="No signature"):
            await service.handle_webhook(b"{}", None)

    @pytest.mark.asyncio
    async def test_invalid_signature(self, service, gateway):
        gateway.construct_webhook_event.side_effect = StripeGatewayError("bad")
        with pytest.raises(ValidationFailedError, match="Invalid signature"):
            await service.handle_webhook(b"{}", "sig")

    @pytest.mark.asyncio
    async def test_checkout_completed(self, service, gateway, purchases, klaviyo, shopify):
        gateway.construct_webhook_event.return_value = {
            "id": "evt_1",
            "type": "checkout.session.completed",
            "data": {"object": {
                "id": "cs_1",
                "customer": "cus_1",
                "payment_intent": "pi_1",
                "customer_details": {"email": "jane@example.com", "name": "Jane Doe"},
                "metadata": {"includeOrderBump": "true"},
                "amount_total": 3400,
                "currency": "aud",
            }},
        }

        assert await service.handle_webhook(b"{}", "sig") == {"received": True}

        slugs = [call.kwargs["product_slug"] for call in purchases.grant_product_access.call_args_list]
        assert slugs == ["resistance-mapping-guide", "golden-thread-technique"]
        assert klaviyo.track_event.call_args.args[1] == "Order Completed"
        assert klaviyo.track_event.call_args.args[3] == 34.0
        order = shopify.create_order.call_args
        assert [item.price for item in order.args[3]] == ["7.00", "17.00"]
        assert order.kwargs["tags"] == ["resistance-map", "funnel-order"]

    @pytest.mark.asyncio
    async def test_portal_payment_intent_ignored(self, service, gateway, purchases):
        gateway.construct_webhook_event.return_value = {
            "id": "evt_2",
            "type": "payment_intent.succeeded",
            "data": {"object": {"id": "pi_2", "metadata": {"source": "portal"}}},
        }

        await service.handle_webhook(b"{}", "sig")
        purchases.grant_product_access.assert_not_called()

    @pytest.mark.asyncio
    async def test_funnel_payment_intent_granted(self, service, gateway, purchases):
        gateway.construct_webhook_event.return_value = {
            "id": "evt_3",
            "type": "payment_intent.succeeded",
            "data": {"object": {
                "id": "pi_3",
                "customer": "cus_1",
                "receipt_email": "jane@example.com",
                "metadata": {"source": "funnel", "includeOrderBump": "false"},
                "currency": "aud",
            }},
        }

        await service.handle_webhook(b"{}", "sig")

        grant = purchases.grant_product_access.call_args.kwargs
        assert purchases.grant_product_access.await_count == 1
        assert grant["stripe_payment_intent_id"] == "pi_3"
        assert grant["source"] == PurchaseSource.FUNNEL


class TestPortalPurchase:
    """Test in-portal purchases."""

    @pytest.fixture
    def user(self):
        return AuthenticatedUser(id="user-1", email="jane@example.com")

    @pytest.mark.asyncio
    async def test_requires_slug(self, service, user):
        with pytest.raises(ValidationFailedError, match="productSlug is required"):
            await service.create_portal_payment_intent(user, None)

    @pytest.mark.asyncio
    async def test_unknown_product(self, service, products, user):
        products.get_by_slug.return_value = None
        with pytest.raises(NotFoundError, match="Product not found"):
            await service.create_portal_payment_intent(user, "missing")

    @pytest.mark.asyncio
    async def test_unpriced_product(self, service, products, user):
        products.get_by_slug.return_value = Product(id="p", slug="free", name="Free", price_cents=0)
        with pytest.raises(ValidationFailedError, match="price is not configured"):
            await service.create_portal_payment_intent(user, "free")

    @pytest.mark.asyncio
    async def test_creates_intent_with_portal_price(self, service, gateway, profiles, user):
        result = await service.create_portal_payment_intent(user, "pathless-path")

        assert result["amount"] == 4700
        assert result["productName"] == "The Pathless Path"
        gateway.find_or_create_customer.assert_called_once_with("jane@example.com", "Jane Doe")
        profiles.set_stripe_customer_id.assert_awaited_once_with("user-1", "cus_1")
        metadata = gateway.create_payment_intent.call_args.kwargs["metadata"]
        assert metadata["source"] == "portal"
        assert metadata["product_slug"] == "pathless-path"
        assert metadata["user_id"] == "user-1"

    @pytest.mark.asyncio
    async def test_confirm_requires_succeeded(self, service, gateway):
        gateway.retrieve_payment_intent.return_value = SimpleNamespace(status="processing", metadata={})
        with pytest.raises(ValidationFailedError, match="Payment not completed"):
            await service.confirm_portal_purchase("pi_1")

    @pytest.mark.asyncio
    async def test_confirm_requires_metadata(self, service, gateway):
        gateway.retrieve_payment_intent.return_value = SimpleNamespace(status="succeeded", metadata={})
        with pytest.raises(ValidationFailedError, match="Invalid payment metadata"):
            await service.confirm_portal_purchase("pi_1")

    @pytest.mark.asyncio
    async def test_confirm_grants_access(self, service, gateway, purchases):
        gateway.retrieve_payment_intent.return_value = SimpleNamespace(
            status="succeeded",
            customer="cus_1",
            amount=4700,
            currency="aud",
            metadata={
                "product_slug": "pathless-path",
                "product_name": "The Pathless Path",
                "customer_email": "jane@example.com",
            },
        )
        gateway.retrieve_customer.return_value = SimpleNamespace(name="Jane Doe", deleted=False)

        result = await service.confirm_portal_purchase("pi_1")

        assert result == {
            "success": True,
            "message": "Access granted to The Pathless Path",
            "productSlug": "pathless-path",
        }
        grant = purchases.grant_product_access.call_args.kwargs
        assert grant["source"] == PurchaseSource.PORTAL
        assert grant["full_name"] == "Jane Doe"

    @pytest.mark.asyncio
    async def test_confirm_not_granted(self, service, gateway, purchases):
        gateway.retrieve_payment_intent.return_value = SimpleNamespace(
            status="succeeded",
            customer=None,
            amount=4700,
            currency="aud",
            metadata={"product_slug": "gone", "customer_email": "jane@example.com"},
        )
        purchases.grant_product_access.return_value = GrantResult(user_id="user-1", granted=False)

        with pytest.raises(ProvisioningError):
            await service.confirm_portal_purchase("pi_1")
