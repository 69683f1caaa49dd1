"""
Funnel and portal checkout.

Covers the hosted Stripe Checkout flow, the embedded Payment Element flow,
one-click post-purchase upsells, webhook fulfilment and portal purchases.
Marketing syncs (Klaviyo, Shopify) run after access is granted and never
fail the payment flow.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from ..config import AppConfig, UpsellOffer, get_config
from ..integrations.errors import StripeGatewayError
from ..integrations.klaviyo_client import FunnelEvents, KlaviyoClient, get_klaviyo_client
from ..integrations.shopify_client import ShopifyClient, ShopifyLineItem, get_shopify_client
from ..integrations.stripe_gateway import StripeGateway, get_stripe_gateway
from ..repositories.catalog_repository import ProductRepository
from ..repositories.profile_repository import ProfileRepository
from ..schemas.database_models import PurchaseSource
from ..utils.auth import AuthenticatedUser
from ..utils.job_logger import run_non_critical
from .errors import (
    NotFoundError,
    PaymentFailedError,
    ProvisioningError,
    ValidationFailedError,
)
from .purchase_service import PurchaseService, split_full_name

logger = logging.getLogger(__name__)

UPSELL_ACTIONS = ("accept", "decline")


def stripe_field(obj: Any, name: str, default: Any = None) -> Any:
    """Read a field from a Stripe object or plain mapping."""
    if obj is None:
        return default
    if isinstance(obj, dict):
        return obj.get(name, default)
    value = getattr(obj, name, default)
    return default if value is None else value


def stripe_id(obj: Any) -> Optional[str]:
    """Id of an expandable field, whether expanded or not."""
    if obj is None or isinstance(obj, str):
        return obj
    return stripe_field(obj, "id")


def dollars(cents: int) -> str:
    return f"{cents / 100:.2f}"


class CheckoutService:
    """Payment flows for the sales funnel and the member portal."""

    def __init__(
        self,
        gateway: Optional[StripeGateway] = None,
        purchases: Optional[PurchaseService] = None,
        products: Optional[ProductRepository] = None,
        profiles: Optional[ProfileRepository] = None,
        klaviyo: Optional[KlaviyoClient] = None,
        shopify: Optional[ShopifyClient] = None,
        config: Optional[AppConfig] = None,
    ):
        self.config = config or get_config()
        self.gateway = gateway or get_stripe_gateway()
        self.purchases = purchases or PurchaseService()
        self.products = products or ProductRepository()
        self.profiles = profiles or ProfileRepository()
        self.klaviyo = klaviyo or get_klaviyo_client()
        self.shopify = shopify or get_shopify_client()

    # Funnel pricing
    def funnel_amount(self, include_order_bump: bool) -> int:
        funnel = self.config.funnel
        amount = funnel.main_price_cents
        if include_order_bump:
            amount += funnel.order_bump_price_cents
        return amount

    def _funnel_metadata(
        self, include_order_bump: bool, email: Optional[str] = None, name: Optional[str] = None
    ) -> Dict[str, str]:
        metadata = {
            "source": PurchaseSource.FUNNEL.value,
            "product": self.config.funnel.main_product_slug,
            "includeOrderBump": "true" if include_order_bump else "false",
        }
        if email:
            metadata["customerEmail"] = email
        if name:
            metadata["customerName"] = name
        return metadata

    def _line_item(self, price_id: Optional[str], name: str, amount_cents: int) -> Dict[str, Any]:
        if price_id:
            return {"price": price_id, "quantity": 1}
        return {
            "price_data": {
                "currency": self.config.stripe.currency,
                "unit_amount": amount_cents,
                "product_data": {"name": name},
            },
            "quantity": 1,
        }

    def create_checkout_session(self, include_order_bump: bool, email: Optional[str] = None) -> Dict[str, Any]:
        """Hosted Stripe Checkout for the main offer, optionally with the order bump."""
        funnel = self.config.funnel
        stripe_config = self.config.stripe
        line_items = [
            self._line_item(stripe_config.main_price_id, funnel.main_product_name, funnel.main_price_cents)
        ]
        if include_order_bump:
            line_items.append(self._line_item(
                stripe_config.order_bump_price_id, funnel.order_bump_product_name, funnel.order_bump_price_cents
            ))

        base_url = self.config.site.base_url
        session = self.gateway.create_checkout_session(
            line_items=line_items,
            success_url=f"{base_url}/upsell-1?session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=f"{base_url}/checkout",
            metadata={
                "product": funnel.main_product_slug,
                "includeOrderBump": "true" if include_order_bump else "false",
            },
            customer_email=email.strip().lower() if email else None,
        )
        logger.info(f"Created checkout session {session.id} (order bump: {include_order_bump})")
        return {"sessionId": session.id, "url": session.url}

    def create_payment_intent(
        self, include_order_bump: bool, email: Optional[str] = None, name: Optional[str] = None
    ) -> Dict[str, Any]:
        """PaymentIntent for the embedded checkout form."""
        amount = self.funnel_amount(include_order_bump)
        customer_id = self.gateway.find_or_create_customer(email, name) if email else None

        intent = self.gateway.create_payment_intent(
            amount=amount,
            metadata=self._funnel_metadata(include_order_bump, email, name),
            customer_id=customer_id,
            description=self.config.funnel.main_product_name,
        )
        return {"clientSecret": intent.client_secret, "paymentIntentId": intent.id, "amount": amount}

    def update_payment_intent(
        self,
        payment_intent_id: Optional[str],
        include_order_bump: bool,
        email: Optional[str] = None,
        name: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Re-price an open PaymentIntent when the order bump or buyer details change."""
        if not payment_intent_id:
            raise ValidationFailedError("paymentIntentId is required")

        amount = self.funnel_amount(include_order_bump)
        params: Dict[str, Any] = {
            "amount": amount,
            "metadata": self._funnel_metadata(include_order_bump, email, name),
        }
        try:
            if email:
                params["customer"] = self.gateway.find_or_create_customer(email, name)
                params["receipt_email"] = email.strip().lower()
            intent = self.gateway.update_payment_intent(payment_intent_id, **params)
        except StripeGatewayError as e:
            if e.code == "resource_missing":
                raise ValidationFailedError("Payment session expired. Please refresh the page.")
            if e.code == "email_invalid":
                raise ValidationFailedError("Please enter a valid email address.")
            raise ValidationFailedError(str(e))

        return {"success": True, "amount": intent.amount, "customerId": params.get("customer")}

    def get_session_email(self, session_id: Optional[str]) -> Dict[str, str]:
        if not session_id:
            raise ValidationFailedError("Session ID required")
        session = self.gateway.retrieve_checkout_session(session_id)
        details = stripe_field(session, "customer_details")
        email = stripe_field(details, "email")
        if not email:
            raise NotFoundError("No email found")
        return {"email": email, "name": stripe_field(details, "name", "")}

    # Upsells
    def get_offer(self, upsell_type: Optional[str]) -> UpsellOffer:
        offer = self.config.funnel.upsell_offers.get(upsell_type or "")
        if not offer:
            raise ValidationFailedError("Invalid upsell type")
        return offer

    def _load_buyer(self, session_id: str) -> Dict[str, Any]:
        """
        Customer, saved payment method and contact details behind a funnel purchase.

        The id is either a Checkout Session or, for the embedded form, a
        PaymentIntent (``pi_...``).
        """
        if session_id.startswith("pi_"):
            intent = self.gateway.retrieve_payment_intent(session_id, expand=["customer", "payment_method"])
            customer = stripe_field(intent, "customer")
            metadata = stripe_field(intent, "metadata")
            return {
                "customer_id": stripe_id(customer),
                "payment_method_id": stripe_id(stripe_field(intent, "payment_method")),
                "email": stripe_field(intent, "receipt_email")
                or stripe_field(metadata, "customerEmail")
                or stripe_field(customer, "email"),
                "name": stripe_field(metadata, "customerName") or stripe_field(customer, "name"),
                "currency": stripe_field(intent, "currency"),
            }

        session = self.gateway.retrieve_checkout_session(
            session_id, expand=["customer", "payment_intent.payment_method"]
        )
        details = stripe_field(session, "customer_details")
        intent = stripe_field(session, "payment_intent")
        return {
            "customer_id": stripe_id(stripe_field(session, "customer")),
            "payment_method_id": stripe_id(stripe_field(intent, "payment_method")),
            "email": stripe_field(details, "email"),
            "name": stripe_field(details, "name"),
            "currency": stripe_field(session, "currency"),
        }

    async def process_upsell(
        self, session_id: Optional[str], upsell_type: Optional[str], action: Optional[str]
    ) -> Dict[str, Any]:
        """
        Accept (one-click charge) or decline a post-purchase offer.

        Raises:
            ValidationFailedError: Unknown offer, action or missing saved card
            PaymentFailedError: The off-session charge did not succeed
        """
        offer = self.get_offer(upsell_type)
        if not session_id:
            raise ValidationFailedError("sessionId is required")
        if action not in UPSELL_ACTIONS:
            raise ValidationFailedError("Invalid action")

        buyer = await asyncio.to_thread(self._load_buyer, session_id)
        email = buyer["email"] or ""

        if action == "decline":
            if email:
                await self._track_klaviyo_event(email, f"{offer.label} Declined", {"product": offer.product_name})
            logger.info(f"{upsell_type} declined for session {session_id}")
            return {"success": True, "action": "decline"}

        if not buyer["customer_id"] or not buyer["payment_method_id"]:
            raise ValidationFailedError("No saved payment method found for this purchase")

        try:
            intent = await asyncio.to_thread(
                self.gateway.charge_off_session,
                customer_id=buyer["customer_id"],
                payment_method_id=buyer["payment_method_id"],
                amount=offer.price_cents,
                currency=buyer["currency"] or self.config.stripe.currency,
                metadata={"upsellType": upsell_type, "originalSessionId": session_id},
                description=offer.product_name,
            )
        except StripeGatewayError as e:
            if e.is_card_error:
                raise PaymentFailedError(str(e))
            raise

        if intent.status != "succeeded":
            logger.warning(f"Upsell charge {intent.id} ended in status {intent.status}")
            raise PaymentFailedError("Payment failed")

        logger.info(f"{upsell_type} accepted for session {session_id} (payment {intent.id})")

        if email:
            await run_non_critical(
                self.purchases.grant_product_access(
                    email=email,
                    product_slug=offer.product_slug,
                    stripe_customer_id=buyer["customer_id"],
                    stripe_payment_intent_id=intent.id,
                    stripe_checkout_session_id=None if session_id.startswith("pi_") else session_id,
                    amount_cents=offer.price_cents,
                    currency=buyer["currency"] or self.config.stripe.currency,
                    full_name=buyer["name"],
                ),
                f"Upsell access grant for {email}",
            )
            await self._track_klaviyo_event(
                email,
                f"{offer.label} Accepted",
                {"product": offer.product_name, "value": offer.price_cents / 100},
                value=offer.price_cents / 100,
            )
            first_name, last_name = split_full_name(buyer["name"])
            await self._create_shopify_order(
                email,
                first_name or "",
                last_name or "",
                [ShopifyLineItem(title=offer.product_name, price=dollars(offer.price_cents))],
                tags=[upsell_type, "funnel-upsell"],
            )

        return {"success": True, "action": "accept", "paymentIntentId": intent.id}

    # Webhook fulfilment
    async def handle_webhook(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """
        Verify and dispatch a Stripe webhook event.

        Raises:
            ValidationFailedError: Missing or invalid signature
        """
        if not signature:
            raise ValidationFailedError("No signature")
        try:
            event = await asyncio.to_thread(self.gateway.construct_webhook_event, payload, signature)
        except StripeGatewayError:
            raise ValidationFailedError("Invalid signature")

        event_type = stripe_field(event, "type")
        obj = stripe_field(stripe_field(event, "data"), "object")
        logger.info(f"Received Stripe webhook {stripe_field(event, 'id')} ({event_type})")

        if event_type == "checkout.session.completed":
            await self._handle_checkout_completed(obj)
        elif event_type == "payment_intent.succeeded":
            await self._handle_payment_intent_succeeded(obj)
        else:
            logger.debug(f"Ignoring Stripe event type {event_type}")

        return {"received": True}

    async def _grant_funnel_products(
        self,
        email: str,
        include_order_bump: bool,
        customer_id: Optional[str],
        full_name: Optional[str],
        payment_intent_id: Optional[str] = None,
        session_id: Optional[str] = None,
        currency: Optional[str] = None,
    ) -> None:
        funnel = self.config.funnel
        grants = [(funnel.main_product_slug, funnel.main_price_cents)]
        if include_order_bump:
            grants.append((funnel.order_bump_product_slug, funnel.order_bump_price_cents))

        for slug, amount in grants:
            await self.purchases.grant_product_access(
                email=email,
                product_slug=slug,
                stripe_customer_id=customer_id,
                stripe_payment_intent_id=payment_intent_id,
                stripe_checkout_session_id=session_id,
                amount_cents=amount,
                currency=currency,
                source=PurchaseSource.FUNNEL,
                full_name=full_name,
            )

    async def _handle_checkout_completed(self, session: Any) -> None:
        details = stripe_field(session, "customer_details")
        email = stripe_field(details, "email")
        if not email:
            logger.warning(f"Checkout session {stripe_field(session, 'id')} completed without an email")
            return

        name = stripe_field(details, "name", "")
        include_order_bump = stripe_field(stripe_field(session, "metadata"), "includeOrderBump") == "true"
        amount_total = stripe_field(session, "amount_total", 0) or 0

        await self._grant_funnel_products(
            email,
            include_order_bump,
            customer_id=stripe_id(stripe_field(session, "customer")),
            full_name=name or None,
            payment_intent_id=stripe_id(stripe_field(session, "payment_intent")),
            session_id=stripe_field(session, "id"),
            currency=stripe_field(session, "currency"),
        )
        await self._sync_order_marketing(
            email, name, stripe_field(session, "id"), include_order_bump, amount_total
        )

    async def _handle_payment_intent_succeeded(self, intent: Any) -> None:
        metadata = stripe_field(intent, "metadata")
        if stripe_field(metadata, "source") != PurchaseSource.FUNNEL.value:
            # Portal purchases are fulfilled by confirm-purchase
            logger.debug(f"Payment intent {stripe_field(intent, 'id')} is not a funnel purchase")
            return

        email = stripe_field(intent, "receipt_email") or stripe_field(metadata, "customerEmail")
        if not email:
            logger.warning(f"Funnel payment {stripe_field(intent, 'id')} has no customer email")
            return

        await self._grant_funnel_products(
            email,
            stripe_field(metadata, "includeOrderBump") == "true",
            customer_id=stripe_id(stripe_field(intent, "customer")),
            full_name=stripe_field(metadata, "customerName"),
            payment_intent_id=stripe_field(intent, "id"),
            currency=stripe_field(intent, "currency"),
        )

    async def _sync_order_marketing(
        self, email: str, name: str, order_id: str, include_order_bump: bool, amount_total: int
    ) -> None:
        funnel = self.config.funnel
        first_name, last_name = split_full_name(name)

        if self.klaviyo.enabled:
            profile_id = await run_non_critical(
                self.klaviyo.upsert_profile(
                    email,
                    first_name,
                    last_name,
                    properties={
                        "purchased_resistance_map": True,
                        "purchase_date": datetime.now(timezone.utc).isoformat(),
                    },
                ),
                f"Klaviyo profile upsert for {email}",
            )
            for list_id in (self.config.klaviyo.customers_list_id, self.config.klaviyo.resistance_map_list_id):
                if list_id:
                    await run_non_critical(
                        self.klaviyo.add_profile_to_list(list_id, email, profile_id),
                        f"Klaviyo list {list_id} add for {email}",
                    )
            items = [funnel.main_product_name]
            if include_order_bump:
                items.append(funnel.order_bump_product_name)
            await self._track_klaviyo_event(
                email,
                FunnelEvents.ORDER_COMPLETED,
                {"product": funnel.main_product_name, "order_id": order_id,
                 "include_order_bump": include_order_bump, "items": items},
                value=amount_total / 100,
            )

        if self.shopify.enabled:
            await run_non_critical(
                self.shopify.find_or_create_customer(
                    email, first_name or "", last_name or "", tags=["resistance-map-buyer", "funnel-customer"]
                ),
                f"Shopify customer sync for {email}",
            )
            line_items = [ShopifyLineItem(title=funnel.main_product_name, price=funnel.main_shopify_price)]
            if include_order_bump:
                line_items.append(
                    ShopifyLineItem(title=funnel.order_bump_product_name, price=funnel.order_bump_shopify_price)
                )
            await self._create_shopify_order(
                email, first_name or "", last_name or "", line_items, tags=["resistance-map", "funnel-order"]
            )

    async def _track_klaviyo_event(
        self, email: str, event_name: str, properties: Dict[str, Any], value: Optional[float] = None
    ) -> None:
        if not self.klaviyo.enabled:
            return
        await run_non_critical(
            self.klaviyo.track_event(email, event_name, properties, value),
            f"Klaviyo event '{event_name}' for {email}",
        )

    async def _create_shopify_order(
        self, email: str, first_name: str, last_name: str, line_items: List[ShopifyLineItem], tags: List[str]
    ) -> None:
        if not self.shopify.enabled:
            return
        await run_non_critical(
            self.shopify.create_order(email, first_name, last_name, line_items, tags=tags),
            f"Shopify order for {email}",
        )

    # Portal purchases
    async def create_portal_payment_intent(
        self, user: AuthenticatedUser, product_slug: Optional[str], full_name: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        PaymentIntent for buying a product from inside the portal.

        Raises:
            ValidationFailedError: Missing slug or unpriced product
            NotFoundError: No active product with this slug
        """
        if not product_slug:
            raise ValidationFailedError("productSlug is required")

        product = await self.products.get_by_slug(product_slug, active_only=True)
        if not product:
            raise NotFoundError("Product not found")

        price_cents = product.portal_price
        if price_cents <= 0:
            raise ValidationFailedError("Product price is not configured")

        profile = await self.profiles.get_by_id(user.id)
        email = ((profile.email if profile else None) or user.email or "").strip().lower()
        if not email:
            raise ValidationFailedError("An email address is required to purchase")
        full_name = full_name or (profile.full_name if profile else None)

        customer_id = await asyncio.to_thread(self.gateway.find_or_create_customer, email, full_name)
        if profile and profile.stripe_customer_id != customer_id:
            await self.profiles.set_stripe_customer_id(user.id, customer_id)

        intent = await asyncio.to_thread(
            self.gateway.create_payment_intent,
            amount=price_cents,
            customer_id=customer_id,
            description=product.name,
            metadata={
                "source": PurchaseSource.PORTAL.value,
                "product_slug": product.slug,
                "product_name": product.name,
                "product_id": product.id,
                "customer_email": email,
                "user_id": user.id,
            },
        )
        logger.info(f"Created portal payment intent {intent.id} for {product.slug}")
        return {
            "clientSecret": intent.client_secret,
            "paymentIntentId": intent.id,
            "customerId": customer_id,
            "amount": price_cents,
            "productName": product.name,
        }

    async def confirm_portal_purchase(self, payment_intent_id: Optional[str]) -> Dict[str, Any]:
        """
        Grant access once a portal PaymentIntent has succeeded.

        Raises:
            ValidationFailedError: Missing id, unpaid intent or bad metadata
            ProvisioningError: Access could not be granted
        """
        if not payment_intent_id:
            raise ValidationFailedError("Payment intent ID is required")

        intent = await asyncio.to_thread(self.gateway.retrieve_payment_intent, payment_intent_id)
        if intent.status != "succeeded":
            raise ValidationFailedError("Payment not completed", details={"status": intent.status})

        metadata = stripe_field(intent, "metadata")
        product_slug = stripe_field(metadata, "product_slug")
        customer_email = stripe_field(metadata, "customer_email")
        if not product_slug or not customer_email:
            raise ValidationFailedError("Invalid payment metadata")

        customer_id = stripe_id(stripe_field(intent, "customer"))
        full_name = None
        if customer_id:
            customer = await asyncio.to_thread(self.gateway.retrieve_customer, customer_id)
            if not stripe_field(customer, "deleted", False):
                full_name = stripe_field(customer, "name")

        result = await self.purchases.grant_product_access(
            email=customer_email,
            product_slug=product_slug,
            stripe_customer_id=customer_id,
            stripe_payment_intent_id=payment_intent_id,
            amount_cents=stripe_field(intent, "amount"),
            currency=stripe_field(intent, "currency"),
            source=PurchaseSource.PORTAL,
            full_name=full_name,
        )
        if not result.granted:
            logger.error(f"Failed to grant access to {product_slug} for {customer_email}")
            raise ProvisioningError("Failed to grant product access")

        product_name = stripe_field(metadata, "product_name", product_slug)
        return {"success": True, "message": f"Access granted to {product_name}", "productSlug": product_slug}
