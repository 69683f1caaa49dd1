"""
Stripe payment gateway.

Wraps the Stripe SDK calls used by the funnel checkout, one-click upsells
and portal purchases, translating SDK errors into ``StripeGatewayError``.
"""

import logging
from typing import Any, Dict, List, Optional

import stripe

from ..config import get_config
from .errors import StripeGatewayError

logger = logging.getLogger(__name__)


class StripeGateway:
    """Thin wrapper over the Stripe API with the funnel's defaults."""

    def __init__(self):
        self.config = get_config()
        self.api_key = self.config.stripe.secret_key

    def _call(self, description: str, func, *args, **kwargs) -> Any:
        try:
            return func(*args, api_key=self.api_key, **kwargs)
        except stripe.CardError as e:
            logger.warning(f"Stripe card error during {description}: {e.user_message or e}")
            raise StripeGatewayError(
                e.user_message or str(e), code=e.code, is_card_error=True, status=e.http_status
            )
        except stripe.StripeError as e:
            logger.error(f"Stripe error during {description}: {e}")
            raise StripeGatewayError(
                e.user_message or str(e), code=e.code, status=e.http_status
            )

    def find_or_create_customer(self, email: str, name: Optional[str] = None) -> str:
        """Return the id of the customer with this email, creating one if needed."""
        email = email.strip().lower()
        existing = self._call("customer lookup", stripe.Customer.list, email=email, limit=1)
        if existing.data:
            customer = existing.data[0]
            if name and customer.name != name:
                self._call("customer update", stripe.Customer.modify, customer.id, name=name)
            return customer.id

        params: Dict[str, Any] = {"email": email}
        if name:
            params["name"] = name
        customer = self._call("customer creation", stripe.Customer.create, **params)
        logger.info(f"Created Stripe customer {customer.id}")
        return customer.id

    def retrieve_customer(self, customer_id: str) -> Any:
        return self._call("customer retrieval", stripe.Customer.retrieve, customer_id)

    def create_checkout_session(
        self,
        line_items: List[Dict[str, Any]],
        success_url: str,
        cancel_url: str,
        metadata: Dict[str, str],
        customer_email: Optional[str] = None,
    ) -> Any:
        params: Dict[str, Any] = {
            "mode": "payment",
            "line_items": line_items,
            "success_url": success_url,
            "cancel_url": cancel_url,
            "customer_creation": "always",
            "payment_intent_data": {"setup_future_usage": "off_session", "metadata": metadata},
            "metadata": metadata,
        }
        if customer_email:
            params["customer_email"] = customer_email
        return self._call("checkout session creation", stripe.checkout.Session.create, **params)

    def retrieve_checkout_session(self, session_id: str, expand: Optional[List[str]] = None) -> Any:
        return self._call(
            "checkout session retrieval", stripe.checkout.Session.retrieve, session_id, expand=expand or []
        )

    def create_payment_intent(
        self,
        amount: int,
        metadata: Dict[str, str],
        customer_id: Optional[str] = None,
        currency: Optional[str] = None,
        description: Optional[str] = None,
        save_payment_method: bool = True,
        receipt_email: Optional[str] = None,
    ) -> Any:
        params: Dict[str, Any] = {
            "amount": amount,
            "currency": currency or self.config.stripe.currency,
            "automatic_payment_methods": {"enabled": True},
            "metadata": metadata,
        }
        if customer_id:
            params["customer"] = customer_id
        if save_payment_method:
            params["setup_future_usage"] = "off_session"
        if description:
            params["description"] = description
        if receipt_email:
            params["receipt_email"] = receipt_email
        return self._call("payment intent creation", stripe.PaymentIntent.create, **params)

    def update_payment_intent(self, payment_intent_id: str, **params: Any) -> Any:
        return self._call("payment intent update", stripe.PaymentIntent.modify, payment_intent_id, **params)

    def retrieve_payment_intent(self, payment_intent_id: str, expand: Optional[List[str]] = None) -> Any:
        return self._call(
            "payment intent retrieval", stripe.PaymentIntent.retrieve, payment_intent_id, expand=expand or []
        )

    def charge_off_session(
        self,
        customer_id: str,
        payment_method_id: str,
        amount: int,
        currency: str,
        metadata: Dict[str, str],
        description: str,
    ) -> Any:
        """Confirm a one-click charge against a saved payment method."""
        return self._call(
            "off-session charge",
            stripe.PaymentIntent.create,
            amount=amount,
            currency=currency,
            customer=customer_id,
            payment_method=payment_method_id,
            off_session=True,
            confirm=True,
            description=description,
            metadata=metadata,
        )

    def construct_webhook_event(self, payload: bytes, signature: str) -> Any:
        """
        Verify a webhook signature and parse the event.

        Raises:
            StripeGatewayError: If the signature or payload is invalid
        """
        try:
            return stripe.Webhook.construct_event(payload, signature, self.config.stripe.webhook_secret)
        except stripe.SignatureVerificationError as e:
            logger.warning(f"Webhook signature verification failed: {e}")
            raise StripeGatewayError("Invalid signature", code="invalid_signature")
        except ValueError as e:
            logger.warning(f"Webhook payload could not be parsed: {e}")
            raise StripeGatewayError("Invalid payload", code="invalid_payload")


# Global gateway instance
stripe_gateway: Optional[StripeGateway] = None


def get_stripe_gateway() -> StripeGateway:
    global stripe_gateway
    if stripe_gateway is None:
        stripe_gateway = StripeGateway()
    return stripe_gateway
