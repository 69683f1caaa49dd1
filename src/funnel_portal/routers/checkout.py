"""
Sales funnel payment endpoints: checkout, embedded payment form, one-click
upsells and the Stripe webhook.
"""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from pydantic import BaseModel, ConfigDict, Field

from ..integrations.errors import StripeGatewayError
from ..services import CheckoutService, ServiceError
from .dependencies import get_checkout_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["Checkout"])


class CheckoutRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    include_order_bump: bool = Field(False, alias="includeOrderBump")
    email: Optional[str] = None


class PaymentIntentRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    include_order_bump: bool = Field(False, alias="includeOrderBump")
    email: Optional[str] = None
    name: Optional[str] = None


class UpdatePaymentIntentRequest(PaymentIntentRequest):
    payment_intent_id: Optional[str] = Field(None, alias="paymentIntentId")


class UpsellRequest(BaseModel):
    """Accept or decline a post-purchase offer."""
    model_config = ConfigDict(populate_by_name=True)

    session_id: Optional[str] = Field(None, alias="sessionId")
    upsell_type: Optional[str] = Field(None, alias="upsellType")
    action: Optional[str] = None


def _stripe_failure(message: str, error: StripeGatewayError) -> HTTPException:
    logger.error(f"{message}: {error}")
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail={"error": message, "error_code": "STRIPE_ERROR", "details": {"message": str(error)}}
    )


@router.post("/checkout", response_model=Dict[str, Any])
def create_checkout(
    request: CheckoutRequest,
    checkout: CheckoutService = Depends(get_checkout_service),
):
    """Hosted Stripe Checkout Session for the main offer."""
    try:
        return checkout.create_checkout_session(request.include_order_bump, request.email)
    except StripeGatewayError as e:
        raise _stripe_failure("Failed to create checkout session", e)


@router.post("/create-payment-intent", response_model=Dict[str, Any])
def create_payment_intent(
    request: PaymentIntentRequest,
    checkout: CheckoutService = Depends(get_checkout_service),
):
    try:
        return checkout.create_payment_intent(request.include_order_bump, request.email, request.name)
    except StripeGatewayError as e:
        raise _stripe_failure("Failed to create payment intent", e)


@router.post("/update-payment-intent", response_model=Dict[str, Any])
def update_payment_intent(
    request: UpdatePaymentIntentRequest,
    checkout: CheckoutService = Depends(get_checkout_service),
):
    return checkout.update_payment_intent(
        request.payment_intent_id,
        request.include_order_bump,
        request.email,
        request.name,
    )


@router.post("/upsell", response_model=Dict[str, Any])
async def process_upsell(
    request: UpsellRequest,
    checkout: CheckoutService = Depends(get_checkout_service),
):
    """One-click charge of the saved card, or record a decline."""
    try:
        return await checkout.process_upsell(request.session_id, request.upsell_type, request.action)
    except StripeGatewayError as e:
        raise _stripe_failure("Failed to process upsell", e)


@router.post("/webhook", response_model=Dict[str, Any])
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="stripe-signature"),
    checkout: CheckoutService = Depends(get_checkout_service),
):
    """
    Stripe webhook receiver.

    The raw body is passed through untouched for signature verification.
    """
    payload = await request.body()
    try:
        return await checkout.handle_webhook(payload, stripe_signature)
    except ServiceError:
        raise
    except Exception as e:
        logger.error(f"Webhook processing failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook processing failed"
        )
