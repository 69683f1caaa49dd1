"""
Account endpoints: registration, claiming a purchase account and the
checkout session lookup used by the claim form.
"""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field

from ..services import AccountService, CheckoutService
from .dependencies import get_account_service, get_checkout_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["Auth"])


class RegisterRequest(BaseModel):
    """Portal sign-up form."""
    model_config = ConfigDict(populate_by_name=True)

    email: Optional[str] = None
    password: Optional[str] = None
    full_name: Optional[str] = Field(None, alias="fullName")


class ClaimAccountRequest(BaseModel):
    """Claim form; ``sessionId`` is the checkout session from the thank-you page."""
    model_config = ConfigDict(populate_by_name=True)

    email: Optional[str] = None
    password: Optional[str] = None
    session_id: Optional[str] = Field(None, alias="sessionId")


@router.post("/register", response_model=Dict[str, Any])
async def register(
    request: RegisterRequest,
    accounts: AccountService = Depends(get_account_service),
):
    """Create a member account with a confirmed email."""
    return await accounts.register(request.email, request.password, request.full_name)


@router.post("/claim-account", response_model=Dict[str, Any])
async def claim_account(
    request: ClaimAccountRequest,
    accounts: AccountService = Depends(get_account_service),
):
    """Let a funnel buyer set the password on the account created at purchase."""
    return await accounts.claim_account(request.email, request.password, request.session_id)


@router.get("/session-email", response_model=Dict[str, Any])
def session_email(
    session_id: Optional[str] = None,
    checkout: CheckoutService = Depends(get_checkout_service),
):
    return checkout.get_session_email(session_id)
