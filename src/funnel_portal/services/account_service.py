"""
Member account registration and claiming.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

from ..integrations.errors import StripeGatewayError
from ..integrations.stripe_gateway import StripeGateway, get_stripe_gateway
from ..repositories.profile_repository import ProfileRepository
from ..schemas.database_models import ProfileUpsert
from ..utils.auth import AuthenticationError, SupabaseAuth, get_auth_manager
from ..utils.job_logger import run_non_critical
from .automation_service import AutomationService, get_automation_service
from .checkout_service import stripe_field
from .errors import ConflictError, ForbiddenError, ValidationFailedError
from .purchase_service import split_full_name

logger = logging.getLogger(__name__)

MIN_PASSWORD_LENGTH = 8
PAID_SESSION_STATUSES = ("paid", "no_payment_required")


def _check_password(password: str) -> None:
    if len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationFailedError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")


class AccountService:
    """Creates portal accounts and lets funnel buyers set a password."""

    def __init__(
        self,
        profiles: Optional[ProfileRepository] = None,
        auth: Optional[SupabaseAuth] = None,
        automations: Optional[AutomationService] = None,
        gateway: Optional[StripeGateway] = None,
    ):
        self.profiles = profiles or ProfileRepository()
        self.auth = auth or get_auth_manager()
        self.automations = automations or get_automation_service()
        self.gateway = gateway or get_stripe_gateway()

    async def register(
        self, email: Optional[str], password: Optional[str], full_name: Optional[str]
    ) -> Dict[str, Any]:
        """
        Register a new member.

        Raises:
            ValidationFailedError: Missing fields, short password or auth rejection
            ConflictError: An account with the email already exists
        """
        if not email or not password or not full_name:
            raise ValidationFailedError("Email, password, and full name are required")
        _check_password(password)

        email = email.strip().lower()
        full_name = full_name.strip()

        if await self.profiles.get_by_email(email):
            raise ConflictError("An account with this email already exists. Please sign in instead.")

        try:
            user_id = await asyncio.to_thread(
                self.auth.create_user, email, password, metadata={"full_name": full_name}
            )
        except AuthenticationError as e:
            raise ValidationFailedError(str(e))

        first_name, last_name = split_full_name(full_name)
        await self.profiles.upsert(ProfileUpsert(
            id=user_id,
            email=email,
            full_name=full_name,
            first_name=first_name,
            last_name=last_name,
        ))
        logger.info(f"Registered member {user_id}")

        await run_non_critical(self.automations.trigger_welcome(user_id), f"Welcome automation for {user_id}")

        return {"success": True, "userId": user_id, "message": "Account created successfully"}

    async def purchase_email(self, session_id: str) -> str:
        """
        Buyer email of a paid Checkout Session, or of a succeeded PaymentIntent
        (``pi_...``) from the embedded checkout.

        Raises:
            ForbiddenError: Unknown or unpaid purchase, or no buyer email
        """
        try:
            if session_id.startswith("pi_"):
                intent = await asyncio.to_thread(self.gateway.retrieve_payment_intent, session_id)
                paid = stripe_field(intent, "status") == "succeeded"
                email = stripe_field(intent, "receipt_email") or stripe_field(
                    stripe_field(intent, "metadata"), "customerEmail"
                )
            else:
                session = await asyncio.to_thread(self.gateway.retrieve_checkout_session, session_id)
                paid = stripe_field(session, "payment_status") in PAID_SESSION_STATUSES
                email = stripe_field(stripe_field(session, "customer_details"), "email")
        except StripeGatewayError as e:
            if e.code != "resource_missing":
                raise
            logger.warning(f"Account claim with unknown purchase {session_id}")
            raise ForbiddenError("Purchase could not be verified")

        if not paid or not email:
            logger.warning(f"Account claim with unpaid purchase {session_id}")
            raise ForbiddenError("Purchase could not be verified")
        return email.strip().lower()

    async def claim_account(
        self, email: Optional[str], password: Optional[str], session_id: Optional[str]
    ) -> Dict[str, Any]:
        """
        Set a password on the account created at purchase, or create one.

        The caller proves ownership with the purchase's checkout session id,
        whose buyer email must match.

        Raises:
            ValidationFailedError: Missing fields, short password or auth rejection
            ForbiddenError: Unverified purchase, email mismatch or admin account
        """
        if not email or not password:
            raise ValidationFailedError("Email and password are required")
        if not session_id:
            raise ValidationFailedError("sessionId is required")
        _check_password(password)

        email = email.strip().lower()
        if await self.purchase_email(session_id) != email:
            logger.warning(f"Account claim for {email} does not match purchase {session_id}")
            raise ForbiddenError("Email does not match this purchase")

        profile = await self.profiles.get_by_email(email)
        if profile and profile.is_admin:
            logger.warning(f"Refused account claim for admin profile {profile.id}")
            raise ForbiddenError("This account cannot be claimed")

        try:
            if profile:
                await asyncio.to_thread(self.auth.update_user_password, profile.id, password)
                user_id = profile.id
            else:
                user_id = await asyncio.to_thread(self.auth.create_user, email, password)
                await self.profiles.upsert(ProfileUpsert(id=user_id, email=email))
        except AuthenticationError as e:
            raise ValidationFailedError(str(e))

        logger.info(f"Account claimed for {user_id}")
        return {"success": True, "userId": user_id}
