"""
Product access provisioning.

Turns a confirmed payment into an account (created on the fly for funnel
buyers) and an active ``user_purchases`` row.
"""

import logging
from typing import Optional

from pydantic import BaseModel

from ..repositories.catalog_repository import ProductRepository
from ..repositories.profile_repository import ProfileRepository
from ..repositories.purchase_repository import PurchaseRepository
from ..schemas.database_models import ProfileUpsert, PurchaseSource, UserPurchaseCreate
from ..utils.auth import AuthenticationError, SupabaseAuth, get_auth_manager
from ..utils.job_logger import run_non_critical
from .automation_service import AutomationService, get_automation_service
from .errors import ProvisioningError

logger = logging.getLogger(__name__)


class GrantResult(BaseModel):
    user_id: str
    granted: bool
    is_new_user: bool = False


def split_full_name(full_name: Optional[str]):
    """First word is the first name; the rest is the last name."""
    parts = (full_name or "").strip().split()
    if not parts:
        return None, None
    return parts[0], " ".join(parts[1:]) or None


class PurchaseService:
    """Grants product access after payment."""

    def __init__(
        self,
        profiles: Optional[ProfileRepository] = None,
        products: Optional[ProductRepository] = None,
        purchases: Optional[PurchaseRepository] = None,
        auth: Optional[SupabaseAuth] = None,
        automations: Optional[AutomationService] = None,
    ):
        self.profiles = profiles or ProfileRepository()
        self.products = products or ProductRepository()
        self.purchases = purchases or PurchaseRepository()
        self.auth = auth or get_auth_manager()
        self.automations = automations or get_automation_service()

    async def _resolve_user(
        self, email: str, full_name: Optional[str], stripe_customer_id: Optional[str]
    ) -> GrantResult:
        profile = await self.profiles.get_by_email(email)
        if profile:
            if stripe_customer_id and not profile.stripe_customer_id:
                await self.profiles.set_stripe_customer_id(profile.id, stripe_customer_id)
            return GrantResult(user_id=profile.id, granted=False)

        metadata = {"full_name": full_name} if full_name else None
        is_new_user = True
        try:
            user_id = self.auth.create_user(email, metadata=metadata)
        except AuthenticationError as e:
            # Auth user exists without a profile row
            user_id = self.auth.find_user_id_by_email(email)
            if not user_id:
                raise ProvisioningError(f"Failed to create user: {e}")
            is_new_user = False

        first_name, last_name = split_full_name(full_name)
        await self.profiles.upsert(ProfileUpsert(
            id=user_id,
            email=email,
            full_name=full_name,
            first_name=first_name,
            last_name=last_name,
            stripe_customer_id=stripe_customer_id,
        ))

        if is_new_user:
            await run_non_critical(
                self.automations.trigger_welcome(user_id), f"Welcome automation for {user_id}"
            )
        return GrantResult(user_id=user_id, granted=False, is_new_user=is_new_user)

    async def grant_product_access(
        self,
        email: str,
        product_slug: str,
        stripe_customer_id: Optional[str] = None,
        stripe_payment_intent_id: Optional[str] = None,
        stripe_checkout_session_id: Optional[str] = None,
        amount_cents: Optional[int] = None,
        currency: Optional[str] = None,
        source: PurchaseSource = PurchaseSource.FUNNEL,
        full_name: Optional[str] = None,
    ) -> GrantResult:
        """
        Ensure the buyer has an account and an active purchase of the product.

        Returns:
            GrantResult with ``granted`` False when the product does not exist

        Raises:
            ProvisioningError: If no account could be created for the email
        """
        email = email.strip().lower()
        result = await self._resolve_user(email, full_name, stripe_customer_id)

        product = await self.products.get_by_slug(product_slug)
        if not product:
            logger.error(f"Product not found for grant: {product_slug}")
            return result

        purchase, inserted = await self.purchases.upsert_active(UserPurchaseCreate(
            user_id=result.user_id,
            product_id=product.id,
            stripe_payment_intent_id=stripe_payment_intent_id,
            stripe_checkout_session_id=stripe_checkout_session_id,
            amount_cents=amount_cents,
            currency=currency,
            purchase_source=source,
        ))
        logger.info(f"Granted {product_slug} to {result.user_id} (purchase {purchase.id}, new={inserted})")

        if inserted:
            await run_non_critical(
                self.automations.trigger_purchase(result.user_id, product.id, product.name),
                f"Purchase automation for {result.user_id}",
            )

        return result.model_copy(update={"granted": True})
