"""
Third-party integrations: Stripe payments, Klaviyo marketing, Shopify
order sync, Bunny Stream video and Supabase Storage.
"""

from .bunny_client import BunnyClient, get_bunny_client, is_bunny_video_id, sign_token
from .errors import (
    BunnyError,
    IntegrationError,
    KlaviyoError,
    ShopifyError,
    StorageError,
    StripeGatewayError,
)
from .klaviyo_client import FunnelEvents, KlaviyoClient, get_klaviyo_client
from .shopify_client import ShopifyClient, ShopifyLineItem, get_shopify_client, merge_tags
from .storage import StorageGateway, get_storage_gateway
from .stripe_gateway import StripeGateway, get_stripe_gateway

__all__ = [
    "BunnyClient",
    "get_bunny_client",
    "is_bunny_video_id",
    "sign_token",
    "BunnyError",
    "IntegrationError",
    "KlaviyoError",
    "ShopifyError",
    "StorageError",
    "StripeGatewayError",
    "FunnelEvents",
    "KlaviyoClient",
    "get_klaviyo_client",
    "ShopifyClient",
    "ShopifyLineItem",
    "get_shopify_client",
    "merge_tags",
    "StorageGateway",
    "get_storage_gateway",
    "StripeGateway",
    "get_stripe_gateway",
]
