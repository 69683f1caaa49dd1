"""
Configuration management package for Funnel Portal.

This package handles all configuration settings, validation, and management
for the funnel and member portal service.
"""

from .settings import (
    get_config,
    reload_config,
    AppConfig,
    SupabaseConfig,
    DatabaseConfig,
    APIConfig,
    LoggingConfig,
    StripeConfig,
    KlaviyoConfig,
    ShopifyConfig,
    BunnyConfig,
    SiteConfig,
    FunnelConfig,
    CronConfig,
    UpsellOffer,
)

__all__ = [
    "get_config",
    "reload_config",
    "AppConfig",
    "SupabaseConfig",
    "DatabaseConfig",
    "APIConfig",
    "LoggingConfig",
    "StripeConfig",
    "KlaviyoConfig",
    "ShopifyConfig",
    "BunnyConfig",
    "SiteConfig",
    "FunnelConfig",
    "CronConfig",
    "UpsellOffer",
]
