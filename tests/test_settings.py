"""
Test suite for configuration validation.
"""

import pytest
from pydantic import ValidationError

from funnel_portal.config import (
    AppConfig,
    CronConfig,
    DatabaseConfig,
    FunnelConfig,
    KlaviyoConfig,
    LoggingConfig,
    ShopifyConfig,
    SiteConfig,
    StripeConfig,
    SupabaseConfig,
)


class TestDefaults:
    """Test the defaults the app runs with."""

    def test_funnel_pricing(self):
        funnel = FunnelConfig()
        assert funnel.main_price_cents == 700
        assert funnel.order_bump_price_cents == 2700
        assert set(funnel.upsell_offers) == {"upsell-1", "downsell-1", "upsell-2"}
        assert funnel.upsell_offers["upsell-2"].price_cents == 1495

    def test_environment_flags(self):
        config = AppConfig()
        config.environment = "Production"
        assert config.is_production is True
        assert config.is_development is False

    def test_integrations_disabled_without_credentials(self):
        assert KlaviyoConfig(api_key=None).enabled is False
        assert KlaviyoConfig(api_key="pk_123").enabled is True
        assert ShopifyConfig(store_domain="shop.myshopify.com", access_token=None).enabled is False
        assert ShopifyConfig(store_domain="shop.myshopify.com", access_token="shpat").enabled is True


class TestValidators:
    """Test field validators."""

    def test_supabase_url_must_be_https(self):
        with pytest.raises(ValidationError):
            SupabaseConfig(url="http://project.supabase.co")

    def test_supabase_url_trailing_slash(self):
        assert SupabaseConfig(url="https://project.supabase.co/").url == "https://project.supabase.co"

    def test_pool_size_bounds(self):
        with pytest.raises(ValidationError):
            DatabaseConfig(pool_size=0)

    def test_log_level_normalised(self):
        assert LoggingConfig(level="debug").level == "DEBUG"
        with pytest.raises(ValidationError):
            LoggingConfig(level="chatty")

    def test_currency(self):
        assert StripeConfig(currency="AUD").currency == "aud"
        with pytest.raises(ValidationError):
            StripeConfig(currency="dollars")

    def test_base_url_trailing_slash(self):
        assert SiteConfig(base_url="https://example.com/").base_url == "https://example.com"

    def test_ab_test_weights(self):
        assert FunnelConfig(ab_tests={"landing": {"a": 1, "b": 3}}).ab_tests["landing"]["b"] == 3
        with pytest.raises(ValidationError):
            FunnelConfig(ab_tests={"landing": {"a": 0}})
        with pytest.raises(ValidationError):
            FunnelConfig(ab_tests={"landing": {}})

    def test_cron_batch_size(self):
        with pytest.raises(ValidationError):
            CronConfig(batch_size=0)
