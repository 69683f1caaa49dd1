"""
Funnel Portal - sales funnel and member portal backend.

This package contains the FastAPI service behind the offer funnel and the
member portal: Stripe checkout and upsells, gated course content, progress
tracking, community discussion, direct messaging and DM automations.

Modules:
    config: Environment driven settings
    utils: Database, authentication and logging helpers
    schemas: Pydantic row and request/response models
    repositories: Raw SQL data access over the Supabase Postgres database
    services: Business rules shared by the HTTP routers and cron jobs
    integrations: Stripe, Klaviyo, Shopify, Bunny Stream and storage clients
    middleware: Subdomain request routing
    routers: FastAPI routers grouped by feature
"""

__version__ = "0.1.0"
__author__ = "Funnel Portal Team"
