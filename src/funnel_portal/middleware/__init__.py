"""HTTP middleware."""

from .subdomain import RouteDecision, is_auth_route, resolve_route, subdomain_router

__all__ = ["RouteDecision", "is_auth_route", "resolve_route", "subdomain_router"]
