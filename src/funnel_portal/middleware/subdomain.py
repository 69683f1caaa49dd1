"""
Subdomain request routing.

``offer.*`` serves the sales funnel untouched. ``portal.*`` maps bare paths
onto the ``/portal`` tree and guards it: anonymous visitors are sent to the
login page, signed-in members are kept away from the auth pages.
"""

import logging
from typing import Optional
from urllib.parse import quote

from fastapi import Request
from fastapi.responses import RedirectResponse
from pydantic import BaseModel

from ..config import get_config
from ..utils.auth import ACCESS_TOKEN_COOKIE, TokenValidationError, get_auth_manager

logger = logging.getLogger(__name__)

AUTH_ROUTES = ("/login", "/portal/login", "/portal/signup", "/portal/reset-password")
UNREWRITTEN_PREFIXES = ("/portal", "/api", "/_next", "/auth")
LOGIN_PATH = "/portal/login"
PORTAL_HOME = "/portal"


class RouteDecision(BaseModel):
    action: str  # pass | rewrite | redirect
    path: str


def is_auth_route(path: str) -> bool:
    if path in AUTH_ROUTES or path.startswith("/auth/"):
        return True
    return path.startswith("/portal/reset-password/")


def resolve_route(
    host: Optional[str],
    path: str,
    is_authenticated: bool,
    offer_prefix: str = "offer.",
    portal_prefix: str = "portal.",
) -> RouteDecision:
    """
    Decide how a request is routed.

    Args:
        host: Request host header
        path: Request path without the query string
        is_authenticated: Whether the caller holds a valid session

    Returns:
        RouteDecision with the action and the effective (or redirect) path
    """
    host = (host or "").lower()
    if host.startswith(offer_prefix):
        return RouteDecision(action="pass", path=path)

    action = "pass"
    effective = path
    if host.startswith(portal_prefix) and not is_auth_route(path) and not path.startswith(UNREWRITTEN_PREFIXES):
        effective = PORTAL_HOME if path == "/" else f"{PORTAL_HOME}{path}"
        action = "rewrite"

    if effective.startswith("/api"):
        return RouteDecision(action=action, path=effective)

    if effective.startswith(PORTAL_HOME) and not is_auth_route(effective) and not is_authenticated:
        return RouteDecision(action="redirect", path=f"{LOGIN_PATH}?redirect={quote(effective, safe='/')}")

    if is_authenticated and is_auth_route(effective) and not effective.startswith("/auth/"):
        return RouteDecision(action="redirect", path=PORTAL_HOME)

    return RouteDecision(action=action, path=effective)


def _has_valid_session(request: Request) -> bool:
    token = request.cookies.get(ACCESS_TOKEN_COOKIE)
    if not token:
        return False
    try:
        get_auth_manager().verify_access_token(token)
        return True
    except TokenValidationError:
        return False


async def subdomain_router(request: Request, call_next):
    """HTTP middleware applying ``resolve_route`` to every request."""
    site = get_config().site
    path = request.url.path
    host = request.headers.get("host") or ""

    # Session checks only matter for page routes
    is_authenticated = False
    if not host.lower().startswith(site.offer_host_prefix) and not path.startswith("/api"):
        is_authenticated = _has_valid_session(request)

    decision = resolve_route(
        host,
        path,
        is_authenticated,
        offer_prefix=site.offer_host_prefix,
        portal_prefix=site.portal_host_prefix,
    )

    if decision.action == "redirect":
        logger.debug(f"Redirecting {path} to {decision.path}")
        return RedirectResponse(decision.path, status_code=307)

    if decision.action == "rewrite":
        logger.debug(f"Rewriting {path} to {decision.path}")
        request.scope["path"] = decision.path
        request.scope["raw_path"] = decision.path.encode("utf-8")

    return await call_next(request)
