"""
Test suite for subdomain routing.

Tests the pure routing decision and the HTTP middleware mounted on a
small FastAPI app.
"""

import pytest
from unittest.mock import patch

from fastapi import FastAPI, Request
from fastapi.testclient import TestClient

from funnel_portal.middleware.subdomain import is_auth_route, resolve_route, subdomain_router


class TestIsAuthRoute:
    """Test auth page detection."""

    @pytest.mark.parametrize("path", ["/login", "/portal/login", "/portal/signup", "/portal/reset-password",
                                      "/portal/reset-password/confirm", "/auth/callback"])
    def test_auth_routes(self, path):
        assert is_auth_route(path) is True

    @pytest.mark.parametrize("path", ["/portal", "/portal/courses", "/checkout", "/authors"])
    def test_other_routes(self, path):
        assert is_auth_route(path) is False


class TestResolveRoute:
    """Test routing decisions."""

    def test_offer_host_passes_through(self):
        decision = resolve_route("offer.example.com", "/portal/courses", False)
        assert decision.action == "pass"
        assert decision.path == "/portal/courses"

    def test_portal_root_rewritten_then_guarded(self):
        decision = resolve_route("portal.example.com", "/", False)
        assert decision.action == "redirect"
        assert decision.path == "/portal/login?redirect=/portal"

    def test_portal_path_rewritten_for_member(self):
        decision = resolve_route("Portal.Example.com", "/courses/pathless-path", True)
        assert decision.action == "rewrite"
        assert decision.path == "/portal/courses/pathless-path"

    def test_portal_api_untouched(self):
        decision = resolve_route("portal.example.com", "/api/portal/products", False)
        assert decision.action == "pass"
        assert decision.path == "/api/portal/products"

    def test_portal_login_not_rewritten(self):
        decision = resolve_route("portal.example.com", "/login", False)
        assert decision.action == "pass"
        assert decision.path == "/login"

    def test_signed_in_member_leaves_login(self):
        decision = resolve_route("portal.example.com", "/login", True)
        assert decision.action == "redirect"
        assert decision.path == "/portal"

    def test_auth_callback_allowed_when_signed_in(self):
        decision = resolve_route("example.com", "/auth/callback", True)
        assert decision.action == "pass"

    def test_main_host_portal_guarded(self):
        decision = resolve_route("example.com", "/portal/dashboard", False)
        assert decision.action == "redirect"
        assert decision.path == "/portal/login?redirect=/portal/dashboard"

    def test_main_host_public_page(self):
        decision = resolve_route("example.com", "/checkout", False)
        assert decision.action == "pass"

    def test_missing_host(self):
        assert resolve_route(None, "/", False).action == "pass"


@pytest.fixture
def client():
    app = FastAPI()
    app.middleware("http")(subdomain_router)

    @app.get("/{full_path:path}")
    async def echo(full_path: str, request: Request):
        return {"path": request.url.path}

    return TestClient(app, base_url="http://portal.example.com", follow_redirects=False)


class TestSubdomainMiddleware:
    """Test the middleware end to end."""

    def test_anonymous_redirected_to_login(self, client):
        response = client.get("/courses")

        assert response.status_code == 307
        assert response.headers["location"] == "/portal/login?redirect=/portal/courses"

    def test_member_request_rewritten(self, client):
        with patch("funnel_portal.middleware.subdomain._has_valid_session", return_value=True):
            response = client.get("/courses")

        assert response.status_code == 200
        assert response.json() == {"path": "/portal/courses"}

    def test_api_skips_session_check(self, client):
        with patch("funnel_portal.middleware.subdomain._has_valid_session") as session_check:
            response = client.get("/api/portal/products")

        assert response.json() == {"path": "/api/portal/products"}
        session_check.assert_not_called()
