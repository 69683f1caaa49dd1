"""API routers, one per functional area."""

from . import admin, auth, checkout, content, cron, discussion, messages, portal, tracking

ROUTERS = [
    auth.router,
    checkout.router,
    tracking.router,
    portal.router,
    content.router,
    discussion.router,
    messages.router,
    admin.router,
    cron.router,
]

__all__ = ["ROUTERS"]
