"""
Authentication utilities for Supabase integration.

This module verifies Supabase access tokens, wraps the auth admin API used
by registration and purchase provisioning, and exposes the FastAPI
dependencies that resolve the calling member.
"""

import logging
from typing import Any, Dict, Optional

import jwt
from fastapi import HTTPException, Request, status
from pydantic import BaseModel
from supabase import AuthApiError, Client

from ..config import get_config
from .database import get_db_client

logger = logging.getLogger(__name__)

ACCESS_TOKEN_COOKIE = "sb-access-token"
SUPABASE_AUDIENCE = "authenticated"


class AuthenticationError(Exception):
    """Raised when authentication fails."""
    pass


class TokenValidationError(Exception):
    """Raised when token validation fails."""
    pass


class AuthenticatedUser(BaseModel):
    """The member behind a verified access token."""

    id: str
    email: Optional[str] = None
    role: str = "authenticated"
    is_admin: bool = False


class SupabaseAuth:
    """
    Supabase authentication manager with JWT handling and user administration.
    """

    def __init__(self):
        self.config = get_config()
        self.db_client = get_db_client()

    @property
    def client(self) -> Client:
        """Get the service-role Supabase client."""
        return self.db_client.client

    def verify_access_token(self, token: str) -> AuthenticatedUser:
        """
        Verify a Supabase access token.

        Tokens are decoded locally when the project JWT secret is configured,
        otherwise the auth server is asked to resolve them.

        Raises:
            TokenValidationError: If token verification fails.
        """
        if self.config.supabase.jwt_secret:
            return self._decode_local(token, self.config.supabase.jwt_secret)
        return self._verify_remote(token)

    def _decode_local(self, token: str, secret: str) -> AuthenticatedUser:
        try:
            payload = jwt.decode(
                token,
                secret,
                algorithms=["HS256"],
                audience=SUPABASE_AUDIENCE,
                options={"verify_exp": True},
            )
        except jwt.ExpiredSignatureError:
            logger.warning("Access token has expired")
            raise TokenValidationError("Token has expired")
        except jwt.InvalidTokenError as e:
            logger.warning(f"Invalid access token: {e}")
            raise TokenValidationError(f"Invalid token: {str(e)}")

        user_id = payload.get("sub")
        if not user_id:
            raise TokenValidationError("Token missing sub claim")

        return AuthenticatedUser(
            id=user_id,
            email=payload.get("email"),
            role=payload.get("role", SUPABASE_AUDIENCE),
        )

    def _verify_remote(self, token: str) -> AuthenticatedUser:
        try:
            response = self.client.auth.get_user(token)
        except AuthApiError as e:
            logger.warning(f"Supabase rejected access token: {e}")
            raise TokenValidationError(f"Invalid token: {e}")
        except Exception as e:
            logger.error(f"Supabase token verification failed: {e}")
            raise TokenValidationError(f"Token verification failed: {e}")

        if not response or not response.user:
            raise TokenValidationError("Token does not resolve to a user")

        return AuthenticatedUser(
            id=str(response.user.id),
            email=response.user.email,
            role=getattr(response.user, "role", None) or SUPABASE_AUDIENCE,
        )

    def extract_token_from_header(self, authorization_header: str) -> str:
        """
        Extract JWT token from Authorization header.

        Raises:
            TokenValidationError: If header format is invalid.
        """
        if not authorization_header:
            raise TokenValidationError("Missing Authorization header")

        parts = authorization_header.split()
        if len(parts) != 2 or parts[0].lower() != "bearer":
            raise TokenValidationError("Invalid Authorization header format. Expected: Bearer <token>")

        return parts[1]

    def create_user(
        self,
        email: str,
        password: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> str:
        """
        Create a confirmed auth user through the admin API.

        Returns:
            The new user's id.

        Raises:
            AuthenticationError: If the auth server refuses the user.
        """
        attributes: Dict[str, Any] = {"email": email, "email_confirm": True}
        if password:
            attributes["password"] = password
        if metadata:
            attributes["user_metadata"] = metadata

        try:
            response = self.client.auth.admin.create_user(attributes)
        except AuthApiError as e:
            logger.warning(f"Auth user creation failed for {email}: {e}")
            raise AuthenticationError(str(e))

        if not response or not response.user:
            raise AuthenticationError("Failed to create account")

        logger.info(f"Created auth user {response.user.id} for {email}")
        return str(response.user.id)

    def update_user_password(self, user_id: str, password: str) -> None:
        """
        Set a new password on an existing auth user and confirm the email.

        Raises:
            AuthenticationError: If the update is rejected.
        """
        try:
            self.client.auth.admin.update_user_by_id(
                user_id, {"password": password, "email_confirm": True}
            )
        except AuthApiError as e:
            logger.warning(f"Password update failed for {user_id}: {e}")
            raise AuthenticationError(str(e))

    def find_user_id_by_email(self, email: str) -> Optional[str]:
        """Look an auth user up by email through the admin listing."""
        try:
            users = self.client.auth.admin.list_users(page=1, per_page=1000)
        except AuthApiError as e:
            logger.error(f"Failed to list auth users: {e}")
            return None

        target = email.lower()
        for user in users or []:
            if (user.email or "").lower() == target:
                return str(user.id)
        return None


# Global authentication instance
auth_manager: Optional[SupabaseAuth] = None


def get_auth_manager() -> SupabaseAuth:
    """
    Get the global authentication manager instance.

    Returns:
        SupabaseAuth: The authentication manager instance.
    """
    global auth_manager
    if auth_manager is None:
        auth_manager = SupabaseAuth()
    return auth_manager


def extract_request_token(request: Request) -> Optional[str]:
    """Return the bearer token, else the access token cookie, if any."""
    authorization = request.headers.get("authorization")
    if authorization:
        try:
            return get_auth_manager().extract_token_from_header(authorization)
        except TokenValidationError:
            logger.debug("Ignoring malformed Authorization header")
    return request.cookies.get(ACCESS_TOKEN_COOKIE)


# FastAPI Authentication Dependencies
async def get_current_user(request: Request) -> Optional[AuthenticatedUser]:
    """
    FastAPI dependency to get the current authenticated user.

    This is an optional dependency - endpoints can work with or without
    authentication. Invalid tokens are treated as anonymous.
    """
    token = extract_request_token(request)
    if not token:
        return None

    try:
        return get_auth_manager().verify_access_token(token)
    except TokenValidationError as e:
        logger.debug(f"Ignoring invalid access token: {e}")
        return None


async def require_authentication(request: Request) -> AuthenticatedUser:
    """
    FastAPI dependency that requires authentication.

    Raises:
        HTTPException: If no token or invalid token
    """
    user = await get_current_user(request)
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized"
        )
    return user


async def verify_cron_secret(request: Request) -> None:
    """
    FastAPI dependency guarding scheduled job endpoints.

    Only enforced in production when a cron secret is configured.

    Raises:
        HTTPException: If the bearer secret does not match
    """
    config = get_config()
    secret = config.cron.secret
    if not config.is_production or not secret:
        return

    if request.headers.get("authorization") != f"Bearer {secret}":
        logger.warning("Rejected cron request with missing or invalid secret")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized"
        )
