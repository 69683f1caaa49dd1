"""Exceptions raised by third-party integration clients."""

from typing import Optional


class IntegrationError(Exception):
    """Base exception for failures talking to an external service."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class StripeGatewayError(IntegrationError):
    """A Stripe API call failed."""

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        is_card_error: bool = False,
        status: Optional[int] = None,
    ):
        super().__init__(message, status)
        self.code = code
        self.is_card_error = is_card_error


class KlaviyoError(IntegrationError):
    pass


class ShopifyError(IntegrationError):
    pass


class BunnyError(IntegrationError):
    pass


class StorageError(IntegrationError):
    pass
