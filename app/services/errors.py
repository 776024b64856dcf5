"""
Error taxonomy for the marketplace integration services.
Controllers map these to HTTP status codes; background handlers log and drop them.
"""
from typing import Any, Optional


class MarketplaceError(Exception):
    """Base class for all marketplace integration errors."""


class ConfigMissing(MarketplaceError):
    """A required setting (encryption key, app credentials, service key) is absent."""


class IntegrationNotFound(MarketplaceError):
    """No enabled integration for the requested organization / seller / id."""


class DecryptFailure(MarketplaceError):
    """A stored token could not be decrypted with the configured key."""


class InvalidTokenFormat(DecryptFailure):
    """A value tagged as encrypted does not have the enc:gcm:<iv>:<ct> shape."""


class RefreshFailure(MarketplaceError):
    """The OAuth refresh grant was rejected, or a refreshed token was still refused."""

    def __init__(self, message: str, status_code: Optional[int] = None, details: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.details = details


class TokenRejected(RefreshFailure):
    """The refresh grant succeeded but the marketplace still refuses the new token for one path."""

    def __init__(self, message: str, path: str, status_code: Optional[int] = None, details: Any = None):
        super().__init__(message, status_code=status_code, details=details)
        self.path = path


class UpstreamError(MarketplaceError):
    """Marketplace API answered with a non-auth error status."""

    def __init__(self, status_code: int, path: str, body_preview: str = ""):
        super().__init__(f"{path} -> HTTP {status_code}")
        self.status_code = status_code
        self.path = path
        self.body_preview = body_preview


class UpstreamAuthError(UpstreamError):
    """Marketplace API answered 401/403. Internal to the auth-retry wrapper."""
