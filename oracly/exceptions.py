"""
Oracly error taxonomy.

Every error carries the HTTP status the API layer answers with, so routes
can simply let service errors propagate.
"""

from typing import Any, Optional


class OraclyError(Exception):
    """Base class for all domain errors."""

    http_status: int = 500

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"error": type(self).__name__, "message": self.message}


class CredentialError(OraclyError):
    """Missing or invalid API key/secret; sync never starts."""

    http_status = 400


class DecryptionError(OraclyError):
    """Stored ciphertext failed authentication. The user must reconnect."""

    http_status = 409


class VaultConfigurationError(OraclyError):
    """No encryption secret configured for the credential vault."""

    http_status = 500


class ExchangeApiError(OraclyError):
    """Non-2xx response from the exchange, or a transport failure (status None)."""

    http_status = 502

    def __init__(self, status: Optional[int], body: Any = None, message: str = ""):
        self.status = status
        self.body = body
        super().__init__(message or f"Exchange API error {status}: {body}")

    @property
    def retryable(self) -> bool:
        if self.status is None:
            return True
        return self.status in (418, 429) or self.status >= 500

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["status"] = self.status
        data["body"] = self.body
        return data


class ExchangeResponseError(OraclyError):
    """Exchange answered 2xx with a body we cannot parse."""

    http_status = 502


class UnsupportedProviderError(OraclyError):
    http_status = 400


class NotFoundError(OraclyError):
    http_status = 404


class SyncInProgressError(OraclyError):
    """Another sync already holds this integration."""

    http_status = 409


class SyncCancelledError(OraclyError):
    http_status = 499
