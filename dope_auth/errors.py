"""Session-bridge exception hierarchy.

Keep this module small and dependency-free: it is imported by the exchange
service, the API client and the state machine alike.

Every error carries an HTTP-equivalent ``status_code`` so the exchange service
can turn it into a response without a lookup table.
"""

from typing import Any, Optional


class DopeAuthError(Exception):
    """Base exception for all session-bridge errors."""

    status_code = 500
    code = "server_error"

    def __init__(self, message: str = "", **detail: Any):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.detail = detail

    def as_detail(self) -> dict:
        out = {"error": self.code, "message": self.message}
        out.update(self.detail)
        return out


# -----------------------------------------------------------------------------
# Exchange-time errors (returned to the caller)
# -----------------------------------------------------------------------------
class MissingInput(DopeAuthError):
    """Raised when an exchange request lacks a required field."""

    status_code = 400
    code = "bad_request"


class InvalidCredential(DopeAuthError):
    """Raised when an identity credential is malformed or its signature fails."""

    status_code = 401
    code = "invalid_credential"


class MissingClaims(DopeAuthError):
    """Raised when a verified credential lacks the subject or organization claim."""

    status_code = 400
    code = "missing_claims"


class Expired(DopeAuthError):
    """Raised when a credential's expiry claim is in the past."""

    status_code = 401
    code = "expired"


class InvalidSignature(DopeAuthError):
    """Raised when a signed message does not recover to the claimed address."""

    status_code = 401
    code = "invalid_signature"


# -----------------------------------------------------------------------------
# Reconciliation errors (resolved inside the state machine)
# -----------------------------------------------------------------------------
class Unauthorized(DopeAuthError):
    """Raised when the backend rejects the app token with 401."""

    status_code = 401
    code = "unauthorized"


class RegistrationFailed(DopeAuthError):
    """Raised when the backend rejects a wallet registration."""

    status_code = 502
    code = "registration_failed"


class RegistrationBlocked(DopeAuthError):
    """Raised when no wallet could be resolved or created in time."""

    status_code = 503
    code = "registration_blocked"


class WalletCreationNonFatal(DopeAuthError):
    """Raised when the identity provider reports a wallet-creation error."""

    status_code = 200
    code = "wallet_creation_error"


class NetworkError(DopeAuthError):
    """Raised on transport failures or unexpected backend responses."""

    status_code = 503
    code = "network_error"


class ApiError(DopeAuthError):
    """Raised by auxiliary endpoints (referral, claim, deletion) on non-2xx."""

    code = "api_error"

    def __init__(self, message: str, status_code: int, body: Optional[dict] = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body or {}
