# app/errors.py
from typing import Any, Dict, Optional

PROOF_VERIFICATION_FAILED = "proof-verification-failed"
AUDIT_VERIFICATION_FAILED = "audit-verification-failed"


class ConsentError(Exception):
    """Base for every error the consent pipeline surfaces to callers."""
    status_code = 500
    code = "internal_error"

    def __init__(self, message: str = "", reason: Optional[str] = None):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.reason = reason

    def to_dict(self) -> Dict[str, Any]:
        body = {"error": self.code, "detail": self.message}
        if self.reason:
            body["reason"] = self.reason
        return body


class NotFound(ConsentError):
    status_code = 404
    code = "not_found"


class Unauthorized(ConsentError):
    # wrong actor on approve/reject looks the same as a missing request
    status_code = 404
    code = "unauthorized"


class Forbidden(ConsentError):
    status_code = 403
    code = "forbidden"


class VerificationFailed(Forbidden):
    code = "verification_failed"


class InvalidTransition(ConsentError):
    status_code = 400
    code = "invalid_transition"


class DuplicateRequest(ConsentError):
    status_code = 409
    code = "duplicate_request"

    def __init__(self, message: str = "", request_id: Optional[str] = None):
        super().__init__(message)
        self.request_id = request_id

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        if self.request_id:
            body["requestId"] = self.request_id
        return body


class ProviderDegraded(ConsentError):
    """A ledger call failed and a placeholder was substituted. Logged, never returned."""
    code = "provider_degraded"

    def __init__(self, ledger: str, cause: BaseException):
        super().__init__(f"{ledger} provider degraded: {cause!r}")
        self.ledger = ledger
        self.cause = cause


class CryptoError(ConsentError):
    status_code = 400
    code = "crypto_error"


class IntegrityError(CryptoError):
    code = "integrity_error"


class SigningDeclined(CryptoError):
    code = "signing_declined"

    def __init__(self, message: str = "The signature request was declined. "
                                      "Approve the signing prompt in your wallet to continue."):
        super().__init__(message)


class ConfigError(CryptoError):
    status_code = 500
    code = "config_error"
