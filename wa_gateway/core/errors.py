"""
Error taxonomy for the messaging pipeline.

Every error the core raises on purpose derives from GatewayError and carries
the HTTP status it maps to, a stable machine-readable code and optional
details. The exception handler in main.py renders them as
{"error": ..., "code": ..., "details": ...}.
"""
from typing import Any


class GatewayError(Exception):
    status_code: int = 500
    code: str = "internal_error"

    def __init__(self, message: str, details: Any = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        body = {"error": self.message, "code": self.code}
        if self.details is not None:
            body["details"] = self.details
        return body


# --- validation ---
class InvalidRequest(GatewayError):
    status_code = 400
    code = "invalid_request"


class InvalidPayload(GatewayError):
    status_code = 400
    code = "invalid_payload"


class InvalidTenantPrefix(GatewayError):
    status_code = 400
    code = "invalid_tenant_prefix"


# --- resolution ---
class NotFound(GatewayError):
    status_code = 404
    code = "not_found"


# --- policy ---
class PolicyError(GatewayError):
    status_code = 400
    code = "policy_error"


class TemplateRequired(PolicyError):
    code = "template_required"


class MediaRequiresSession(PolicyError):
    code = "media_requires_session"


class InsufficientCredits(PolicyError):
    code = "insufficient_credits"


# --- webhook authentication ---
class VerificationFailed(GatewayError):
    status_code = 403
    code = "verification_failed"


# --- upstream ---
class ProviderError(GatewayError):
    status_code = 500
    code = "provider_error"

    def __init__(self, message: str, status: int | None = None, body: Any = None):
        super().__init__(message, details=body)
        self.status = status
        self.body = body
