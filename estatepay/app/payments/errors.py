"""Error taxonomy shared by the payment orchestrator, reconciler, and routes."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

from fastapi import status


@dataclass
class PaymentsError(Exception):
    """Base class for failures surfaced to API callers as ``{"error": message}``."""

    message: str
    code: str = "payments_error"
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    detail: Optional[Mapping[str, Any]] = field(default=None, repr=False)

    def __post_init__(self) -> None:
        super().__init__(self.message)

    @property
    def payload(self) -> Dict[str, Any]:
        """Serialized representation suitable for JSON responses."""

        return {"error": self.message}


@dataclass
class Unauthorized(PaymentsError):
    message: str = "Unauthorized"
    code: str = "unauthorized"
    status_code: int = status.HTTP_401_UNAUTHORIZED


@dataclass
class Forbidden(PaymentsError):
    message: str = "Forbidden"
    code: str = "forbidden"
    status_code: int = status.HTTP_403_FORBIDDEN


@dataclass
class NotFound(PaymentsError):
    message: str = "Not found"
    code: str = "not_found"
    status_code: int = status.HTTP_404_NOT_FOUND


@dataclass
class ValidationError(PaymentsError):
    message: str = "Invalid request"
    code: str = "validation_error"
    status_code: int = status.HTTP_400_BAD_REQUEST


@dataclass
class InvalidTransition(PaymentsError):
    message: str = "Payment cannot move to the requested status"
    code: str = "invalid_transition"
    status_code: int = status.HTTP_409_CONFLICT


@dataclass
class UpstreamError(PaymentsError):
    """Gateway call failed or timed out.

    The message returned to callers is generic; ``detail`` carries the
    operation name and the gateway's own error text for logging only.
    """

    message: str = "Internal server error"
    code: str = "upstream_error"
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR


@dataclass
class SignatureError(PaymentsError):
    message: str = "Webhook signature verification failed"
    code: str = "signature_error"
    status_code: int = status.HTTP_400_BAD_REQUEST


__all__ = [
    "Forbidden",
    "InvalidTransition",
    "NotFound",
    "PaymentsError",
    "SignatureError",
    "Unauthorized",
    "UpstreamError",
    "ValidationError",
]
