"""
Console exception hierarchy.

Every error carries a machine-readable code (CC_*) so the API layer and
the logs can report it without parsing messages.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional


@dataclass
class ConsoleError(Exception):
    """
    Base exception for all console errors.

    Attributes:
        message: Human-readable error description
        code: Machine-readable error code (CC_*)
        details: Additional context about the error
        report_id: Associated report ID if applicable
    """
    message: str
    code: str = "CC_INTERNAL_ERROR"
    details: dict[str, Any] = field(default_factory=dict)
    report_id: Optional[str] = None

    def __post_init__(self) -> None:
        super().__init__(self.message)

    def __str__(self) -> str:
        parts = [f"[{self.code}] {self.message}"]
        if self.report_id:
            parts.append(f"(report: {self.report_id})")
        return " ".join(parts)

    def to_dict(self) -> dict[str, Any]:
        """Serialize exception for logging/API responses."""
        result: dict[str, Any] = {
            "code": self.code,
            "message": self.message,
        }
        if self.details:
            result["details"] = self.details
        if self.report_id:
            result["report_id"] = self.report_id
        return result


@dataclass
class AuthenticationError(ConsoleError):
    """Sign-in rejected by the identity provider."""
    code: str = "CC_AUTHENTICATION_FAILED"


@dataclass
class AuthorizationError(ConsoleError):
    """Action attempted without a qualifying role."""
    code: str = "CC_NOT_AUTHORIZED"


@dataclass
class MalformedTimestamp(ConsoleError):
    """Timestamp absent, of unexpected shape, or unparsable."""
    code: str = "CC_MALFORMED_TIMESTAMP"


@dataclass
class SubscriptionError(ConsoleError):
    """The live-update channel failed."""
    code: str = "CC_SUBSCRIPTION_FAILED"


@dataclass
class ReportNotFound(ConsoleError):
    """No report with the requested id."""
    code: str = "CC_REPORT_NOT_FOUND"


@dataclass
class InvalidValueError(ConsoleError):
    """A mutation carried a value outside its enum domain."""
    code: str = "CC_INVALID_VALUE"
