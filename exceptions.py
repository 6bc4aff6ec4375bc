"""
Exception hierarchy for the creator settlement service.

Policy rejections (bot traffic, duplicates, rate limits, inactive campaigns)
are NOT exceptions: they are normal outcomes recorded on the VisitEvent and
returned to the caller. Exceptions are reserved for bad input, missing
resources, illegal state transitions and infrastructure failures.

Exception Hierarchy:
    SettlementError (base)
    ├── ValidationError
    ├── AuthenticationError
    ├── ResourceNotFoundError
    ├── InvalidTransitionError
    ├── BalanceInvariantError
    └── ExternalServiceError
        └── GeoLookupError

Usage:
    from exceptions import InvalidTransitionError

    raise InvalidTransitionError(
        "Payout already released",
        detail={"payout_id": 42, "status": "RELEASED"},
    )
"""

from typing import Optional, Dict, Any


class SettlementError(Exception):
    """
    Base exception for all settlement service errors.

    Attributes:
        message: Human-readable error message
        detail: Optional dict with additional error context
        status_code: Suggested HTTP status code (for API errors)
    """

    def __init__(
        self,
        message: str,
        *,
        detail: Optional[Dict[str, Any]] = None,
        status_code: int = 500,
    ):
        super().__init__(message)
        self.message = message
        self.detail = detail
        self.status_code = status_code

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to a dictionary for JSON serialization."""
        result = {
            "error": self.__class__.__name__,
            "message": self.message,
        }
        if self.detail:
            result["detail"] = self.detail
        return result


class ValidationError(SettlementError):
    """
    Raised when input validation fails.

    Examples:
        raise ValidationError("visitorId is required")
        raise ValidationError("Invalid conversion type", detail={"type": "REFUND"})
    """

    def __init__(self, message: str, *, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message, detail=detail, status_code=400)


class AuthenticationError(SettlementError):
    """Raised when an admin token is missing or wrong."""

    def __init__(self, message: str, *, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message, detail=detail, status_code=401)


class ResourceNotFoundError(SettlementError):
    """
    Raised when a requested resource doesn't exist.

    Examples:
        raise ResourceNotFoundError("Payout not found", detail={"payout_id": 7})
        raise ResourceNotFoundError("Creator balance not found")
    """

    def __init__(self, message: str, *, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message, detail=detail, status_code=404)


class InvalidTransitionError(SettlementError):
    """
    Raised when a payout queue entry is asked to move along an edge that
    the state machine does not allow (e.g. cancel a RELEASED entry).

    The entry is left untouched.
    """

    def __init__(
        self,
        message: str,
        *,
        detail: Optional[Dict[str, Any]] = None,
        current: Optional[str] = None,
        target: Optional[str] = None,
    ):
        if detail is None:
            detail = {}
        if current:
            detail["current_status"] = current
        if target:
            detail["target_status"] = target

        super().__init__(message, detail=detail or None, status_code=409)


class ExternalServiceError(SettlementError):
    """
    Base exception for collaborator failures (ledger, pricing, geo).
    """

    def __init__(
        self,
        message: str,
        *,
        detail: Optional[Dict[str, Any]] = None,
        service_name: Optional[str] = None,
    ):
        if service_name and detail is None:
            detail = {"service": service_name}
        elif service_name and detail:
            detail["service"] = service_name

        super().__init__(message, detail=detail, status_code=502)


class GeoLookupError(ExternalServiceError):
    """Raised by geo locators; ingestion converts it into a null country."""

    def __init__(self, message: str, *, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message, detail=detail, service_name="geo")


class BalanceInvariantError(SettlementError):
    """
    Raised when a balance update would drive a creator bucket negative.

    The enclosing transaction is rolled back, so neither the payout entry
    nor the balance changes.
    """

    def __init__(self, message: str, *, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message, detail=detail, status_code=409)
