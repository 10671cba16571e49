"""
Fulfillment Exception Hierarchy

Structured exception classes for shipment fulfillment. Every error carries a
code, message, details and severity so the orchestrator can persist it on the
order and the audit trail can record it verbatim.

Exception Hierarchy:
    FulfillmentError
    ├── ConfigurationError
    ├── AuthenticationError
    ├── MissingAddressError
    ├── InvalidAddressError
    ├── PayloadValidationError
    └── CarrierAPIError
        ├── AmbiguousResponseError
        └── CarrierResponseParseError
"""
import logging
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class FulfillmentError(Exception):
    """
    Base exception for all fulfillment errors.

    Attributes:
        message: Human-readable error description
        code: Machine-readable error code, persisted as the failure reason prefix
        details: Additional context for debugging/audit
        severity: P0-P3 severity level
    """

    default_code: str = "FULFILLMENT_ERROR"
    default_severity: str = "P2"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        severity: Optional[str] = None,
    ):
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}
        self.severity = severity or self.default_severity
        super().__init__(self.message)

    @property
    def reason(self) -> str:
        """Failure reason as stored on the order."""
        return f"{self.code}: {self.message}"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging/serialization."""
        return {
            "error_type": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            "severity": self.severity,
            "details": self.details,
        }

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(code={self.code!r}, message={self.message!r})"


class ConfigurationError(FulfillmentError):
    """Missing or invalid environment; raised before any network call."""
    default_code = "CONFIGURATION_ERROR"
    default_severity = "P0"


class AuthenticationError(FulfillmentError):
    """Carrier credentials missing or rejected (after one forced refresh)."""
    default_code = "AUTH_FAILED"
    default_severity = "P0"


class MissingAddressError(FulfillmentError):
    """No usable shipping address could be resolved for the order."""
    default_code = "MISSING_SHIPPING_ADDRESS"
    default_severity = "P1"


class InvalidAddressError(FulfillmentError):
    """A resolved address has a malformed field."""
    default_code = "INVALID_ADDRESS"
    default_severity = "P1"

    def __init__(self, message: str, field: str, **kwargs):
        details = kwargs.pop("details", {})
        details["field"] = field
        self.field = field
        super().__init__(message, details=details, **kwargs)

    @property
    def reason(self) -> str:
        return f"{self.code}:{self.field}"


class PayloadValidationError(FulfillmentError):
    """Shipment payload failed validation; carries every violated rule."""
    default_code = "INVALID_PAYLOAD"
    default_severity = "P1"

    def __init__(self, violations: List[str], **kwargs):
        self.violations = list(violations)
        details = kwargs.pop("details", {})
        details["violations"] = self.violations
        super().__init__("; ".join(self.violations), details=details, **kwargs)


class CarrierAPIError(FulfillmentError):
    """Carrier returned a non-success response or could not be reached."""
    default_code = "CARRIER_API_ERROR"
    default_severity = "P1"

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        body: Any = None,
        **kwargs
    ):
        self.status_code = status_code
        self.body = body
        details = kwargs.pop("details", {})
        details.update({"status_code": status_code, "body": body})
        super().__init__(message, details=details, **kwargs)


class AmbiguousResponseError(CarrierAPIError):
    """2xx carrier response without the identifiers required to call it booked."""
    default_code = "AMBIGUOUS_RESPONSE"


class CarrierResponseParseError(CarrierAPIError):
    """Carrier response body was not valid JSON."""
    default_code = "INVALID_RESPONSE"
