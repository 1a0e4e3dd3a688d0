"""
Error Taxonomy for Content Rail

Every failure the licensing core or the settlement layer can surface is a
ContentRailError. Each class carries a stable ``code`` used in HTTP error
bodies and in per-item settlement outcomes.
"""

from typing import Any, Dict, Optional


class ContentRailError(Exception):
    """Base class for all content rail errors."""
    code = "CONTENT_RAIL_ERROR"

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = context

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.message, "code": self.code, **self.context}


# ----------------------------------------------------------------------------
# Validation
# ----------------------------------------------------------------------------

class ValidationError(ContentRailError):
    """Bad or missing input. Rejected before any state change."""
    code = "VALIDATION_ERROR"


class InvalidPrice(ValidationError):
    code = "INVALID_PRICE"


class InvalidFingerprint(ValidationError):
    code = "INVALID_FINGERPRINT"


class MissingField(ValidationError):
    code = "MISSING_FIELD"


class AlreadyRegistered(ValidationError):
    code = "ALREADY_REGISTERED"


# ----------------------------------------------------------------------------
# Authorization / lookup
# ----------------------------------------------------------------------------

class AuthorizationError(ContentRailError):
    code = "FORBIDDEN"


class NotOwner(AuthorizationError):
    code = "NOT_OWNER"


class NotFoundError(ContentRailError):
    code = "NOT_FOUND"


class ContentNotFound(NotFoundError):
    code = "CONTENT_NOT_FOUND"


class ContentInactive(ContentRailError):
    """Content exists but its owner has disabled it."""
    code = "CONTENT_INACTIVE"


# ----------------------------------------------------------------------------
# Budget
# ----------------------------------------------------------------------------

class BudgetError(ContentRailError):
    """A spending ceiling would be exceeded. Nothing was spent."""
    code = "BUDGET_EXCEEDED"

    def __init__(
        self,
        message: str,
        payer: Optional[str] = None,
        amount: int = 0,
        limit: int = 0,
        **context: Any,
    ):
        super().__init__(message, **context)
        self.payer = payer
        self.amount = amount
        self.limit = limit


class PerItemCeilingExceeded(BudgetError):
    code = "PER_ITEM_CEILING_EXCEEDED"


class DailyCeilingExceeded(BudgetError):
    code = "DAILY_CEILING_EXCEEDED"


# ----------------------------------------------------------------------------
# Payment rail
# ----------------------------------------------------------------------------

class PaymentRailError(ContentRailError):
    code = "RAIL_ERROR"


class TransferFailed(PaymentRailError):
    """A single transfer was rejected by the rail."""
    code = "TRANSFER_FAILED"


class BatchFailed(PaymentRailError):
    """An atomic batch was rejected as a whole. No sub-transfer applied."""
    code = "BATCH_FAILED"


# ----------------------------------------------------------------------------
# Licensing service
# ----------------------------------------------------------------------------

class LicensingUnavailable(ContentRailError):
    """The licensing service could not be reached or did not answer."""
    code = "LICENSING_UNAVAILABLE"


def _all_subclasses(cls):
    for sub in cls.__subclasses__():
        yield sub
        yield from _all_subclasses(sub)


def error_from_code(code: Optional[str], message: str, **context: Any) -> ContentRailError:
    """Rebuild a typed error from its wire ``code`` (e.g. in an HTTP error body)."""
    for cls in _all_subclasses(ContentRailError):
        if cls.code == code:
            return cls(message, **context)
    return ContentRailError(message, **context)
