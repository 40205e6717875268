"""
Error kinds raised by the rules and request handlers.

Every error carries the HTTP status it maps to; the app renders them as
``{"detail": message, ...extra}``.
"""

from typing import Any, Dict, Optional


class APIError(Exception):
    status_code = 500

    def __init__(self, message: str, extra: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.extra = extra or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"detail": self.message, **self.extra}


class ValidationError(APIError):
    status_code = 400


class Forbidden(APIError):
    status_code = 403


class NotFound(APIError):
    status_code = 404


class Conflict(APIError):
    status_code = 409


class InternalError(APIError):
    status_code = 500


class ServiceUnavailable(APIError):
    status_code = 503


class QuotaExceeded(Forbidden):
    def __init__(self, current_count: int, limit: int):
        super().__init__(
            "Product limit reached",
            {
                "message": "Regular users can only submit 1 product. "
                           "Upgrade to premium to submit unlimited products.",
                "currentCount": current_count,
                "limit": limit,
                "upgradeRequired": True,
            },
        )
        self.current_count = current_count
        self.limit = limit


class PaymentProviderError(InternalError):
    pass


class CouponError(APIError):
    NOT_FOUND = "not_found"
    INACTIVE = "inactive"
    EXPIRED = "expired"
    EXHAUSTED_USES = "exhausted_uses"

    MESSAGES = {
        NOT_FOUND: "Coupon not found",
        INACTIVE: "Coupon is not active",
        EXPIRED: "Coupon has expired",
        EXHAUSTED_USES: "Coupon usage limit reached",
    }

    def __init__(self, reason: str):
        super().__init__(self.MESSAGES[reason], {"reason": reason})
        self.reason = reason
        self.status_code = 404 if reason == self.NOT_FOUND else 400
