"""Billing error taxonomy.

Services raise these; create_app() registers a handler that turns any
BillingError into the JSON failure envelope:

    {"success": false, "message": "...", "code": "..."}

Webhook handlers and bulk syncs catch errors per event / per item instead
of letting them reach the boundary.
"""


class BillingError(Exception):
    """Base class for errors that map to a structured failure response."""

    status_code = 400
    code = "BILLING_ERROR"

    def __init__(self, message, code=None, details=None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.details = details

    def to_dict(self):
        payload = {
            "success": False,
            "message": self.message,
            "code": self.code,
        }
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(BillingError):
    status_code = 400
    code = "VALIDATION_ERROR"


class InvalidSignature(BillingError):
    status_code = 400
    code = "INVALID_SIGNATURE"


class PaymentFailed(BillingError):
    status_code = 402
    code = "PAYMENT_FAILED"


class Forbidden(BillingError):
    status_code = 403
    code = "FORBIDDEN"


class NotFound(BillingError):
    status_code = 404
    code = "NOT_FOUND"


class Conflict(BillingError):
    status_code = 409
    code = "CONFLICT"


class AlreadyActive(Conflict):
    code = "ALREADY_ACTIVE"


class NothingDue(Conflict):
    code = "NOTHING_DUE"


class UpstreamError(BillingError):
    status_code = 502
    code = "UPSTREAM_ERROR"
