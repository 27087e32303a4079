"""Error taxonomy for the portal API.

Services raise these; the handler registered in create_app() renders
them as `{"error": ...}` with the matching status code. Anything else
that escapes a view is logged and rendered as a generic 500.
"""

import re

_SECRET_PATTERN = re.compile(r"\b(sk|rk|whsec)_(live|test)?_?[A-Za-z0-9]+")


def mask_secrets(text):
    """Blank out anything that looks like a Stripe key or webhook secret."""
    if not text:
        return text
    return _SECRET_PATTERN.sub(lambda m: f"{m.group(1)}_***", str(text))


class PortalError(Exception):
    status_code = 500
    public_message = "Internal server error"

    def __init__(self, message=None, status_code=None):
        super().__init__(message or self.public_message)
        self.message = message or self.public_message
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self):
        return {"error": self.message}


class ValidationError(PortalError):
    status_code = 400
    public_message = "Invalid request"


class AuthenticationError(PortalError):
    status_code = 401
    public_message = "Unauthorized"


class AuthorizationError(PortalError):
    status_code = 403
    public_message = "Forbidden"


class NotFoundError(PortalError):
    status_code = 404
    public_message = "Not found"


class ProductNotFoundError(NotFoundError):
    public_message = "Product not found"


class PendingOrderNotFoundError(NotFoundError):
    public_message = "Pending order not found"


class ClaimConflictError(PortalError):
    status_code = 409
    public_message = "This order has already been claimed"


class ConfigurationError(PortalError):
    """Operator misconfiguration — the message is meant for operators."""

    status_code = 500
    public_message = "Stripe is not configured"


class GatewayError(PortalError):
    """Stripe rejected a call.

    `raw_body` keeps the provider's error payload for the logs; the
    message shown to callers stays generic.
    """

    status_code = 500
    public_message = "Payment provider request failed"

    def __init__(self, operation, raw_body=None, http_status=None):
        super().__init__(self.public_message)
        self.operation = operation
        self.raw_body = mask_secrets(raw_body)
        self.http_status = http_status

    def __str__(self):
        return f"{self.operation} failed ({self.http_status}): {self.raw_body}"


class PaymentNotCompletedError(PortalError):
    """Checkout session was abandoned or is still pending — expected, not a bug."""

    status_code = 400
    public_message = "Payment not completed"

    def __init__(self, status):
        super().__init__(self.public_message)
        self.status = status

    def to_dict(self):
        return {"error": self.message, "status": self.status}
