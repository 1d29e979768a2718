from typing import Any


class CheckoutError(Exception):
    """Base for every failure the checkout service reports to a caller."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(CheckoutError):
    """Malformed or missing input. Nothing was written."""

    status_code = 400


class MalformedCallbackError(ValidationError):
    pass


class NotFoundError(CheckoutError):
    status_code = 404


class PersistenceError(CheckoutError):
    """An atomic write failed and was rolled back in full."""

    status_code = 500


class AmountMismatchError(CheckoutError):
    """Callback amount differs from the amount recorded at checkout."""

    status_code = 409

    def __init__(self, message: str, expected: Any = None, reported: Any = None):
        super().__init__(message)
        self.expected = expected
        self.reported = reported


class GatewayError(CheckoutError):
    """
    The payment provider rejected or failed a request.
    `response` holds whatever the provider sent back (decoded JSON when
    possible, raw text otherwise, None on transport failure).
    """

    status_code = 502

    def __init__(self, message: str, response: Any = None):
        super().__init__(message)
        self.response = response


class AuthError(GatewayError):
    pass
