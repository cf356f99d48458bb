"""Typed failures surfaced by the payment core.

Callers branch on the class: validation problems are fixed by correcting the
input, security violations are never retried, gateway errors may be retried
with a fresh transaction reference, and not-found means the transaction never
existed.
"""


class PaymentError(Exception):
    """Base class for every error raised by the payment core."""

    code = "PAYMENT_ERROR"
    retryable = False


class ValidationError(PaymentError):
    """Bad input detected before any gateway interaction."""

    code = "VALIDATION_ERROR"


class PaymentInProgressError(ValidationError):
    """Another payment for the same order is still awaiting the user."""

    code = "PAYMENT_IN_PROGRESS"

    def __init__(self, message: str, transaction_id: str) -> None:
        super().__init__(message)
        self.transaction_id = transaction_id


class SecurityViolation(PaymentError):
    """Signature missing/invalid/tampered, or a replayed callback."""

    code = "SECURITY_VIOLATION"


class AmountMismatchError(SecurityViolation):
    """Signed amount differs from the amount recorded for the transaction."""

    code = "AMOUNT_MISMATCH"


class GatewayError(PaymentError):
    """Network failure, timeout, or malformed response from the gateway."""

    code = "GATEWAY_ERROR"
    retryable = True


class GatewayTimeoutError(GatewayError):
    code = "GATEWAY_TIMEOUT"


class GatewayUnavailableError(GatewayError):
    code = "GATEWAY_UNAVAILABLE"


class MalformedGatewayResponseError(GatewayError):
    code = "GATEWAY_MALFORMED_RESPONSE"


class NotFoundError(PaymentError):
    """A callback or status query referenced an unknown transaction."""

    code = "NOT_FOUND"


class ConfigurationError(PaymentError):
    """The core was wired incorrectly (missing adapter, unmapped method type)."""

    code = "CONFIGURATION_ERROR"
