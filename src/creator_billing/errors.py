from typing import Optional


class BillingError(Exception):
    """Base class for every error raised by the billing engine."""


class WebhookVerificationError(BillingError):
    """Bad signature, stale timestamp or malformed envelope. Never retried."""


class AuthorizationError(BillingError):
    """The caller does not own the target subscription or account."""


class ConsistencyError(BillingError):
    """The local store rejected a write; the whole command should be retried."""


class InvalidTransitionError(ConsistencyError):
    """The requested lifecycle transition is not legal from the current state."""


class GatewayError(BillingError):
    """An error reported by (or while talking to) the payment processor."""

    def __init__(self, message: str, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code


class GatewayRetryableError(GatewayError):
    """Connection failures and rate limiting. Safe to try again later."""


class GatewayTimeoutError(GatewayRetryableError):
    """The call did not finish in time. Its outcome at the processor is unknown."""


class GatewayRequestError(GatewayError):
    """The processor refused the request as invalid. Terminal."""


class GatewayDeclinedError(GatewayError):
    """Hard decline. The message is the processor's human-readable reason."""


class GatewayActionRequiredError(GatewayError):
    """The payment needs a further customer step such as 3-D Secure."""

    def __init__(self, message: str, client_secret: Optional[str], code: Optional[str] = None) -> None:
        super().__init__(message, code=code)
        self.client_secret = client_secret


class InsufficientBalanceError(BillingError):
    def __init__(self, requested, available) -> None:
        super().__init__(f"Insufficient balance. Available: {available}, requested: {requested}")
        self.requested = requested
        self.available = available


class PayoutReconciliationError(BillingError):
    """
    The transfer went through at the processor but the local payout record
    could not be written. Needs manual reconciliation, must not be retried.
    """

    def __init__(self, creator_id: str, transfer_id: Optional[str], amount, message: Optional[str] = None) -> None:
        super().__init__(message or (
            f"Transfer {transfer_id} of {amount} to creator {creator_id} succeeded "
            f"but the payout record could not be stored"
        ))
        self.creator_id = creator_id
        self.transfer_id = transfer_id
        self.amount = amount
        self.idempotency_key: Optional[str] = None


class PayoutOutcomeUnknownError(PayoutReconciliationError):
    """
    The transfer call timed out, so the money may or may not have moved.
    Needs manual reconciliation, must not be retried.
    """

    def __init__(self, creator_id: str, idempotency_key: str, amount) -> None:
        super().__init__(creator_id, None, amount, message=(
            f"Transfer of {amount} to creator {creator_id} timed out and its outcome is unknown "
            f"(idempotency key {idempotency_key})"
        ))
        self.idempotency_key = idempotency_key
