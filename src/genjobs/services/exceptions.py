"""Service error hierarchy for external calls, image handling and the credit ledger.

This module defines the exception hierarchy for service-level errors:
- ServiceError: Base for all service errors
- TransientError: Retryable errors (network, rate limits, timeouts)
- PermanentError: Non-retryable errors (authentication, validation)
- LedgerError: Credit ledger rejections (insufficient funds, missing reservation)
"""


class ServiceError(Exception):
    """Base exception for all service errors."""

    pass


class TransientError(ServiceError):
    """Transient error that may succeed on retry.

    Examples:
    - Network timeouts
    - Rate limit exceeded (429)
    - Service unavailable (503)
    """

    retryable = True


class PermanentError(ServiceError):
    """Permanent error that will not succeed on retry.

    Examples:
    - Authentication failures (401, 403)
    - Invalid request parameters (400)
    - Configuration errors
    """

    retryable = False


# External service errors
class TransientExternalError(TransientError):
    """Prompt-enhancement or synthesis call failed in a retryable way."""

    pass


class PermanentExternalError(PermanentError):
    """Prompt-enhancement or synthesis call failed in a non-retryable way."""

    pass


# Image pipeline errors
class FetchError(ServiceError):
    """Image download failed.

    Attributes:
        transient: True for timeouts, connection errors, 429 and 5xx responses
        status_code: HTTP status when the server answered
    """

    def __init__(self, message: str, transient: bool, status_code: int | None = None):
        super().__init__(message)
        self.transient = transient
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        return self.transient


class StorageError(PermanentError):
    """Object storage upload failed; fails the stage that needed it."""

    pass


# Credit ledger errors
class LedgerError(ServiceError):
    """Base exception for credit ledger errors."""

    pass


class InsufficientFunds(LedgerError):
    """Balance is lower than the amount to reserve."""

    def __init__(self, user_id, balance: int, required: int):
        super().__init__(f"Insufficient credits: balance {balance}, required {required}")
        self.user_id = user_id
        self.balance = balance
        self.required = required


class NoPriorReservation(LedgerError):
    """Refund or confirm requested for a job that never reserved credits."""

    pass


class LedgerConflict(LedgerError):
    """Balance compare-and-swap kept losing to concurrent writers."""

    pass


class AccountNotFound(LedgerError):
    """No user account exists for the given id."""

    pass
