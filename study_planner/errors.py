"""Error taxonomy for the credits ledger and webhook ingestion."""

from contextlib import contextmanager

from google.api_core import exceptions as gcp_exceptions


class CreditsError(Exception):
    """Base class for ledger failures surfaced to callers."""


class UserNotFoundError(CreditsError):
    def __init__(self, uid):
        super().__init__(f"User not found: {uid}")
        self.uid = uid


class InsufficientBalanceError(CreditsError):
    def __init__(self, uid, balance, requested=1, plan='free'):
        super().__init__(f"Insufficient credits for {uid}: balance={balance}, requested={requested}")
        self.uid = uid
        self.balance = balance
        self.requested = requested
        self.plan = plan


class StoreUnavailableError(CreditsError):
    """The ledger store could not be reached. Retryable."""


class WebhookPayloadError(ValueError):
    pass


class VerificationFailedError(Exception):
    def __init__(self, event_id=''):
        super().__init__(f"Webhook signature verification failed for event {event_id or '<unknown>'}")
        self.event_id = event_id


STORE_EXCEPTIONS = (gcp_exceptions.GoogleAPICallError, gcp_exceptions.RetryError)


@contextmanager
def store_errors(operation):
    """Translate Google API failures raised inside the block to StoreUnavailableError."""
    try:
        yield
    except STORE_EXCEPTIONS as exc:
        raise StoreUnavailableError(f"{operation} failed: {exc}") from exc
