"""ledgersync exception hierarchy."""


class LedgerSyncError(Exception):
    """Base exception for all ledgersync errors."""

    def __init__(self, message: str = "", code: str = "LEDGERSYNC_ERROR"):
        self.message = message
        self.code = code
        super().__init__(message)


class CursorRegressionError(LedgerSyncError):
    """Raised when a consumer cursor would move backwards.

    Signals corrupted state; never auto-corrected.
    """

    def __init__(self, message: str = "Ledger cursor regression detected"):
        super().__init__(message, code="CURSOR_REGRESSION")


class IdempotencyConflictError(LedgerSyncError):
    """Raised when an idempotency key is reused for a different request."""

    def __init__(self, message: str = "Idempotency key already used with a different payload"):
        super().__init__(message, code="IDEMPOTENCY_CONFLICT")


class MissingIdempotencyKeyError(LedgerSyncError):
    def __init__(self, message: str = "Missing required idempotency key"):
        super().__init__(message, code="MISSING_IDEMPOTENCY_KEY")


class InvalidSubmissionError(LedgerSyncError):
    """Raised when a verification payload fails validation."""

    def __init__(self, message: str = "Invalid verification payload"):
        super().__init__(message, code="INVALID_PAYLOAD")


class MilestoneNotFoundError(LedgerSyncError):
    def __init__(self, message: str = "Milestone not found"):
        super().__init__(message, code="NOT_FOUND")


class VerifierNotFoundError(LedgerSyncError):
    def __init__(self, message: str = "Verifier not found"):
        super().__init__(message, code="NOT_FOUND")


class VerifierNotAssignedError(LedgerSyncError):
    """Raised when the caller is not an active verifier on the milestone."""

    def __init__(self, message: str = "Verifier is not assigned to this milestone"):
        super().__init__(message, code="NOT_AUTHORIZED")


class DecisionAlreadyRecordedError(LedgerSyncError):
    """Raised when a verifier already decided under a different idempotency key."""

    def __init__(self, message: str = "Verifier has already decided on this milestone"):
        super().__init__(message, code="ALREADY_DECIDED")


class DeadLetterNotFoundError(LedgerSyncError):
    def __init__(self, message: str = "Dead-letter entry not found"):
        super().__init__(message, code="NOT_FOUND")


class DeadLetterStateError(LedgerSyncError):
    """Raised when a dead-letter entry cannot move to the requested state."""

    def __init__(self, message: str = "Dead-letter entry is not in a reprocessable state"):
        super().__init__(message, code="INVALID_STATE")


class VaultNotFoundError(LedgerSyncError):
    def __init__(self, message: str = "Vault not found"):
        super().__init__(message, code="NOT_FOUND")


class LedgerFetchError(LedgerSyncError):
    """Raised when the ledger source cannot be read."""

    def __init__(self, message: str = "Failed to fetch ledger events"):
        super().__init__(message, code="LEDGER_FETCH_FAILED")


class WebhookDeliveryError(LedgerSyncError):
    """Raised when a webhook receiver does not acknowledge a delivery."""

    def __init__(self, message: str = "Webhook delivery failed", status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message, code="WEBHOOK_DELIVERY_FAILED")
