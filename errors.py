# Juice Ledger error taxonomy.
# Every failure a caller can act on has its own type. The API maps these to
# HTTP codes, the batch runner counts them per row, and nothing money-moving
# swallows them inside a transaction.


class LedgerError(Exception):
    """Base class for all ledger/settlement errors."""

    code = "ledger_error"

    def __init__(self, message: str = "", **context):
        super().__init__(message or self.code)
        self.context = context


class ValidationError(LedgerError, ValueError):
    """Malformed amount, address, score or enum value. Raised before any write."""

    code = "validation_error"


class InsufficientBalance(LedgerError):
    code = "insufficient_balance"

    def __init__(self, user_id: str, requested_cents: int, message: str = ""):
        super().__init__(
            message or f"Insufficient Juice balance for {user_id}",
            user_id=user_id,
            requested_cents=requested_cents,
        )
        self.user_id = user_id
        self.requested_cents = requested_cents


class DuplicateExternalRef(LedgerError):
    """Idempotency conflict. Webhook handlers treat this as a success no-op."""

    code = "duplicate_external_ref"

    def __init__(self, external_ref: str, existing_id: str):
        super().__init__(
            f"External ref {external_ref} already recorded as {existing_id}",
            external_ref=external_ref,
            existing_id=existing_id,
        )
        self.external_ref = external_ref
        self.existing_id = existing_id


class NotFound(LedgerError):
    code = "not_found"


class AlreadyTerminal(LedgerError):
    """Row already settled/credited/refunded. Surfaced, never dropped."""

    code = "already_terminal"

    def __init__(self, row_id: str, status: str, message: str = ""):
        super().__init__(
            message or f"{row_id} is already terminal ({status})",
            row_id=row_id,
            status=status,
        )
        self.row_id = row_id
        self.status = status


class InvalidTransition(LedgerError):
    code = "invalid_transition"


class ExecutionFailure(LedgerError):
    """The chain-execution collaborator reported or raised a failure."""

    code = "execution_failure"


class ExecutionTimeout(ExecutionFailure):
    """No answer within the timeout. The row stays in flight."""

    code = "execution_timeout"


class RetryExhausted(LedgerError):
    """Retry budget spent. Needs an operator refund or manual review."""

    code = "retry_exhausted"

    def __init__(self, row_id: str, retry_count: int):
        super().__init__(
            f"{row_id} exhausted its retries ({retry_count})",
            row_id=row_id,
            retry_count=retry_count,
        )
        self.row_id = row_id
        self.retry_count = retry_count
