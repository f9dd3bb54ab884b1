"""Exception taxonomy for settlement, validation and ledger failures."""

from typing import Optional


class SettlementError(Exception):
    """Base class for all ChainSettle errors."""

    code = "SETTLEMENT_ERROR"


class NoQuoteAvailable(SettlementError):
    """Every price provider failed; no intent is created."""

    code = "NO_QUOTE_AVAILABLE"


class ValidationFailure(SettlementError):
    """Raised inside a validator and captured into a ValidationResult."""

    code = "VALIDATION_FAILURE"


class ReferenceNotFound(ValidationFailure):
    code = "REFERENCE_NOT_FOUND"


class OnChainExecutionFailed(ValidationFailure):
    code = "ON_CHAIN_EXECUTION_FAILED"


class RecipientMismatch(ValidationFailure):
    code = "RECIPIENT_MISMATCH"


class InsufficientAmount(ValidationFailure):
    code = "INSUFFICIENT_AMOUNT"


class TransientSourceError(ValidationFailure):
    """Chain or provider unreachable; the intent stays PENDING."""

    code = "TRANSIENT_SOURCE_ERROR"


class LedgerIntegrityViolation(SettlementError):
    """Recomputed audit chain diverges from the stored one."""

    code = "LEDGER_INTEGRITY_VIOLATION"

    def __init__(self, message: str, index: Optional[int] = None):
        super().__init__(message)
        self.index = index


class ConcurrentFinalizationConflict(SettlementError):
    """Two commits tried to extend the same chain head."""

    code = "CONCURRENT_FINALIZATION_CONFLICT"


class IntentStateError(SettlementError):
    """Illegal status transition, e.g. out of a final status."""

    code = "INTENT_STATE_ERROR"


class IntentNotFound(SettlementError):
    code = "INTENT_NOT_FOUND"


class ReferenceAlreadyBound(SettlementError):
    """A transaction reference is already attached to another intent."""

    code = "REFERENCE_ALREADY_BOUND"
