from pydantic import BaseModel


class ErrorDetail(BaseModel):
    kind: str
    message: str


class EngineError(Exception):
    kind = "engine_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_detail(self) -> ErrorDetail:
        return ErrorDetail(kind=self.kind, message=self.message)


class NotFound(EngineError):
    kind = "not_found"


class InvalidState(EngineError):
    kind = "invalid_state"


class ValidationFailed(EngineError):
    kind = "validation_failed"


class InsufficientFunds(EngineError):
    kind = "insufficient_funds"


class InsufficientSponsorshipFunds(EngineError):
    kind = "insufficient_sponsorship_funds"


class LimitExceeded(EngineError):
    kind = "limit_exceeded"


class PreApprovalRequired(EngineError):
    kind = "pre_approval_required"


class NotCovered(EngineError):
    kind = "not_covered"


class CurrencyMismatch(EngineError):
    kind = "currency_mismatch"


class ConcurrencyConflict(EngineError):
    kind = "concurrency_conflict"


class StoreUnavailable(RuntimeError):
    """Fatal: the backing store is not open. Never a business outcome."""
