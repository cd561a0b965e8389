class FreightError(Exception):
    """Base for every business-rule failure. `kind` is stable and machine-readable."""

    kind = "error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self):
        return {"kind": self.kind, "message": self.message}


class ValidationError(FreightError, ValueError):
    kind = "validation_error"


class InvalidAmount(ValidationError):
    kind = "invalid_amount"


class Unauthorized(FreightError):
    kind = "unauthorized"


class NotFound(FreightError):
    kind = "not_found"


class BidNotFound(NotFound):
    kind = "bid_not_found"


class InvalidTransition(FreightError):
    kind = "invalid_transition"


class JobNotOpen(FreightError):
    kind = "job_not_open"


class BidNotPending(FreightError):
    kind = "bid_not_pending"


class DuplicateBid(FreightError):
    kind = "duplicate_bid"


class ConcurrencyConflict(FreightError):
    """Lost a race on a conditional update; the state it raced on has moved."""

    kind = "concurrency_conflict"
