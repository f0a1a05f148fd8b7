"""
Engine Exceptions
==================
Every error raised by the allocation/rebalancing layer is an EngineError with
a structured code, so the API layer can map it without string matching.

- ValidationError: bad input, never retried
- NotFoundError: unknown SKU / location / allocation / alert / transfer
- ConflictError: optimistic-concurrency version mismatch, retry with a fresh read
- CapacityError: source cannot cover the requested quantity
"""
from typing import Any, Dict, Optional


class EngineError(Exception):
    """Base error carrying a code, a human message and context data."""

    code: str = "ENGINE_ERROR"
    default_message: str = "Allocation engine error"

    def __init__(self, message: Optional[str] = None, code: Optional[str] = None, **data: Any):
        self.message = message or self.default_message
        if code:
            self.code = code
        self.data: Dict[str, Any] = data
        super().__init__(self.message)

    def as_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "data": self.data}


class ValidationError(EngineError):
    code = "VALIDATION_ERROR"
    default_message = "Invalid request"


class NotFoundError(ValidationError):
    code = "NOT_FOUND"
    default_message = "Record not found"


class InvalidTransitionError(ValidationError):
    code = "INVALID_TRANSITION"
    default_message = "Status transition not allowed"


class ConflictError(EngineError):
    """Raised when a row changed since the caller's snapshot was read."""

    code = "CONCURRENT_MODIFICATION"
    default_message = "Allocation was modified concurrently; re-read and retry"


class CapacityError(EngineError):
    """
    Source location cannot cover the requested transfer quantity.

    Carries requested / fulfilled / shortfall so callers can report a
    partial fulfilment instead of rejecting the whole request.
    """

    code = "INSUFFICIENT_ON_HAND"
    default_message = "Source location has insufficient on-hand stock"

    def __init__(self, requested: int, fulfilled: int, message: Optional[str] = None, **data: Any):
        super().__init__(
            message,
            requested=requested,
            fulfilled=fulfilled,
            shortfall=requested - fulfilled,
            **data,
        )

    @property
    def requested(self) -> int:
        return self.data["requested"]

    @property
    def fulfilled(self) -> int:
        return self.data["fulfilled"]

    @property
    def shortfall(self) -> int:
        return self.data["shortfall"]
