"""
Typed errors for the batch stock and expiry engine.

Every error carries a machine-readable ``code`` and structured detail so
callers can render a precise message without parsing strings:

    StockEngineError
    ├── ValidationError
    ├── NotFoundError
    ├── InsufficientStockError
    ├── InvalidStateError
    ├── ConflictError
    │   ├── DuplicateBatchNumberError   (also a ValidationError)
    │   ├── AlreadyQuarantinedError
    │   └── RunInProgressError
    ├── AlreadyCompletedError
    └── ExpiryScanTimeoutError          (also a builtin TimeoutError)

None of these are retried by the engine. ``AlreadyCompletedError`` is a
control-flow signal: the caller may retry with ``force=True``.
"""

from __future__ import annotations

from datetime import date
from typing import Any


class StockEngineError(Exception):
    """Base class for engine errors."""

    code = "engine_error"

    def __init__(self, message: str, **detail: Any):
        super().__init__(message)
        self.message = message
        self.detail = detail

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.code, "message": self.message, "detail": _jsonable(self.detail)}


class ValidationError(StockEngineError):
    code = "validation_error"

    def __init__(self, field: str, message: str):
        super().__init__(message, field=field)
        self.field = field


class NotFoundError(StockEngineError):
    code = "not_found"

    def __init__(self, entity: str, entity_id: Any):
        super().__init__(f"{entity} {entity_id} not found", entity=entity, entity_id=str(entity_id))
        self.entity = entity
        self.entity_id = entity_id


class InsufficientStockError(StockEngineError):
    code = "insufficient_stock"

    def __init__(self, requested: int, available: int):
        super().__init__(
            f"Cannot consume more than available ({available})",
            requested=requested,
            available=available,
        )
        self.requested = requested
        self.available = available


class InvalidStateError(StockEngineError):
    code = "invalid_state"

    def __init__(self, current_state: str, operation: str):
        super().__init__(
            f"Cannot {operation} while in '{current_state}' state",
            current_state=current_state,
            operation=operation,
        )
        self.current_state = current_state
        self.operation = operation


class ConflictError(StockEngineError):
    code = "conflict"


class DuplicateBatchNumberError(ConflictError, ValidationError):
    code = "duplicate_batch_number"

    def __init__(self, product_id: Any, batch_number: str):
        StockEngineError.__init__(
            self,
            f"Batch number '{batch_number}' already exists for this product",
            field="batch_number",
            product_id=str(product_id),
            batch_number=batch_number,
        )
        self.field = "batch_number"
        self.product_id = product_id
        self.batch_number = batch_number


class AlreadyQuarantinedError(ConflictError):
    code = "already_quarantined"

    def __init__(self, batch_id: Any):
        super().__init__("Batch is already quarantined", batch_id=str(batch_id))
        self.batch_id = batch_id


class RunInProgressError(ConflictError):
    code = "run_in_progress"

    def __init__(self, check_date: date, run_id: Any):
        super().__init__(
            f"An expiry check for {check_date.isoformat()} is already running",
            check_date=check_date,
            run_id=str(run_id),
        )
        self.check_date = check_date
        self.run_id = run_id


class AlreadyCompletedError(StockEngineError):
    code = "already_completed"

    def __init__(self, check_date: date, run_id: Any):
        super().__init__(
            f"An expiry check has already been completed for {check_date.isoformat()}",
            check_date=check_date,
            run_id=str(run_id),
        )
        self.check_date = check_date
        self.run_id = run_id


class ExpiryScanTimeoutError(StockEngineError, TimeoutError):
    code = "scan_timeout"

    def __init__(self, timeout_seconds: float):
        super().__init__(
            f"Expiry scan exceeded {timeout_seconds:g}s",
            timeout_seconds=timeout_seconds,
        )
        self.timeout_seconds = timeout_seconds


def _jsonable(detail: dict[str, Any]) -> dict[str, Any]:
    return {key: value.isoformat() if isinstance(value, date) else value for key, value in detail.items()}
