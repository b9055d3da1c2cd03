from __future__ import annotations

import functools

from sqlalchemy.orm.exc import StaleDataError


class WorkflowError(Exception):
    code = 'workflow_error'
    status_code = 400

    def __init__(self, message: str, **extra) -> None:
        super().__init__(message)
        self.message = message
        self.extra = extra

    def to_dict(self) -> dict:
        return {'code': self.code, 'message': self.message, **self.extra}


class ValidationError(WorkflowError, ValueError):
    code = 'validation_error'
    status_code = 400


class NotFoundError(WorkflowError, LookupError):
    code = 'not_found'
    status_code = 404


class InvalidTransition(WorkflowError):
    code = 'invalid_transition'
    status_code = 409


class Blocked(WorkflowError):
    """Gating denied the transition; retry once the prerequisite clears."""

    code = 'blocked'
    status_code = 409

    def __init__(self, message: str, *, tier: str | None, reason: str | None) -> None:
        super().__init__(message, tier=tier, reason=reason)
        self.tier = tier
        self.reason = reason


class ConcurrencyConflict(WorkflowError):
    code = 'concurrency_conflict'
    status_code = 409

    def __init__(self, message: str = 'Record was modified concurrently, retry the request') -> None:
        super().__init__(message, retryable=True)


class QuantityOutOfRange(WorkflowError):
    code = 'quantity_out_of_range'
    status_code = 422

    def __init__(self, quantity: int, *, minimum: int, maximum: int) -> None:
        super().__init__(
            f'Quantity {quantity} is outside the allowed range {minimum}..{maximum}',
            quantity=quantity,
            minimum=minimum,
            maximum=maximum,
        )


def guard_conflicts(func):
    """Report a lost optimistic version check as ConcurrencyConflict."""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except StaleDataError as exc:
            raise ConcurrencyConflict() from exc

    return wrapper
