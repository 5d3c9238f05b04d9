"""
Custom Application Exceptions
"""
from typing import List, Optional, Sequence, Tuple


class PharmaPOSException(Exception):
    """Base exception for recoverable PharmaPOS errors"""

    def __init__(self, message: str, entity: Optional[str] = None):
        self.entity = entity
        self.message = message
        super().__init__(message)


class ValidationError(PharmaPOSException):
    """Raised when input is malformed (bad quantity, unknown code, missing pair)"""
    pass


class NotFoundError(PharmaPOSException):
    """Raised when a shop, drug, order, batch or ledger does not exist"""

    def __init__(self, entity: str, key):
        self.key = key
        super().__init__(f"{entity} '{key}' was not found", entity=entity)


class InsufficientStock(PharmaPOSException):
    """Raised when free eligible stock cannot cover an allocation"""

    def __init__(self, entity: str, requested: int, available: int):
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient stock for {entity}: requested {requested}, available {available}",
            entity=entity,
        )


class InsufficientPayment(PharmaPOSException):
    """Raised when the amount tendered does not cover the order total"""

    def __init__(self, entity: str, total_amount, amount_paid):
        self.total_amount = total_amount
        self.amount_paid = amount_paid
        super().__init__(
            f"Amount paid ({amount_paid}) is less than total amount ({total_amount}) for {entity}",
            entity=entity,
        )


class InvalidStateTransition(PharmaPOSException):
    """Raised when an operation is not legal for the current order status"""

    def __init__(self, entity: str, current: str, attempted: str):
        self.current = current
        self.attempted = attempted
        super().__init__(
            f"Cannot {attempted} {entity} in status {current}",
            entity=entity,
        )


class ConcurrencyConflict(PharmaPOSException):
    """Raised when a plan or lock is no longer in the expected state"""
    pass


class AlreadyCommitted(ConcurrencyConflict):
    """Raised when an allocation plan is committed a second time"""

    def __init__(self, plan_id: str):
        self.plan_id = plan_id
        super().__init__(f"Allocation plan '{plan_id}' is already committed", entity=plan_id)


class PlanNotFound(ConcurrencyConflict):
    """Raised when a plan is unknown, released or already committed"""

    def __init__(self, plan_id: str, reason: str = "not pending"):
        self.plan_id = plan_id
        self.reason = reason
        super().__init__(f"Allocation plan '{plan_id}' is {reason}", entity=plan_id)


class PartialCompletionFailure(PharmaPOSException):
    """
    Raised when some item commits of an order completion failed.

    Commits that succeeded are kept; the failures need manual reconciliation.
    """

    def __init__(self, entity: str, succeeded: Sequence[str], failed: Sequence[Tuple[str, str]]):
        self.succeeded: List[str] = list(succeeded)
        self.failed: List[Tuple[str, str]] = list(failed)
        failed_ids = ", ".join(item_id for item_id, _ in self.failed)
        super().__init__(
            f"Completion of {entity} partially applied: "
            f"{len(self.succeeded)} item(s) committed, failed item(s): {failed_ids}",
            entity=entity,
        )


class InvariantViolation(RuntimeError):
    """Internal error: a ledger invariant was broken. Not recoverable by the caller."""
    pass
