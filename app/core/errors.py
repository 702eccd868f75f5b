"""Exceptions raised by the order ledger, enrollment store and payment gateway."""

from __future__ import annotations


class LedgerError(Exception):
    """Base exception for payment and enrollment bookkeeping errors."""

    pass


class ConflictError(LedgerError):
    """Raised when a conditional status transition finds the order in another state."""

    def __init__(self, order_id: str, expected: str, actual: str):
        self.order_id = order_id
        self.expected = expected
        self.actual = actual
        super().__init__(f"Order {order_id} is '{actual}', expected '{expected}'")


class OrderNotFoundError(LedgerError):
    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Order not found: {order_id}")


class DuplicateError(LedgerError):
    """Raised when the (student, course) uniqueness constraint rejects an enrollment."""

    def __init__(self, student_id: str, course_id: str):
        self.student_id = student_id
        self.course_id = course_id
        super().__init__(f"Enrollment already exists for student {student_id} in course {course_id}")


class PrivilegeError(LedgerError):
    """Raised when a caller-scoped context attempts a privileged write."""

    def __init__(self, operation: str, actor: str | None = None):
        self.operation = operation
        self.actor = actor
        super().__init__(f"{operation} requires a privileged internal context (actor={actor})")


class GatewayError(LedgerError):
    """Raised when the payment provider cannot confirm a payment.

    ``retryable`` is True for transport errors, timeouts, 429 and 5xx responses.
    """

    def __init__(self, message: str, *, retryable: bool = True, status_code: int | None = None):
        self.retryable = retryable
        self.status_code = status_code
        super().__init__(message)
