from __future__ import annotations

from typing import Any


class DomainError(Exception):
    """Business-rule failure with a stable machine-readable code."""

    code = "DOMAIN_ERROR"
    status_code = 400

    def __init__(self, message: str, **extra: Any):
        super().__init__(message)
        self.message = message
        self.extra = extra

    def payload(self) -> dict:
        body = {"error": self.code, "message": self.message}
        body.update(self.extra)
        return body


class ValidationError(DomainError):
    code = "VALIDATION_ERROR"
    status_code = 400


class NotFoundError(DomainError):
    code = "NOT_FOUND"
    status_code = 404


class ConflictError(DomainError):
    code = "CONFLICT"
    status_code = 409


class DuplicateTestsError(ConflictError):
    code = "DUPLICATE_TESTS"


class AlreadyFinalizedError(ConflictError):
    code = "ALREADY_FINALIZED"


class ReportFinalizedError(DomainError):
    code = "REPORT_FINALIZED"
    status_code = 409


class ConcurrencyError(DomainError):
    code = "CONCURRENCY_ERROR"
    status_code = 503


class PayoutPaidError(ConflictError):
    code = "PAYOUT_PAID"
