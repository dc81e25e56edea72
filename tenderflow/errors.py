from __future__ import annotations


class ApiError(Exception):
    def __init__(
        self,
        *,
        code: str,
        message: str,
        error_class: str,
        retryable: bool,
        http_status: int,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.error_class = error_class
        self.retryable = retryable
        self.http_status = http_status

    def as_dict(self) -> dict[str, object]:
        return {
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
            "class": self.error_class,
        }


class _TaxonomyError(ApiError):
    """ApiError with per-class defaults so call sites only pass the message."""

    default_code = "INTERNAL_ERROR"
    default_message = "internal error"
    error_class_name = "internal"
    is_retryable = False
    status = 500

    def __init__(self, message: str | None = None, *, code: str | None = None) -> None:
        super().__init__(
            code=code or self.default_code,
            message=message or self.default_message,
            error_class=self.error_class_name,
            retryable=self.is_retryable,
            http_status=self.status,
        )


class NotFound(_TaxonomyError):
    default_code = "NOT_FOUND"
    default_message = "resource not found"
    error_class_name = "validation"
    status = 404


class Forbidden(_TaxonomyError):
    default_code = "FORBIDDEN"
    default_message = "actor is not allowed to perform this action"
    error_class_name = "security_sensitive"
    status = 403


class ValidationFailed(_TaxonomyError):
    default_code = "REQ_VALIDATION_FAILED"
    default_message = "invalid payload"
    error_class_name = "validation"
    status = 400


class InvalidTransition(_TaxonomyError):
    default_code = "INVALID_TRANSITION"
    default_message = "illegal status transition"
    error_class_name = "business_rule"
    status = 409


class AlreadyProcessed(_TaxonomyError):
    default_code = "BID_ALREADY_PROCESSED"
    default_message = "bid has already been processed"
    error_class_name = "business_rule"
    status = 409


class DuplicateBid(_TaxonomyError):
    default_code = "DUPLICATE_BID"
    default_message = "vendor has already submitted a bid for this tender"
    error_class_name = "business_rule"
    status = 409


class DeadlinePassed(_TaxonomyError):
    default_code = "DEADLINE_PASSED"
    default_message = "tender deadline has passed"
    error_class_name = "business_rule"
    status = 409


class TenderNotOpen(_TaxonomyError):
    default_code = "TENDER_NOT_OPEN"
    default_message = "tender is not open for bidding"
    error_class_name = "business_rule"
    status = 409


class TenderLocked(_TaxonomyError):
    default_code = "TENDER_LOCKED"
    default_message = "cannot modify budget, deadline or requirements after receiving bids"
    error_class_name = "business_rule"
    status = 409


class BudgetOutOfRange(_TaxonomyError):
    default_code = "BID_AMOUNT_OUT_OF_BUDGET"
    default_message = "bid amount is outside the tender budget"
    error_class_name = "business_rule"
    status = 400


class ConnectionUnavailable(_TaxonomyError):
    default_code = "DB_UNAVAILABLE"
    default_message = "database connection is unavailable"
    error_class_name = "transient"
    is_retryable = True
    status = 503


class TransactionFailed(_TaxonomyError):
    # Not retryable: the caller decides whether repeating a side effect is safe.
    default_code = "TRANSACTION_FAILED"
    default_message = "transaction aborted and rolled back"
    error_class_name = "transient"
    status = 500


class TransactionTimeout(TransactionFailed):
    default_code = "TRANSACTION_TIMEOUT"
    default_message = "transaction exceeded its time budget"
