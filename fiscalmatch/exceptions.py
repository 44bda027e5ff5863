"""
Typed errors for the reconciliation engine.

    FiscalMatchError
    +-- TransactionValidationError   bad raw bank record
    +-- DistributionError            defect in the amount split (never retried)
    |   +-- DistributionOverflow
    |   +-- DistributionMismatch
    +-- IllegalCheckTransition       attempt to leave a terminal check state
    +-- FiscalApiError               Checkbox answered with an error
    |   +-- FiscalAuthError
    |   +-- FiscalReceiptRejected
    +-- BankFeedError
"""


class FiscalMatchError(Exception):
    code = "FISCALMATCH_ERROR"


class TransactionValidationError(FiscalMatchError):
    code = "INVALID_TRANSACTION"


class DistributionError(FiscalMatchError):
    code = "DISTRIBUTION_ERROR"


class DistributionOverflow(DistributionError):
    code = "DISTRIBUTION_OVERFLOW"

    def __init__(self, total, iterations):
        self.total = total
        self.iterations = iterations
        super().__init__(
            f"Amount distribution for {total} did not converge after {iterations} iterations"
        )


class DistributionMismatch(DistributionError):
    code = "DISTRIBUTION_MISMATCH"

    def __init__(self, expected, actual):
        self.expected = expected
        self.actual = actual
        super().__init__(f"Total amount mismatch: expected {expected} UAH, got {actual} UAH")


class IllegalCheckTransition(FiscalMatchError):
    code = "ILLEGAL_CHECK_TRANSITION"

    def __init__(self, current, target):
        self.current = current
        self.target = target
        super().__init__(f"Cannot move check state from {current.kind.value} to {target.kind.value}")


class FiscalApiError(FiscalMatchError):
    code = "FISCAL_API_ERROR"

    def __init__(self, message, status_code=None, body=None):
        self.status_code = status_code
        self.body = body
        super().__init__(message)


class FiscalAuthError(FiscalApiError):
    code = "FISCAL_AUTH_ERROR"


class FiscalReceiptRejected(FiscalApiError):
    code = "FISCAL_RECEIPT_REJECTED"


class BankFeedError(FiscalMatchError):
    code = "BANK_FEED_ERROR"

    def __init__(self, message, error_code="API_ERROR", status_code=None):
        self.error_code = error_code
        self.status_code = status_code
        super().__init__(message)
