from django.core.exceptions import ValidationError


class BankingError(ValidationError):
    """Base class for typed banking failures.

    Subclasses ValidationError so views and forms that already handle
    ValidationError keep working, while callers that care can branch on the
    concrete class, ``code`` or ``retryable``.
    """

    code = 'banking_error'
    default_message = 'Banking operation failed.'
    http_status = 400
    retryable = False

    def __init__(self, message=None, params=None):
        super().__init__(message or self.default_message, code=self.code, params=params)

    def __str__(self):
        return self.message % self.params if self.params else self.message


class InvalidAmount(BankingError):
    code = 'invalid_amount'
    default_message = 'Amount must be a positive number with at most two decimal places.'


class InsufficientFunds(BankingError):
    code = 'insufficient_funds'
    default_message = 'Insufficient funds.'


class AccountMismatch(BankingError):
    code = 'account_mismatch'
    default_message = 'Accounts must be two different accounts owned by the student.'
    http_status = 403


class AccessDenied(BankingError):
    code = 'access_denied'
    default_message = 'Access denied.'
    http_status = 403


class OverpaymentNotAllowed(BankingError):
    code = 'overpayment_not_allowed'
    default_message = 'Payment exceeds the remaining bill amount.'


class BillNotFound(BankingError):
    code = 'bill_not_found'
    default_message = 'Bill not found.'
    http_status = 404


class BillClosed(BankingError):
    code = 'bill_closed'
    default_message = 'Bill is cancelled and can no longer be paid.'


class AccountNotFound(BankingError):
    code = 'account_not_found'
    default_message = 'Account not found.'
    http_status = 404


class StatementNotFound(BankingError):
    code = 'statement_not_found'
    default_message = 'Statement not found.'
    http_status = 404


class InvalidPeriod(BankingError):
    code = 'invalid_period'
    default_message = 'Statement period must be a valid month and year.'


class PeriodNotElapsed(BankingError):
    code = 'period_not_elapsed'
    default_message = 'Statements are only available once the month has ended.'


class LockTimeout(BankingError):
    code = 'lock_timeout'
    default_message = 'Account is busy. Please try again.'
    http_status = 503
    retryable = True


class ConcurrencyConflict(BankingError):
    code = 'concurrency_conflict'
    default_message = 'Account changed while processing. Please try again.'
    http_status = 409
    retryable = True


class AdjustmentNotFound(BankingError):
    code = 'adjustment_not_found'
    default_message = 'Scheduled adjustment not found.'
    http_status = 404
