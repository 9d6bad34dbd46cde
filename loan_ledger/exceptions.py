"""
Exception hierarchy for the loan ledger.

Every error derives from ValueError so callers that only know the generic
"bad input" contract keep working.
"""


class LoanLedgerError(ValueError):
    """Base exception for all loan ledger errors."""


class CurrencyMismatchError(LoanLedgerError):
    """Raised when Money values of different currencies are combined."""


class ValidationError(LoanLedgerError):
    """Raised when a command is rejected before any state change."""


class NotFoundError(LoanLedgerError):
    """Raised when a referenced entity does not exist."""


class LoanNotFoundError(NotFoundError):
    """Raised when a loan is not registered."""


class LoanChargeNotFoundError(NotFoundError):
    """Raised when a charge is not attached to the loan."""


class InstallmentNotFoundError(NotFoundError):
    """Raised when an installment number is not part of the schedule."""


class TransactionNotFoundError(NotFoundError):
    """Raised when a transaction is not attached to the loan."""


class StrategyNotFoundError(NotFoundError):
    """Raised when a repayment strategy code is unknown."""


class LedgerInvariantError(LoanLedgerError):
    """Raised when a mutation would break a ledger balance invariant."""


class EIRNotEligibleError(ValidationError):
    """Raised when a loan does not meet the preconditions for EIR calculation."""


class EventRecordingError(LoanLedgerError):
    """Raised when the business event recording bracket is misused."""
