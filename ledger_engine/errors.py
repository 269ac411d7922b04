"""
Ledger Error Taxonomy

Domain-specific failures raised by the ledger, transfer and loan services.
Every error is raised before any state is mutated, and all of them derive
from ValueError so callers written against plain validation errors keep
working.
"""


class LedgerError(ValueError):
    """Base class for all ledger and loan failures"""


class InvalidAmount(LedgerError):
    """Amount is zero, negative or not a number"""


class InvalidTerm(LedgerError):
    """Loan term is outside the allowed range of months"""


class InsufficientFunds(LedgerError):
    """Debit would take an account balance below zero"""

    def __init__(self, account_id: str, balance, requested):
        self.account_id = account_id
        self.balance = balance
        self.requested = requested
        super().__init__(
            f"Insufficient funds in account {account_id}: "
            f"balance {balance}, requested {requested}"
        )


class AccountNotFound(LedgerError):
    """No account with the given id or account number"""

    def __init__(self, account_ref: str):
        self.account_ref = account_ref
        super().__init__(f"Account {account_ref} not found")


class AccountClosed(LedgerError):
    """Account is closed and cannot be credited or debited"""

    def __init__(self, account_id: str):
        self.account_id = account_id
        super().__init__(f"Account {account_id} is closed")


class SelfTransferNotAllowed(LedgerError):
    """Source and destination of a transfer are the same account"""


class LoanNotFound(LedgerError):
    """No loan with the given id"""

    def __init__(self, loan_id: str):
        self.loan_id = loan_id
        super().__init__(f"Loan {loan_id} not found")


class PaymentExceedsBalance(LedgerError):
    """Payment is larger than the loan's remaining amount"""

    def __init__(self, loan_id: str, remaining, requested):
        self.loan_id = loan_id
        self.remaining = remaining
        self.requested = requested
        super().__init__(
            f"Payment {requested} exceeds remaining balance {remaining} "
            f"of loan {loan_id}"
        )


class LockTimeout(LedgerError):
    """A lock could not be acquired within the configured timeout"""
