"""
Account Facade

Read-only query surface for presentation code. Every call reads committed
state straight from storage, so it reflects the latest completed transfer,
disbursement or payment.
"""

from decimal import Decimal
from typing import Iterable, List, Optional, Union

from .amortization import ScheduleEntry
from .ledger import Account, LedgerStore, Transaction, TransactionKind
from .loans import Loan, LoanService


class AccountFacade:
    """Consumer-facing reads over the ledger and loans"""

    def __init__(self, ledger: LedgerStore, loan_service: LoanService):
        self.ledger = ledger
        self.loans = loan_service

    def list_transactions(
        self,
        account_id: str,
        limit: Optional[int] = None,
        kinds: Optional[Iterable[Union[TransactionKind, str]]] = None
    ) -> List[Transaction]:
        """
        Transactions touching an account, most recent first

        Args:
            account_id: Account to list
            limit: Return at most this many of the most recent entries
            kinds: Only include these transaction kinds
        """
        transactions = self.ledger.transactions_for_account(account_id)
        if kinds:
            wanted = {TransactionKind(kind) for kind in kinds}
            transactions = [t for t in transactions if t.kind in wanted]

        transactions.reverse()
        if limit is not None:
            transactions = transactions[:limit]
        return transactions

    def get_loan(self, loan_id: str) -> Optional[Loan]:
        """Loan by ID, or None"""
        return self.loans.get_loan(loan_id)

    def list_loans(self, customer_id: str) -> List[Loan]:
        return self.loans.customer_loans(customer_id)

    def has_active_loans(self, customer_id: str) -> bool:
        """True iff any of the customer's loans is not yet paid"""
        return any(not loan.paid for loan in self.loans.customer_loans(customer_id))

    def get_account(self, account_id: str) -> Optional[Account]:
        return self.ledger.get_account(account_id)

    def get_balance(self, account_id: str) -> Decimal:
        return self.ledger.get_balance(account_id)

    def loan_schedule(self, loan_id: str) -> List[ScheduleEntry]:
        return self.loans.get_schedule(loan_id)
