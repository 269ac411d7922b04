"""
Loan Module

Handles loan applications, disbursement and repayment. Every well-formed
application is approved; the principal is disbursed from the bank into
the customer's account in the same atomic unit that persists the loan.
Repayments move money back to the bank and only ever reduce the loan's
remaining amount.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from enum import Enum
import uuid

from .amortization import AmortizationCalculator, ScheduleEntry
from .audit import AuditEventType
from .errors import (
    AccountNotFound, InsufficientFunds, InvalidTerm, LedgerError,
    LoanNotFound, PaymentExceedsBalance
)
from .events import DomainEvent, create_loan_event
from .ledger import BANK_ACCOUNT_ID, Account, LedgerStore, Transaction, TransactionKind
from .logging_config import get_logger, log_action
from .money import AmountLike, ZERO, positive_amount
from .storage import StorageRecord, parse_datetime

MIN_TERM_MONTHS = 3
MAX_TERM_MONTHS = 60


class LoanState(Enum):
    """Loan lifecycle states"""
    DISBURSED = "disbursed"            # Principal paid out, nothing repaid yet
    PARTIALLY_PAID = "partially_paid"  # At least one repayment, balance left
    PAID = "paid"                      # Terminal


@dataclass
class Loan(StorageRecord):
    """Auto-approved amortizing loan"""
    customer_id: str
    account_id: str                 # Receives the principal, pays installments
    principal: Decimal
    annual_rate_percent: Decimal
    term_months: int
    monthly_payment: Decimal
    remaining_amount: Decimal
    paid: bool = False
    state: LoanState = LoanState.DISBURSED

    @property
    def amount_repaid(self) -> Decimal:
        return self.principal - self.remaining_amount

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Loan':
        return cls(
            id=data['id'],
            created_at=parse_datetime(data['created_at']),
            updated_at=parse_datetime(data['updated_at']),
            customer_id=data['customer_id'],
            account_id=data['account_id'],
            principal=Decimal(data['principal']),
            annual_rate_percent=Decimal(data['annual_rate_percent']),
            term_months=data['term_months'],
            monthly_payment=Decimal(data['monthly_payment']),
            remaining_amount=Decimal(data['remaining_amount']),
            paid=data['paid'],
            state=LoanState(data['state'])
        )


@dataclass(frozen=True)
class LoanPayment:
    """Outcome of a successful repayment"""
    loan_id: str
    transaction_id: str
    amount: Decimal
    remaining_amount: Decimal
    paid: bool


class LoanService:
    """
    Manages loans from application through payoff
    """

    def __init__(
        self,
        ledger: LedgerStore,
        calculator: Optional[AmortizationCalculator] = None
    ):
        self.ledger = ledger
        self.storage = ledger.storage
        self.audit_trail = ledger.audit_trail
        self.calculator = calculator or AmortizationCalculator()
        self.loans_table = "loans"
        self.logger = get_logger("ledger_engine.loans")

    def apply_for_loan(
        self,
        customer_id: str,
        amount: AmountLike,
        term_months: int,
        account_id: Optional[str] = None
    ) -> Loan:
        """
        Approve, disburse and persist a loan

        Args:
            customer_id: Borrower (trusted, from the session)
            amount: Principal
            term_months: Repayment term, 3 to 60 months
            account_id: Account to disburse into; defaults to the
                customer's oldest active account

        Returns:
            The new Loan, already disbursed

        Raises:
            InvalidAmount: If amount <= 0
            InvalidTerm: If the term is outside 3..60 months
            AccountNotFound: If the customer has no usable account
        """
        try:
            principal = positive_amount(amount)
            self._check_term(term_months)
            account = self._disbursement_account(customer_id, account_id)

            rate, monthly_payment = self.calculator.compute(principal, term_months)

            now = datetime.now(timezone.utc)
            loan = Loan(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                customer_id=customer_id,
                account_id=account.id,
                principal=principal,
                annual_rate_percent=rate,
                term_months=term_months,
                monthly_payment=monthly_payment,
                remaining_amount=principal
            )

            # Disbursement and the loan record commit together or not at all
            with self.ledger.transaction_scope(account_ids=[account.id], loan_ids=[loan.id]):
                disbursement = self.ledger.atomic_transfer(
                    BANK_ACCOUNT_ID, account.id, principal,
                    TransactionKind.LOAN_DISBURSEMENT,
                    description="Loan disbursement",
                    reference=loan.id
                )
                self._save_loan(loan)

                self.audit_trail.log_event(
                    event_type=AuditEventType.LOAN_DISBURSED,
                    entity_type="loan",
                    entity_id=loan.id,
                    customer_id=customer_id,
                    metadata={
                        "transaction_id": disbursement.id,
                        "account_id": account.id,
                        "principal": principal,
                        "annual_rate_percent": rate,
                        "term_months": term_months,
                        "monthly_payment": monthly_payment
                    }
                )
                self.ledger.queue_event(create_loan_event(DomainEvent.LOAN_DISBURSED, loan, principal))
        except LedgerError as e:
            log_action(
                self.logger, "warning", f"Loan application rejected: {e}",
                customer_id=customer_id, action="apply_for_loan",
                extra={"error": type(e).__name__, "amount": str(amount), "term_months": term_months}
            )
            raise

        log_action(
            self.logger, "info", "Loan approved and disbursed",
            customer_id=customer_id, action="apply_for_loan",
            resource=f"loan:{loan.id}",
            extra={
                "principal": str(principal),
                "annual_rate_percent": str(rate),
                "term_months": term_months,
                "monthly_payment": str(monthly_payment)
            }
        )
        return loan

    def make_loan_payment(self, loan_id: str, amount: AmountLike) -> LoanPayment:
        """
        Repay part or all of a loan from the borrower's account

        Overpayment is rejected, never trimmed to the remaining amount.

        Raises:
            LoanNotFound: If the loan does not exist
            InvalidAmount: If amount <= 0
            PaymentExceedsBalance: If amount > remaining amount
            InsufficientFunds: If the payer's balance is smaller than amount
        """
        try:
            loan = self.get_loan(loan_id)
            if not loan:
                raise LoanNotFound(loan_id)
            payment = positive_amount(amount)

            with self.ledger.transaction_scope(account_ids=[loan.account_id], loan_ids=[loan.id]):
                # Re-read under the loan lock; a concurrent payment may have landed
                loan = self.get_loan(loan_id)
                if payment > loan.remaining_amount:
                    raise PaymentExceedsBalance(loan.id, loan.remaining_amount, payment)

                payer = self.ledger.get_account(loan.account_id)
                if not payer:
                    raise AccountNotFound(loan.account_id)
                if payer.balance < payment:
                    raise InsufficientFunds(payer.id, payer.balance, payment)

                transaction = self.ledger.atomic_transfer(
                    loan.account_id, BANK_ACCOUNT_ID, payment,
                    TransactionKind.LOAN_PAYMENT,
                    description="Loan payment",
                    reference=loan.id
                )

                loan.remaining_amount = loan.remaining_amount - payment
                loan.paid = loan.remaining_amount <= ZERO
                loan.state = LoanState.PAID if loan.paid else LoanState.PARTIALLY_PAID
                loan.updated_at = datetime.now(timezone.utc)
                self._save_loan(loan)

                self.audit_trail.log_event(
                    event_type=AuditEventType.LOAN_PAYMENT_MADE,
                    entity_type="loan",
                    entity_id=loan.id,
                    customer_id=loan.customer_id,
                    metadata={
                        "transaction_id": transaction.id,
                        "amount": payment,
                        "remaining_amount": loan.remaining_amount
                    }
                )
                self.ledger.queue_event(create_loan_event(DomainEvent.LOAN_PAYMENT, loan, payment))

                if loan.paid:
                    self.audit_trail.log_event(
                        event_type=AuditEventType.LOAN_PAID_OFF,
                        entity_type="loan",
                        entity_id=loan.id,
                        customer_id=loan.customer_id,
                        metadata={"principal": loan.principal}
                    )
                    self.ledger.queue_event(create_loan_event(DomainEvent.LOAN_PAID_OFF, loan))
        except LedgerError as e:
            log_action(
                self.logger, "warning", f"Loan payment rejected: {e}",
                action="make_loan_payment", resource=f"loan:{loan_id}",
                extra={"error": type(e).__name__, "amount": str(amount)}
            )
            raise

        log_action(
            self.logger, "info", "Loan payment completed",
            customer_id=loan.customer_id, action="make_loan_payment",
            resource=f"loan:{loan.id}",
            extra={
                "amount": str(payment),
                "remaining_amount": str(loan.remaining_amount),
                "paid": loan.paid
            }
        )
        return LoanPayment(
            loan_id=loan.id,
            transaction_id=transaction.id,
            amount=payment,
            remaining_amount=loan.remaining_amount,
            paid=loan.paid
        )

    def get_loan(self, loan_id: str) -> Optional[Loan]:
        """Get loan by ID"""
        data = self.storage.load(self.loans_table, loan_id)
        if data:
            return Loan.from_dict(data)
        return None

    def customer_loans(self, customer_id: str) -> List[Loan]:
        """All loans of a customer, oldest first"""
        found = self.storage.find(self.loans_table, {"customer_id": customer_id})
        return [Loan.from_dict(data) for data in found]

    def loan_transactions(self, loan_id: str) -> List[Transaction]:
        """Disbursement and repayments of a loan in log order"""
        loan = self.get_loan(loan_id)
        if not loan:
            raise LoanNotFound(loan_id)
        return [
            txn for txn in self.ledger.transactions_for_account(loan.account_id)
            if txn.reference == loan_id
        ]

    def get_schedule(self, loan_id: str) -> List[ScheduleEntry]:
        """
        Equal installment schedule for the loan's original terms

        Raises:
            LoanNotFound: If the loan does not exist
        """
        loan = self.get_loan(loan_id)
        if not loan:
            raise LoanNotFound(loan_id)
        return self.calculator.build_schedule(
            loan.principal, loan.annual_rate_percent, loan.term_months
        )

    @staticmethod
    def _check_term(term_months: int) -> None:
        if (isinstance(term_months, bool) or not isinstance(term_months, int)
                or not MIN_TERM_MONTHS <= term_months <= MAX_TERM_MONTHS):
            raise InvalidTerm(
                f"Loan term must be between {MIN_TERM_MONTHS} and {MAX_TERM_MONTHS} months, "
                f"got {term_months!r}"
            )

    def _disbursement_account(self, customer_id: str, account_id: Optional[str]) -> Account:
        if account_id:
            account = self.ledger.get_account(account_id)
            if not account or account.customer_id != customer_id or not account.is_active:
                raise AccountNotFound(account_id)
            return account

        active = [a for a in self.ledger.customer_accounts(customer_id) if a.is_active]
        if not active:
            raise AccountNotFound(f"for customer {customer_id}")
        return active[0]

    def _save_loan(self, loan: Loan) -> None:
        self.storage.save(self.loans_table, loan.id, loan.to_dict())
