"""
Ledger Store

Sole owner of account balances and the append-only transaction log.
Balances change only through credit()/debit() inside a transaction scope,
and every scope pairs its balance changes with the transaction records
that explain them. atomic_transfer() is the one-call form used by the
transfer and loan services.

The external bank counter-party is the reserved id BANK. It has no stored
row, an unlimited balance, and appears in transactions as a None account
reference.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Union
from enum import Enum
from contextlib import contextmanager
import threading
import uuid

from .audit import AuditTrail, AuditEventType
from .errors import (
    AccountClosed, AccountNotFound, InsufficientFunds, InvalidAmount,
    LedgerError, SelfTransferNotAllowed
)
from .events import (
    DomainEvent, EventDispatcher, EventPayload,
    create_account_event, create_transaction_event
)
from .locking import LockManager, account_key, loan_key
from .logging_config import get_logger, log_action
from .money import AmountLike, ZERO, positive_amount, quantize
from .storage import StorageInterface, StorageRecord, parse_datetime

BANK_ACCOUNT_ID = "BANK"

ACCOUNT_NUMBER_BASE = 1000000000


def is_bank(account_ref: Optional[str]) -> bool:
    """True for the external bank counter-party"""
    return account_ref is None or account_ref == BANK_ACCOUNT_ID


class TransactionKind(Enum):
    """Kinds of value movement recorded in the log"""
    TRANSFER = "transfer"
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    LOAN_DISBURSEMENT = "loan-disbursement"
    LOAN_PAYMENT = "loan-payment"


class AccountStatus(Enum):
    """Account lifecycle states"""
    ACTIVE = "active"
    CLOSED = "closed"


@dataclass
class Account(StorageRecord):
    """Customer deposit account"""
    account_number: str
    customer_id: str
    balance: Decimal
    status: AccountStatus = AccountStatus.ACTIVE

    @property
    def is_active(self) -> bool:
        return self.status == AccountStatus.ACTIVE

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Account':
        return cls(
            id=data['id'],
            created_at=parse_datetime(data['created_at']),
            updated_at=parse_datetime(data['updated_at']),
            account_number=data['account_number'],
            customer_id=data['customer_id'],
            balance=Decimal(data['balance']),
            status=AccountStatus(data['status'])
        )


@dataclass
class Transaction(StorageRecord):
    """
    Immutable ledger entry

    A None account reference is the bank. The amount is always positive;
    direction comes from which side is populated.
    """
    sequence: int
    kind: TransactionKind
    amount: Decimal
    from_account_id: Optional[str]
    to_account_id: Optional[str]
    description: str = ""
    reference: Optional[str] = None

    def __post_init__(self):
        if self.from_account_id is None and self.to_account_id is None:
            raise LedgerError("Transaction must touch at least one customer account")
        if self.amount <= ZERO:
            raise InvalidAmount("Transaction amount must be positive")

    @property
    def timestamp(self) -> datetime:
        return self.created_at

    def involves(self, account_id: str) -> bool:
        return account_id in (self.from_account_id, self.to_account_id)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Transaction':
        return cls(
            id=data['id'],
            created_at=parse_datetime(data['created_at']),
            updated_at=parse_datetime(data['updated_at']),
            sequence=data['sequence'],
            kind=TransactionKind(data['kind']),
            amount=Decimal(data['amount']),
            from_account_id=data.get('from_account_id'),
            to_account_id=data.get('to_account_id'),
            description=data.get('description', ""),
            reference=data.get('reference')
        )


class LedgerStore:
    """
    Account balances plus the append-only transaction log

    Every balance change holds the account's lock and runs inside one
    storage atomic unit together with its transaction record and audit
    event. Domain events queued during a scope are published only after
    the outermost scope commits.
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        lock_manager: Optional[LockManager] = None,
        event_dispatcher: Optional[EventDispatcher] = None,
        min_initial_deposit: AmountLike = Decimal('100.00')
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.locks = lock_manager if lock_manager is not None else LockManager()
        self.event_dispatcher = event_dispatcher
        self.min_initial_deposit = quantize(min_initial_deposit)

        self.accounts_table = "accounts"
        self.transactions_table = "transactions"
        self.counters_table = "sequence_counters"

        self.logger = get_logger("ledger_engine.ledger")
        self._local = threading.local()

    # ------------------------------------------------------------------
    # Transaction scope

    def _scope_state(self):
        state = self._local
        if not hasattr(state, 'depth'):
            state.depth = 0
            state.locked_accounts = set()
            state.pending_events = []
        return state

    @property
    def in_scope(self) -> bool:
        return self._scope_state().depth > 0

    @contextmanager
    def transaction_scope(
        self,
        account_ids: Iterable[Optional[str]] = (),
        loan_ids: Iterable[str] = ()
    ):
        """
        Lock the given accounts and loans and open one atomic unit

        Everything written inside the block commits together or not at
        all. Nested scopes join the enclosing unit; their lock keys should
        already be held by it.

        Raises:
            LockTimeout: If a lock is not acquired in time
        """
        customer_accounts = [a for a in account_ids if not is_bank(a)]
        keys = [account_key(a) for a in customer_accounts]
        keys.extend(loan_key(loan_id) for loan_id in loan_ids)

        state = self._scope_state()
        outermost = state.depth == 0
        previously_locked = set(state.locked_accounts)
        mark = len(state.pending_events)

        with self.locks.hold(keys):
            state.depth += 1
            state.locked_accounts.update(customer_accounts)
            try:
                with self.storage.atomic():
                    yield
            except BaseException:
                # Events of a rolled back unit are never published
                del state.pending_events[mark:]
                raise
            finally:
                state.depth -= 1
                state.locked_accounts = previously_locked

        if outermost:
            events, state.pending_events = state.pending_events, []
            for event in events:
                self._publish(event)

    def queue_event(self, event: EventPayload) -> None:
        """Publish after the enclosing scope commits, or now if there is none"""
        state = self._scope_state()
        if state.depth > 0:
            state.pending_events.append(event)
        else:
            self._publish(event)

    def _publish(self, event: EventPayload) -> None:
        if self.event_dispatcher:
            self.event_dispatcher.publish(event)

    def _require_scope(self, account_id: str, operation: str) -> None:
        state = self._scope_state()
        if state.depth == 0:
            raise LedgerError(f"{operation} must run inside a transaction scope")
        if account_id not in state.locked_accounts:
            raise LedgerError(f"{operation} on account {account_id} without holding its lock")

    # ------------------------------------------------------------------
    # Mutation primitives

    def credit(self, account_id: str, amount: AmountLike) -> Account:
        """
        Increase an account balance

        Raises:
            InvalidAmount: If amount <= 0
            AccountNotFound: If the account does not exist
            AccountClosed: If the account is closed
        """
        amount = positive_amount(amount)
        self._require_scope(account_id, "credit")

        account = self._load_active_account(account_id)
        account.balance = account.balance + amount
        account.updated_at = datetime.now(timezone.utc)
        self._save_account(account)
        return account

    def debit(self, account_id: str, amount: AmountLike) -> Account:
        """
        Decrease an account balance, never below zero

        Raises:
            InvalidAmount: If amount <= 0
            AccountNotFound: If the account does not exist
            AccountClosed: If the account is closed
            InsufficientFunds: If the balance is smaller than amount
        """
        amount = positive_amount(amount)
        self._require_scope(account_id, "debit")

        account = self._load_active_account(account_id)
        if account.balance < amount:
            raise InsufficientFunds(account_id, account.balance, amount)

        account.balance = account.balance - amount
        account.updated_at = datetime.now(timezone.utc)
        self._save_account(account)
        return account

    def record_transaction(
        self,
        from_account_id: Optional[str],
        to_account_id: Optional[str],
        amount: AmountLike,
        kind: Union[TransactionKind, str],
        description: str = "",
        reference: Optional[str] = None
    ) -> Transaction:
        """
        Append an immutable entry to the log

        Must run in the same scope as the balance changes it records.
        """
        amount = positive_amount(amount)
        kind = TransactionKind(kind)
        from_id = None if is_bank(from_account_id) else from_account_id
        to_id = None if is_bank(to_account_id) else to_account_id

        state = self._scope_state()
        if state.depth == 0:
            raise LedgerError("record_transaction must run inside a transaction scope")

        now = datetime.now(timezone.utc)
        transaction = Transaction(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            sequence=self._next_counter("transactions"),
            kind=kind,
            amount=amount,
            from_account_id=from_id,
            to_account_id=to_id,
            description=description,
            reference=reference
        )
        self.storage.save(self.transactions_table, transaction.id, transaction.to_dict())

        self.audit_trail.log_event(
            event_type=AuditEventType.TRANSACTION_RECORDED,
            entity_type="transaction",
            entity_id=transaction.id,
            metadata={
                "sequence": transaction.sequence,
                "kind": kind.value,
                "amount": amount,
                "from_account": from_id,
                "to_account": to_id,
                "reference": reference
            }
        )
        self.queue_event(create_transaction_event(transaction))
        return transaction

    def atomic_transfer(
        self,
        from_account_id: Optional[str],
        to_account_id: Optional[str],
        amount: AmountLike,
        kind: Union[TransactionKind, str],
        description: str = "",
        reference: Optional[str] = None
    ) -> Transaction:
        """
        Move money and record it as one indivisible unit

        Debits the source unless it is the bank, credits the destination
        unless it is the bank and appends one transaction. On any failure
        nothing is written.

        Raises:
            InvalidAmount, AccountNotFound, AccountClosed, InsufficientFunds,
            SelfTransferNotAllowed, LockTimeout
        """
        amount = positive_amount(amount)
        kind = TransactionKind(kind)

        if is_bank(from_account_id) and is_bank(to_account_id):
            raise LedgerError("Transfer must involve at least one customer account")
        if from_account_id == to_account_id:
            raise SelfTransferNotAllowed(f"Cannot transfer from account {from_account_id} to itself")

        try:
            with self.transaction_scope(account_ids=[from_account_id, to_account_id]):
                if not is_bank(from_account_id):
                    self.debit(from_account_id, amount)
                if not is_bank(to_account_id):
                    self.credit(to_account_id, amount)
                transaction = self.record_transaction(
                    from_account_id, to_account_id, amount, kind,
                    description=description, reference=reference
                )
        except LedgerError as e:
            log_action(
                self.logger, "warning", f"Transfer rejected: {e}",
                action="atomic_transfer",
                extra={
                    "error": type(e).__name__,
                    "kind": kind.value,
                    "amount": str(amount),
                    "from_account": from_account_id,
                    "to_account": to_account_id
                }
            )
            raise

        log_action(
            self.logger, "info", f"Transaction recorded: {kind.value}",
            action="atomic_transfer", resource=f"transaction:{transaction.id}",
            extra={
                "sequence": transaction.sequence,
                "amount": str(amount),
                "from_account": transaction.from_account_id,
                "to_account": transaction.to_account_id,
                "reference": reference
            }
        )
        return transaction

    # ------------------------------------------------------------------
    # Account lifecycle

    def open_account(
        self,
        customer_id: str,
        initial_deposit: AmountLike,
        description: str = "Initial deposit"
    ) -> Account:
        """
        Open an account funded by a deposit from the bank

        Raises:
            InvalidAmount: If the deposit is below the configured minimum
        """
        deposit = positive_amount(initial_deposit)
        if deposit < self.min_initial_deposit:
            raise InvalidAmount(
                f"Initial deposit must be at least {self.min_initial_deposit}, got {deposit}"
            )

        now = datetime.now(timezone.utc)
        account_id = str(uuid.uuid4())

        with self.transaction_scope(account_ids=[account_id]):
            account = Account(
                id=account_id,
                created_at=now,
                updated_at=now,
                account_number=str(ACCOUNT_NUMBER_BASE + self._next_counter("account_numbers")),
                customer_id=customer_id,
                balance=ZERO
            )
            self._save_account(account)

            self.audit_trail.log_event(
                event_type=AuditEventType.ACCOUNT_OPENED,
                entity_type="account",
                entity_id=account.id,
                customer_id=customer_id,
                metadata={
                    "account_number": account.account_number,
                    "initial_deposit": deposit
                }
            )
            self.queue_event(create_account_event(DomainEvent.ACCOUNT_OPENED, account))

            account = self.credit(account.id, deposit)
            self.record_transaction(
                BANK_ACCOUNT_ID, account.id, deposit, TransactionKind.DEPOSIT,
                description=description
            )

        log_action(
            self.logger, "info", "Account opened",
            customer_id=customer_id, action="open_account",
            resource=f"account:{account.id}",
            extra={"account_number": account.account_number, "initial_deposit": str(deposit)}
        )
        return account

    def close_account(self, account_id: str) -> Account:
        """
        Close an empty account; closed accounts reject credits and debits

        Raises:
            AccountNotFound: If the account does not exist
            LedgerError: If the balance is not zero
        """
        with self.transaction_scope(account_ids=[account_id]):
            account = self._load_active_account(account_id)
            if account.balance != ZERO:
                raise LedgerError(
                    f"Cannot close account {account_id} with non-zero balance {account.balance}"
                )

            account.status = AccountStatus.CLOSED
            account.updated_at = datetime.now(timezone.utc)
            self._save_account(account)

            self.audit_trail.log_event(
                event_type=AuditEventType.ACCOUNT_CLOSED,
                entity_type="account",
                entity_id=account.id,
                customer_id=account.customer_id,
                metadata={"account_number": account.account_number}
            )
            self.queue_event(create_account_event(DomainEvent.ACCOUNT_CLOSED, account))

        return account

    # ------------------------------------------------------------------
    # Queries

    def get_account(self, account_id: str) -> Optional[Account]:
        """Get account by ID; the bank has no account row"""
        if is_bank(account_id):
            return None
        data = self.storage.load(self.accounts_table, account_id)
        if data:
            return Account.from_dict(data)
        return None

    def get_account_by_number(self, account_number: str) -> Optional[Account]:
        """Get account by its public account number"""
        found = self.storage.find(self.accounts_table, {"account_number": account_number})
        if found:
            return Account.from_dict(found[0])
        return None

    def get_balance(self, account_id: str) -> Decimal:
        """
        Current balance

        Raises:
            AccountNotFound: If the account does not exist
        """
        account = self.get_account(account_id)
        if not account:
            raise AccountNotFound(account_id)
        return account.balance

    def customer_accounts(self, customer_id: str) -> List[Account]:
        """All accounts owned by a customer, oldest first"""
        found = self.storage.find(self.accounts_table, {"customer_id": customer_id})
        return [Account.from_dict(data) for data in found]

    def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        data = self.storage.load(self.transactions_table, transaction_id)
        if data:
            return Transaction.from_dict(data)
        return None

    def transactions_for_account(self, account_id: str) -> List[Transaction]:
        """Entries touching an account in log order (oldest first)"""
        outgoing = self.storage.find(self.transactions_table, {"from_account_id": account_id})
        incoming = self.storage.find(self.transactions_table, {"to_account_id": account_id})

        by_id = {data['id']: data for data in outgoing + incoming}
        transactions = [Transaction.from_dict(data) for data in by_id.values()]
        transactions.sort(key=lambda t: t.sequence)
        return transactions

    def all_transactions(self) -> List[Transaction]:
        """The whole log in sequence order"""
        transactions = [
            Transaction.from_dict(data)
            for data in self.storage.load_all(self.transactions_table)
        ]
        transactions.sort(key=lambda t: t.sequence)
        return transactions

    def verify_conservation(self) -> Dict[str, Any]:
        """
        Replay the log and reconcile it against stored balances

        Every account starts at zero, so each stored balance must equal the
        net of its logged movements, and the sum of all balances must equal
        the net amount that left the bank.

        Returns:
            Dictionary with reconciliation results
        """
        with self.storage.atomic():
            accounts = [Account.from_dict(data) for data in self.storage.load_all(self.accounts_table)]
            transactions = self.all_transactions()

        replayed: Dict[str, Decimal] = {account.id: ZERO for account in accounts}
        bank_outflow = ZERO
        for txn in transactions:
            if txn.from_account_id is None:
                bank_outflow += txn.amount
            else:
                replayed[txn.from_account_id] = replayed.get(txn.from_account_id, ZERO) - txn.amount
            if txn.to_account_id is None:
                bank_outflow -= txn.amount
            else:
                replayed[txn.to_account_id] = replayed.get(txn.to_account_id, ZERO) + txn.amount

        mismatches = []
        negative = []
        for account in accounts:
            expected = replayed.get(account.id, ZERO)
            if account.balance != expected:
                mismatches.append({
                    "account_id": account.id,
                    "stored_balance": str(account.balance),
                    "replayed_balance": str(expected)
                })
            if account.balance < ZERO:
                negative.append(account.id)

        total_balances = sum((account.balance for account in accounts), ZERO)
        return {
            "valid": not mismatches and not negative and total_balances == bank_outflow,
            "total_balances": total_balances,
            "bank_net_outflow": bank_outflow,
            "transaction_count": len(transactions),
            "mismatches": mismatches,
            "negative_balances": negative
        }

    # ------------------------------------------------------------------
    # Internals

    def _load_active_account(self, account_id: str) -> Account:
        account = self.get_account(account_id)
        if not account:
            raise AccountNotFound(account_id)
        if not account.is_active:
            raise AccountClosed(account_id)
        return account

    def _save_account(self, account: Account) -> None:
        self.storage.save(self.accounts_table, account.id, account.to_dict())

    def _next_counter(self, name: str) -> int:
        # Locked counter row: the enclosing atomic unit is single-writer
        with self.storage.atomic():
            row = self.storage.load(self.counters_table, name)
            value = (row['value'] if row else 0) + 1
            self.storage.save(self.counters_table, name, {"id": name, "value": value})
        return value
