"""
Concurrency tests

Concurrent debits on one account must never overdraw it, concurrent loan
payments must never overpay the loan, and money must be conserved no matter
how transfers interleave.
"""

import threading
from decimal import Decimal

import pytest

from ledger_engine.audit import AuditTrail
from ledger_engine.errors import InsufficientFunds, LockTimeout, PaymentExceedsBalance
from ledger_engine.ledger import LedgerStore
from ledger_engine.loans import LoanService
from ledger_engine.locking import LockManager
from ledger_engine.storage import InMemoryStorage, SQLiteStorage
from ledger_engine.transfers import TransferService


def run_threads(target, count):
    threads = [threading.Thread(target=target) for _ in range(count)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()


class TestConcurrentTransfers:
    """Racing debits and transfers"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.ledger = LedgerStore(self.storage, AuditTrail(self.storage))
        self.transfers = TransferService(self.ledger)

    def test_no_overdraft_under_contention(self):
        source = self.ledger.open_account("alice", Decimal('1000.00'))
        target = self.ledger.open_account("bob", Decimal('100.00'))
        outcomes = {"ok": 0, "rejected": 0}
        guard = threading.Lock()

        def worker():
            for _ in range(5):
                try:
                    self.transfers.transfer(source.id, target.account_number, Decimal('100'))
                    result = "ok"
                except InsufficientFunds:
                    result = "rejected"
                with guard:
                    outcomes[result] += 1

        run_threads(worker, 20)

        assert outcomes == {"ok": 10, "rejected": 90}
        assert self.ledger.get_balance(source.id) == Decimal('0.00')
        assert self.ledger.get_balance(target.id) == Decimal('1100.00')
        assert self.ledger.verify_conservation()["valid"]

    def test_opposing_transfers_conserve_money(self):
        a = self.ledger.open_account("a", Decimal('500.00'))
        b = self.ledger.open_account("b", Decimal('500.00'))

        def a_to_b():
            for _ in range(25):
                try:
                    self.transfers.transfer(a.id, b.account_number, Decimal('7'))
                except InsufficientFunds:
                    pass

        def b_to_a():
            for _ in range(25):
                try:
                    self.transfers.transfer(b.id, a.account_number, Decimal('3'))
                except InsufficientFunds:
                    pass

        threads = [threading.Thread(target=fn) for fn in (a_to_b, b_to_a) * 4]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        total = self.ledger.get_balance(a.id) + self.ledger.get_balance(b.id)
        assert total == Decimal('1000.00')
        assert self.ledger.verify_conservation()["valid"]

    def test_sqlite_backend_under_contention(self, tmp_path):
        storage = SQLiteStorage(tmp_path / "ledger.db")
        ledger = LedgerStore(storage, AuditTrail(storage))
        transfers = TransferService(ledger)
        source = ledger.open_account("alice", Decimal('300.00'))
        target = ledger.open_account("bob", Decimal('100.00'))

        def worker():
            for _ in range(3):
                try:
                    transfers.transfer(source.id, target.account_number, Decimal('50'))
                except InsufficientFunds:
                    pass

        run_threads(worker, 5)

        assert ledger.get_balance(source.id) == Decimal('0.00')
        assert ledger.verify_conservation()["valid"]
        storage.close()


class TestConcurrentLoanPayments:
    """Racing repayments of one loan"""

    def test_loan_never_overpaid(self):
        storage = InMemoryStorage()
        ledger = LedgerStore(storage, AuditTrail(storage))
        loans = LoanService(ledger)
        ledger.open_account("alice", Decimal('5000.00'))
        loan = loans.apply_for_loan("alice", Decimal('1000'), 12)
        outcomes = {"ok": 0, "rejected": 0}
        guard = threading.Lock()

        def worker():
            try:
                loans.make_loan_payment(loan.id, Decimal('300'))
                result = "ok"
            except PaymentExceedsBalance:
                result = "rejected"
            with guard:
                outcomes[result] += 1

        run_threads(worker, 10)

        assert outcomes == {"ok": 3, "rejected": 7}
        assert loans.get_loan(loan.id).remaining_amount == Decimal('100.00')
        assert ledger.verify_conservation()["valid"]


class TestLockManager:
    """Keyed locks"""

    def test_reentrant(self):
        locks = LockManager(timeout_seconds=0.05)
        with locks.hold(["account:a"]):
            with locks.hold(["account:a", "account:b"]):
                pass

    def test_released_keys_are_forgotten(self):
        locks = LockManager(timeout_seconds=0.05)

        with locks.hold(["account:a", "loan:1"]):
            assert len(locks) == 2
            with locks.hold(["account:a"]):
                assert len(locks) == 2
        assert len(locks) == 0

    def test_lock_table_does_not_grow_with_loans(self):
        storage = InMemoryStorage()
        ledger = LedgerStore(storage, AuditTrail(storage))
        loans = LoanService(ledger)
        ledger.open_account("alice", Decimal('100.00'))

        for _ in range(5):
            loan = loans.apply_for_loan("alice", Decimal('300'), 6)
            loans.make_loan_payment(loan.id, Decimal('300'))

        assert len(ledger.locks) == 0

    def test_timeout_when_held_elsewhere(self):
        locks = LockManager(timeout_seconds=0.05)
        holding = threading.Event()
        release = threading.Event()

        def holder():
            with locks.hold(["account:a"]):
                holding.set()
                release.wait(2)

        thread = threading.Thread(target=holder)
        thread.start()
        holding.wait(2)
        try:
            with pytest.raises(LockTimeout):
                with locks.hold(["account:b", "account:a"]):
                    pass
            # The lock on b was released after the timeout
            with locks.hold(["account:b"]):
                pass
        finally:
            release.set()
            thread.join()

        assert len(locks) == 0
