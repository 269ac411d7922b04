"""
Tests for the event dispatcher and post-commit publication
"""

from decimal import Decimal
from unittest.mock import Mock

import pytest

from ledger_engine.audit import AuditTrail
from ledger_engine.errors import InsufficientFunds, LedgerError
from ledger_engine.events import DomainEvent, EventDispatcher, EventPayload
from ledger_engine.ledger import LedgerStore, TransactionKind
from ledger_engine.loans import LoanService
from ledger_engine.storage import InMemoryStorage
from ledger_engine.transfers import TransferService


def make_event(event_type=DomainEvent.TRANSACTION_RECORDED):
    return EventPayload(event_type=event_type, entity_type="transaction", entity_id="t-1", data={})


class TestEventDispatcher:
    """Subscription management"""

    def setup_method(self):
        self.dispatcher = EventDispatcher()

    def test_typed_and_global_handlers(self):
        typed = Mock()
        everything = Mock()
        self.dispatcher.subscribe(DomainEvent.TRANSACTION_RECORDED, typed)
        self.dispatcher.subscribe_all(everything)

        self.dispatcher.publish(make_event())
        self.dispatcher.publish(make_event(DomainEvent.LOAN_PAYMENT))

        assert typed.call_count == 1
        assert everything.call_count == 2
        assert self.dispatcher.get_handler_count() == 2

    def test_unsubscribe(self):
        handler = Mock()
        self.dispatcher.subscribe(DomainEvent.TRANSACTION_RECORDED, handler)
        self.dispatcher.unsubscribe(DomainEvent.TRANSACTION_RECORDED, handler)
        # Unknown handler only logs a warning
        self.dispatcher.unsubscribe(DomainEvent.TRANSACTION_RECORDED, handler)

        self.dispatcher.publish(make_event())
        handler.assert_not_called()

    def test_failing_handler_does_not_stop_others(self):
        failing = Mock(side_effect=RuntimeError("subscriber down"))
        healthy = Mock()
        self.dispatcher.subscribe_all(failing)
        self.dispatcher.subscribe_all(healthy)

        self.dispatcher.publish(make_event())

        healthy.assert_called_once()

    def test_clear_removes_all_handlers(self):
        handler = Mock()
        self.dispatcher.subscribe(DomainEvent.LOAN_PAYMENT, handler)
        self.dispatcher.subscribe_all(handler)

        self.dispatcher.clear()
        self.dispatcher.publish(make_event(DomainEvent.LOAN_PAYMENT))

        assert self.dispatcher.get_handler_count() == 0
        handler.assert_not_called()

    def test_payload_to_dict(self):
        data = make_event().to_dict()
        assert data["event_type"] == "transaction.recorded"
        assert data["entity_id"] == "t-1"


class TestPublicationAfterCommit:
    """Services publish only committed changes"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.dispatcher = EventDispatcher()
        self.ledger = LedgerStore(
            self.storage, AuditTrail(self.storage), event_dispatcher=self.dispatcher
        )
        self.transfers = TransferService(self.ledger)
        self.loans = LoanService(self.ledger)

        self.alice = self.ledger.open_account("alice", Decimal('500.00'))
        self.bob = self.ledger.open_account("bob", Decimal('100.00'))

    def test_transfer_publishes_one_transaction_event(self):
        handler = Mock()
        self.dispatcher.subscribe(DomainEvent.TRANSACTION_RECORDED, handler)

        txn = self.transfers.transfer(self.alice.id, self.bob.account_number, Decimal('50'))

        handler.assert_called_once()
        event = handler.call_args[0][0]
        assert event.entity_id == txn.id
        assert event.data["amount"] == "50.00"

    def test_rejected_transfer_publishes_nothing(self):
        handler = Mock()
        self.dispatcher.subscribe_all(handler)

        with pytest.raises(InsufficientFunds):
            self.transfers.transfer(self.alice.id, self.bob.account_number, Decimal('5000'))

        handler.assert_not_called()

    def test_rolled_back_inner_scope_publishes_nothing(self):
        """A caught failure in a nested scope drops that scope's events"""
        handler = Mock()
        self.dispatcher.subscribe(DomainEvent.TRANSACTION_RECORDED, handler)
        log_size = len(self.ledger.all_transactions())

        with self.ledger.transaction_scope(account_ids=[self.alice.id, self.bob.id]):
            with pytest.raises(LedgerError):
                with self.ledger.transaction_scope(account_ids=[self.alice.id, self.bob.id]):
                    self.ledger.atomic_transfer(
                        self.alice.id, self.bob.id, Decimal('10'), TransactionKind.TRANSFER
                    )
                    raise LedgerError("abandon inner unit")

        assert handler.call_count == 0
        assert len(self.ledger.all_transactions()) == log_size
        assert self.ledger.get_balance(self.alice.id) == Decimal('500.00')

    def test_outer_scope_keeps_events_of_committed_inner_scope(self):
        handler = Mock()
        self.dispatcher.subscribe(DomainEvent.TRANSACTION_RECORDED, handler)

        with self.ledger.transaction_scope(account_ids=[self.alice.id, self.bob.id]):
            self.ledger.atomic_transfer(
                self.alice.id, self.bob.id, Decimal('10'), TransactionKind.TRANSFER
            )
            with pytest.raises(LedgerError):
                with self.ledger.transaction_scope(account_ids=[self.alice.id]):
                    raise LedgerError("abandon inner unit")
            handler.assert_not_called()

        handler.assert_called_once()

    def test_handler_sees_committed_balance(self):
        seen = []

        def handler(event):
            seen.append(self.ledger.get_balance(self.bob.id))

        self.dispatcher.subscribe(DomainEvent.TRANSACTION_RECORDED, handler)
        self.transfers.transfer(self.alice.id, self.bob.account_number, Decimal('25'))

        assert seen == [Decimal('125.00')]

    def test_loan_payoff_publishes_paid_off(self):
        paid_off = Mock()
        self.dispatcher.subscribe(DomainEvent.LOAN_PAID_OFF, paid_off)

        loan = self.loans.apply_for_loan("bob", Decimal('300'), 12)
        self.loans.make_loan_payment(loan.id, Decimal('100'))
        paid_off.assert_not_called()

        self.loans.make_loan_payment(loan.id, Decimal('200'))
        paid_off.assert_called_once()
        assert paid_off.call_args[0][0].entity_id == loan.id
