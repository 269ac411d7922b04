"""
Tests for the hash-chained audit trail
"""

import threading
from decimal import Decimal

import pytest

from ledger_engine.audit import AuditEventType, AuditTrail
from ledger_engine.storage import InMemoryStorage


class TestAuditTrail:
    """Test audit event chaining and tamper detection"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.audit = AuditTrail(self.storage)

    def test_first_event_has_empty_previous_hash(self):
        event = self.audit.log_event(
            AuditEventType.ACCOUNT_OPENED, "account", "acc-1",
            metadata={"initial_deposit": Decimal('100.00')}
        )

        assert event.previous_hash == ""
        assert event.verify_hash()
        assert event.metadata["initial_deposit"] == "100.00"

    def test_events_are_chained(self):
        first = self.audit.log_event(AuditEventType.ACCOUNT_OPENED, "account", "acc-1")
        second = self.audit.log_event(AuditEventType.TRANSACTION_RECORDED, "transaction", "t-1")

        assert second.previous_hash == first.current_hash
        assert self.audit.verify_integrity()["valid"]
        assert self.audit.count_events() == 2

    def test_tampered_metadata_is_detected(self):
        event = self.audit.log_event(
            AuditEventType.TRANSACTION_RECORDED, "transaction", "t-1",
            metadata={"amount": "50.00"}
        )
        self.audit.log_event(AuditEventType.TRANSACTION_RECORDED, "transaction", "t-2")

        stored = self.storage.load("audit_events", event.id)
        stored["metadata"]["amount"] = "5000.00"
        self.storage.save("audit_events", event.id, stored)

        result = self.audit.verify_integrity()
        assert not result["valid"]
        assert result["hash_errors"][0]["event_id"] == event.id

    def test_deleted_event_breaks_chain(self):
        self.audit.log_event(AuditEventType.ACCOUNT_OPENED, "account", "acc-1")
        middle = self.audit.log_event(AuditEventType.TRANSACTION_RECORDED, "transaction", "t-1")
        self.audit.log_event(AuditEventType.TRANSACTION_RECORDED, "transaction", "t-2")

        self.storage.delete("audit_events", middle.id)

        result = self.audit.verify_integrity()
        assert not result["valid"]
        assert len(result["chain_breaks"]) == 1

    def test_rolled_back_event_leaves_no_link(self):
        with pytest.raises(RuntimeError):
            with self.storage.atomic():
                self.audit.log_event(AuditEventType.ACCOUNT_OPENED, "account", "ghost")
                raise RuntimeError("abort")

        event = self.audit.log_event(AuditEventType.ACCOUNT_OPENED, "account", "real")
        assert event.previous_hash == ""
        assert self.audit.verify_integrity()["valid"]

    def test_queries(self):
        self.audit.log_event(AuditEventType.LOAN_DISBURSED, "loan", "loan-1")
        self.audit.log_event(AuditEventType.LOAN_PAYMENT_MADE, "loan", "loan-1")
        self.audit.log_event(AuditEventType.LOAN_PAYMENT_MADE, "loan", "loan-2")

        assert len(self.audit.get_events_for_entity("loan", "loan-1")) == 2
        latest = self.audit.get_events_for_entity("loan", "loan-1", limit=1)
        assert latest[0].event_type == AuditEventType.LOAN_PAYMENT_MADE
        assert self.audit.get_events_for_entity("loan", "loan-1", limit=0) == []
        assert len(self.audit.get_events_for_entity("loan", "loan-1", limit=5)) == 2
        assert len(self.audit.get_events_by_type(AuditEventType.LOAN_PAYMENT_MADE)) == 2

    def test_concurrent_appends_keep_chain_valid(self):
        def worker(n):
            for i in range(20):
                self.audit.log_event(AuditEventType.TRANSACTION_RECORDED, "transaction", f"{n}-{i}")

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(5)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        result = self.audit.verify_integrity()
        assert result["valid"]
        assert result["total_events"] == 100
