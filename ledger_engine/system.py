"""
Ledger System

Builds every component from configuration and exposes them together.
"""

from typing import Any, Dict, Optional

from .amortization import AmortizationCalculator
from .audit import AuditTrail, AuditEventType
from .config import LedgerConfig, get_config
from .events import EventDispatcher
from .facade import AccountFacade
from .ledger import LedgerStore
from .locking import LockManager
from .logging_config import get_logger, log_action, setup_logging
from .loans import LoanService
from .storage import StorageInterface, create_storage
from .transfers import TransferService


class LedgerSystem:
    """Ledger engine with all components initialized"""

    def __init__(
        self,
        config: Optional[LedgerConfig] = None,
        storage: Optional[StorageInterface] = None,
        configure_logging: bool = False
    ):
        self.config = config or get_config()

        if configure_logging:
            setup_logging(
                level=self.config.log_level,
                log_format=self.config.log_format,
                log_file=self.config.log_file
            )
        self.logger = get_logger("ledger_engine.system")

        self.storage = storage or create_storage(
            self.config.storage_backend, self.config.database_path
        )
        self.audit_trail = AuditTrail(self.storage)
        self.event_dispatcher = EventDispatcher() if self.config.enable_events else None
        self.lock_manager = LockManager(self.config.lock_timeout_seconds)

        self.ledger = LedgerStore(
            self.storage,
            self.audit_trail,
            lock_manager=self.lock_manager,
            event_dispatcher=self.event_dispatcher,
            min_initial_deposit=self.config.min_initial_deposit
        )
        self.calculator = AmortizationCalculator()
        self.transfers = TransferService(self.ledger)
        self.loans = LoanService(self.ledger, self.calculator)
        self.facade = AccountFacade(self.ledger, self.loans)

    def verify_integrity(self) -> Dict[str, Any]:
        """
        Reconcile balances against the log and check the audit chain
        """
        conservation = self.ledger.verify_conservation()
        audit = self.audit_trail.verify_integrity()

        result = {
            "valid": conservation["valid"] and audit["valid"],
            "conservation": conservation,
            "audit": audit
        }

        self.audit_trail.log_event(
            event_type=AuditEventType.AUDIT_INTEGRITY_CHECK,
            entity_type="system",
            entity_id="ledger",
            metadata={
                "valid": result["valid"],
                "transaction_count": conservation["transaction_count"],
                "audit_events": audit["total_events"]
            }
        )
        log_action(
            self.logger, "info" if result["valid"] else "error",
            "Integrity check completed",
            action="verify_integrity",
            extra={"valid": result["valid"]}
        )
        return result

    def close(self) -> None:
        self.storage.close()
