"""
Event System Module

Opt-in publish/subscribe for committed ledger changes. Services publish
only after their atomic unit has committed, so subscribers never see a
change that is later rolled back.
"""

from enum import Enum
from typing import Callable, Dict, List, Any, Optional
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import RLock
import uuid
import logging


class DomainEvent(Enum):
    """Domain events that can occur in the ledger"""

    ACCOUNT_OPENED = "account.opened"
    ACCOUNT_CLOSED = "account.closed"

    TRANSACTION_RECORDED = "transaction.recorded"

    LOAN_DISBURSED = "loan.disbursed"
    LOAN_PAYMENT = "loan.payment"
    LOAN_PAID_OFF = "loan.paid_off"


@dataclass
class EventPayload:
    """Payload for domain events"""
    event_type: DomainEvent
    entity_type: str
    entity_id: str
    data: Dict[str, Any]
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization"""
        return {
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'data': self.data,
            'timestamp': self.timestamp.isoformat(),
            'event_id': self.event_id
        }


EventHandler = Callable[[EventPayload], None]


class EventDispatcher:
    """Central event dispatcher, publish/subscribe pattern"""

    def __init__(self):
        self._handlers: Dict[DomainEvent, List[EventHandler]] = {}
        self._global_handlers: List[EventHandler] = []
        self._lock = RLock()
        self.logger = logging.getLogger("ledger_engine.events")

    def subscribe(self, event_type: DomainEvent, handler: EventHandler) -> None:
        """Subscribe to a specific event type"""
        with self._lock:
            self._handlers.setdefault(event_type, []).append(handler)

    def subscribe_all(self, handler: EventHandler) -> None:
        """Subscribe to ALL events"""
        with self._lock:
            self._global_handlers.append(handler)

    def unsubscribe(self, event_type: DomainEvent, handler: EventHandler) -> None:
        """Unsubscribe from a specific event type"""
        with self._lock:
            try:
                self._handlers.get(event_type, []).remove(handler)
            except ValueError:
                self.logger.warning(
                    f"Handler {getattr(handler, '__name__', repr(handler))} "
                    f"was not subscribed to {event_type.value}"
                )

    def publish(self, event: EventPayload) -> None:
        """Publish event to all subscribers"""
        with self._lock:
            handlers = list(self._handlers.get(event.event_type, []))
            handlers.extend(self._global_handlers)

        self.logger.debug(f"Publishing {event.event_type.value} for {event.entity_type}:{event.entity_id}")
        for handler in handlers:
            try:
                handler(event)
            except Exception as e:
                # The change is already committed; a failing subscriber cannot undo it
                self.logger.error(
                    f"Error in event handler {getattr(handler, '__name__', repr(handler))} "
                    f"for {event.event_type.value}: {e}"
                )

    def clear(self) -> None:
        """Clear all handlers"""
        with self._lock:
            self._handlers.clear()
            self._global_handlers.clear()

    def get_handler_count(self, event_type: Optional[DomainEvent] = None) -> int:
        """Get count of handlers for a specific event type or all"""
        with self._lock:
            if event_type:
                return len(self._handlers.get(event_type, []))
            total = sum(len(handlers) for handlers in self._handlers.values())
            return total + len(self._global_handlers)


def create_transaction_event(transaction) -> EventPayload:
    """Create a transaction.recorded event"""
    return EventPayload(
        event_type=DomainEvent.TRANSACTION_RECORDED,
        entity_type="transaction",
        entity_id=transaction.id,
        data={
            "sequence": transaction.sequence,
            "kind": transaction.kind.value,
            "amount": str(transaction.amount),
            "from_account_id": transaction.from_account_id,
            "to_account_id": transaction.to_account_id,
            "reference": transaction.reference
        }
    )


def create_loan_event(event_type: DomainEvent, loan, amount=None) -> EventPayload:
    """Create a loan-related event"""
    data = {
        "customer_id": loan.customer_id,
        "account_id": loan.account_id,
        "principal": str(loan.principal),
        "remaining_amount": str(loan.remaining_amount),
        "paid": loan.paid
    }
    if amount is not None:
        data["amount"] = str(amount)
    return EventPayload(
        event_type=event_type,
        entity_type="loan",
        entity_id=loan.id,
        data=data
    )


def create_account_event(event_type: DomainEvent, account) -> EventPayload:
    """Create an account-related event"""
    return EventPayload(
        event_type=event_type,
        entity_type="account",
        entity_id=account.id,
        data={
            "account_number": account.account_number,
            "customer_id": account.customer_id,
            "status": account.status.value,
            "balance": str(account.balance)
        }
    )
