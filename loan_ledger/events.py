"""
Ledger Event Module

Domain notifications as a tagged union: an event kind plus a structured
payload. The engine publishes through an injected NotificationPort and never
depends on an event dispatcher framework.
"""

from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Dict, List, Optional
from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
import uuid
from threading import RLock

from .storage import encode_value


logger = logging.getLogger("ledger.events")


class LedgerEventKind(Enum):
    """Kinds of events the ledger emits"""

    # Loan lifecycle
    LOAN_SUBMITTED = "loan.submitted"
    LOAN_APPROVED = "loan.approved"
    LOAN_REJECTED = "loan.rejected"
    LOAN_DISBURSED = "loan.disbursed"
    LOAN_PAYMENT = "loan.payment"
    LOAN_PAID_OFF = "loan.paid_off"
    LOAN_REFINANCED = "loan.refinanced"

    # Risk processing
    LOAN_OVERDUE = "loan.overdue"
    LOAN_ARREARS_CLEARED = "loan.arrears_cleared"
    LOAN_PENALTY_ACCRUED = "loan.penalty_accrued"
    LOAN_DEFAULTED = "loan.defaulted"
    COLLECTION_ATTEMPTED = "collection.attempted"
    COLLATERAL_LIQUIDATION_FLAGGED = "collateral.liquidation_flagged"
    COLLATERAL_LIQUIDATED = "collateral.liquidated"
    BORROWER_SUSPENDED = "borrower.suspended"
    BORROWER_BLACKLISTED = "borrower.blacklisted"

    # Credit
    CREDIT_SCORE_UPDATED = "credit.score_updated"
    CREDIT_PENALTY_APPLIED = "credit.penalty_applied"
    CREDIT_BONUS_APPLIED = "credit.bonus_applied"


# Log level for each kind; every kind must be present
EVENT_SEVERITY: Dict[LedgerEventKind, int] = {
    LedgerEventKind.LOAN_SUBMITTED: logging.INFO,
    LedgerEventKind.LOAN_APPROVED: logging.INFO,
    LedgerEventKind.LOAN_REJECTED: logging.WARNING,
    LedgerEventKind.LOAN_DISBURSED: logging.INFO,
    LedgerEventKind.LOAN_PAYMENT: logging.INFO,
    LedgerEventKind.LOAN_PAID_OFF: logging.INFO,
    LedgerEventKind.LOAN_REFINANCED: logging.INFO,
    LedgerEventKind.LOAN_OVERDUE: logging.WARNING,
    LedgerEventKind.LOAN_ARREARS_CLEARED: logging.INFO,
    LedgerEventKind.LOAN_PENALTY_ACCRUED: logging.INFO,
    LedgerEventKind.LOAN_DEFAULTED: logging.ERROR,
    LedgerEventKind.COLLECTION_ATTEMPTED: logging.INFO,
    LedgerEventKind.COLLATERAL_LIQUIDATION_FLAGGED: logging.WARNING,
    LedgerEventKind.COLLATERAL_LIQUIDATED: logging.WARNING,
    LedgerEventKind.BORROWER_SUSPENDED: logging.WARNING,
    LedgerEventKind.BORROWER_BLACKLISTED: logging.ERROR,
    LedgerEventKind.CREDIT_SCORE_UPDATED: logging.DEBUG,
    LedgerEventKind.CREDIT_PENALTY_APPLIED: logging.INFO,
    LedgerEventKind.CREDIT_BONUS_APPLIED: logging.INFO,
}


def severity_of(kind: LedgerEventKind) -> int:
    """Log level for an event kind; raises KeyError for an unmapped kind"""
    return EVENT_SEVERITY[kind]


@dataclass
class LedgerEvent:
    """A single ledger notification"""
    kind: LedgerEventKind
    entity_id: str
    borrower_id: Optional[str]
    data: Dict[str, Any]
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization"""
        return {
            'kind': self.kind.value,
            'entity_id': self.entity_id,
            'borrower_id': self.borrower_id,
            'data': {k: encode_value(v) for k, v in self.data.items()},
            'timestamp': self.timestamp.isoformat(),
            'event_id': self.event_id
        }


class NotificationPort(ABC):
    """Outbound port for ledger events"""

    @abstractmethod
    def publish(self, event: LedgerEvent) -> None:
        pass


class LoggingNotifier(NotificationPort):
    """Writes every event to the ``ledger.events`` logger"""

    def publish(self, event: LedgerEvent) -> None:
        logger.log(
            severity_of(event.kind),
            f"{event.kind.value} {event.entity_id}",
            extra={"extra": event.to_dict()}
        )


class RecordingNotifier(NotificationPort):
    """Keeps published events in memory, optionally forwarding them"""

    def __init__(self, forward_to: Optional[NotificationPort] = None):
        self._events: List[LedgerEvent] = []
        self._lock = RLock()
        self.forward_to = forward_to

    def publish(self, event: LedgerEvent) -> None:
        with self._lock:
            self._events.append(event)
        if self.forward_to is not None:
            self.forward_to.publish(event)

    def events(self, kind: Optional[LedgerEventKind] = None) -> List[LedgerEvent]:
        with self._lock:
            if kind is None:
                return list(self._events)
            return [e for e in self._events if e.kind == kind]

    def clear(self) -> None:
        with self._lock:
            self._events.clear()


def publish_safely(port: Optional[NotificationPort], event: LedgerEvent) -> None:
    """Deliver an event; a failing notifier never rolls back ledger state"""
    if port is None:
        return
    try:
        port.publish(event)
    except Exception as e:
        logger.error(f"Notification delivery failed for {event.kind.value}: {e}", exc_info=True)
