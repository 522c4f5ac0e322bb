"""
Overdue Processing Module

Periodic risk processing over repaying loans: missed-installment detection,
penalty interest, collection escalation, borrower suspension and
blacklisting, and defaulting of loans left unresolved too long.

Loan state is only ever changed through LoanLedger operations, under the
same per-loan lock foreground payments take. A sweep is idempotent per
period: each open overdue record remembers the last period it was touched
in, and a second visit in that period is a no-op.
"""

import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Callable, Dict, List, Optional

from .audit import AuditEventType, AuditTrail
from .clock import Clock
from .credit_scoring import BorrowerStanding, CreditScoringEngine, PenaltyType
from .events import LedgerEvent, LedgerEventKind, NotificationPort, publish_safely
from .exceptions import FatalDataError, NotFoundError, ValidationError
from .interest import DEFAULT_CONVENTION, DayCountConvention, day_count, penalty_amount, simple_interest
from .locks import KeyedLocks
from .loans import REPAYING_STATUSES, Loan, LoanLedger, LoanStatus, MissedInstallment
from .money import ZERO, to_decimal, to_money
from .storage import StorageInterface, StorageRecord

logger = logging.getLogger("ledger.overdue")


class OverdueStatus(Enum):
    """Lifecycle of an overdue record"""
    ACTIVE = "active"
    ESCALATED = "escalated"  # borrower suspended or blacklisted
    RESOLVED = "resolved"
    WRITTEN_OFF = "written_off"


OPEN_OVERDUE_STATUSES = {OverdueStatus.ACTIVE, OverdueStatus.ESCALATED}


class CollectionMethod(Enum):
    """Collection escalation channels"""
    EMAIL = "email"
    SMS = "sms"
    PHONE_CALL = "phone_call"
    SYSTEM_NOTIFICATION = "system_notification"
    DEFAULT_ACTION = "default_action"


def collection_method_for(attempt_number: int) -> CollectionMethod:
    """Escalating channel for the n-th collection attempt"""
    if attempt_number <= 2:
        return CollectionMethod.EMAIL
    if attempt_number == 3:
        return CollectionMethod.SMS
    if attempt_number == 4:
        return CollectionMethod.PHONE_CALL
    return CollectionMethod.SYSTEM_NOTIFICATION


@dataclass
class OverdueRecord(StorageRecord):
    """Open or closed delinquency of one loan"""
    loan_id: str
    borrower_id: str
    status: OverdueStatus
    original_balance: Decimal
    current_balance: Decimal
    overdue_amount: Decimal
    first_due_date: date  # due date of the first missed installment
    first_overdue_at: datetime
    last_overdue_at: datetime
    penalty_accrued: Decimal = ZERO
    last_accrual_date: Optional[date] = None
    last_swept_period: Optional[str] = None
    collection_attempts: int = 0
    resolved_at: Optional[datetime] = None
    resolution: Optional[str] = None

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_OVERDUE_STATUSES


@dataclass
class CollectionAttempt(StorageRecord):
    """One escalation action taken against an overdue loan"""
    loan_id: str
    overdue_record_id: str
    borrower_id: str
    attempt_number: int
    method: CollectionMethod
    attempted_at: datetime
    successful: bool = False
    notes: str = ""
    requires_further_action: bool = True
    next_action_at: Optional[datetime] = None


@dataclass
class BorrowerRestriction(StorageRecord):
    """Suspension and blacklist flags of a borrower"""
    borrower_id: str
    suspended: bool = False
    suspended_at: Optional[datetime] = None
    blacklisted: bool = False
    blacklisted_at: Optional[datetime] = None
    reason: Optional[str] = None
    loan_id: Optional[str] = None


@dataclass
class LoanSweepOutcome:
    """What one sweep visit did to one loan"""
    loan_id: str
    skipped: bool = False
    missed_installments: int = 0
    newly_overdue: bool = False
    penalty_accrued: Decimal = ZERO
    collection_attempt: Optional[CollectionMethod] = None
    suspended: bool = False
    blacklisted: bool = False
    liquidation_flagged: bool = False
    defaulted: bool = False
    resolved: bool = False


@dataclass
class SweepResult:
    """Aggregate outcome of a sweep"""
    as_of: Optional[date] = None
    loans_examined: int = 0
    loans_processed: int = 0
    loans_skipped: int = 0
    missed_installments: int = 0
    newly_overdue: int = 0
    penalties_accrued: Decimal = ZERO
    collection_attempts: int = 0
    suspended: List[str] = field(default_factory=list)
    blacklisted: List[str] = field(default_factory=list)
    liquidations_flagged: List[str] = field(default_factory=list)
    defaulted: List[str] = field(default_factory=list)
    resolved: List[str] = field(default_factory=list)
    cancelled: bool = False
    skipped: bool = False
    errors: Dict[str, str] = field(default_factory=dict)

    def add(self, outcome: LoanSweepOutcome) -> None:
        if outcome.skipped:
            self.loans_skipped += 1
            return
        self.loans_processed += 1
        self.missed_installments += outcome.missed_installments
        self.newly_overdue += int(outcome.newly_overdue)
        self.penalties_accrued += outcome.penalty_accrued
        self.collection_attempts += int(outcome.collection_attempt is not None)
        for flag, bucket in (
            (outcome.suspended, self.suspended),
            (outcome.blacklisted, self.blacklisted),
            (outcome.liquidation_flagged, self.liquidations_flagged),
            (outcome.defaulted, self.defaulted),
            (outcome.resolved, self.resolved),
        ):
            if flag:
                bucket.append(outcome.loan_id)


class OverdueProcessor(BorrowerStanding):
    """
    Overdue sweep and borrower standing

    Also the source of blacklist and suspension status for credit
    qualification and loan applications.
    """

    RECORDS_TABLE = "overdue_records"
    ATTEMPTS_TABLE = "collection_attempts"
    RESTRICTIONS_TABLE = "borrower_restrictions"

    def __init__(
        self,
        ledger: LoanLedger,
        credit_engine: CreditScoringEngine,
        storage: Optional[StorageInterface] = None,
        clock: Optional[Clock] = None,
        notifier: Optional[NotificationPort] = None,
        audit_trail: Optional[AuditTrail] = None,
        penalty_rate=Decimal("0.18"),
        grace_period_days: int = 7,
        suspension_threshold: int = 3,
        blacklist_threshold: int = 6,
        max_unresolved_days: int = 90,
        max_collection_attempts: int = 5,
        collection_fee=ZERO,
        day_count_convention: DayCountConvention = DEFAULT_CONVENTION
    ):
        if suspension_threshold < 1 or blacklist_threshold < 1:
            raise ValidationError("Escalation thresholds must be at least 1")
        if blacklist_threshold < suspension_threshold:
            raise ValidationError("Blacklist threshold cannot be below suspension threshold")
        if grace_period_days < 0 or max_unresolved_days < 1:
            raise ValidationError("Invalid grace period or maximum unresolved duration")
        if max_collection_attempts < 1:
            raise ValidationError("Maximum collection attempts must be at least 1")
        collection_fee = to_money(collection_fee)
        if collection_fee < 0:
            raise ValidationError("Collection fee cannot be negative")

        self.ledger = ledger
        self.credit_engine = credit_engine
        self.storage = storage or ledger.storage
        self.clock = clock or ledger.clock
        self.notifier = notifier
        self.audit_trail = audit_trail
        self.penalty_rate = to_decimal(penalty_rate)
        self.grace_period_days = grace_period_days
        self.suspension_threshold = suspension_threshold
        self.blacklist_threshold = blacklist_threshold
        self.max_unresolved_days = max_unresolved_days
        self.max_collection_attempts = max_collection_attempts
        self.collection_fee = collection_fee
        self.day_count_convention = day_count_convention

        self._restriction_locks = KeyedLocks("restriction")
        self._sweep_running = threading.Lock()

        credit_engine.register_standing(self)
        ledger.register_standing(self)

    # Sweep

    def run_sweep(self, as_of: Optional[date] = None,
                  should_stop: Optional[Callable[[], bool]] = None) -> SweepResult:
        """
        Process every loan that is past due or has an open overdue record

        One loan's failure is logged and recorded in ``errors`` without
        stopping the sweep. A stop request is honoured between loans, never
        inside one.
        """
        as_of = as_of or self.clock.today()
        if not self._sweep_running.acquire(blocking=False):
            logger.info("Overdue sweep already running, skipping")
            return SweepResult(as_of=as_of, skipped=True)

        result = SweepResult(as_of=as_of)
        try:
            loan_ids = self._sweep_candidates(as_of)
            result.loans_examined = len(loan_ids)
            logger.info(f"Overdue sweep for {as_of}: {len(loan_ids)} candidate loans")

            for loan_id in loan_ids:
                if should_stop and should_stop():
                    result.cancelled = True
                    logger.info(f"Overdue sweep cancelled after {result.loans_processed} loans")
                    break
                try:
                    result.add(self.process_loan(loan_id, as_of))
                except FatalDataError as e:
                    result.errors[loan_id] = str(e)
                    logger.error(f"Ledger invariant broken on loan {loan_id}: {e}", exc_info=True)
                except Exception as e:
                    result.errors[loan_id] = str(e)
                    logger.error(f"Overdue processing failed for loan {loan_id}: {e}", exc_info=True)

            logger.info(
                f"Overdue sweep for {as_of} complete: {result.loans_processed} processed, "
                f"{result.loans_skipped} already swept, {len(result.defaulted)} defaulted, "
                f"{len(result.errors)} failed"
            )
            return result
        finally:
            self._sweep_running.release()

    def _sweep_candidates(self, as_of: date) -> List[str]:
        loan_ids = {loan.id for loan in self.ledger.get_loans_past_due(as_of)}
        loan_ids.update(loan.id for loan in self.ledger.get_active_loans()
                        if loan.status == LoanStatus.OVERDUE)
        loan_ids.update(record.loan_id for record in self.get_overdue_records(open_only=True))
        return sorted(loan_ids)

    def process_loan(self, loan_id: str, as_of: Optional[date] = None) -> LoanSweepOutcome:
        """
        Run every sweep step for one loan as a single unit

        Locks are taken loan first, then the borrower's restriction and score
        locks, then the storage transaction. Any failure rolls back the whole
        visit, so a retry in the same period starts from the same state.
        """
        as_of = as_of or self.clock.today()
        outcome = LoanSweepOutcome(loan_id=loan_id)

        with self.ledger.exclusive(loan_id):
            loan = self.ledger.get_loan(loan_id)
            if loan is None:
                raise NotFoundError(f"Loan {loan_id} not found")

            with self._restriction_locks.hold(loan.borrower_id), \
                    self.credit_engine.exclusive(loan.borrower_id), \
                    self.storage.atomic():
                self._visit(loan, as_of, outcome)

        return outcome

    def _visit(self, loan: Loan, as_of: date, outcome: LoanSweepOutcome) -> None:
        period = self._period(as_of)
        record = self._open_record(loan.id)

        if record is not None and record.last_swept_period == period:
            outcome.skipped = True
            return

        if loan.status not in REPAYING_STATUSES:
            if record is not None:
                outcome.resolved = self._reconcile(record, loan)
            return

        missed = self.ledger.record_missed_installments(loan.id, as_of)
        outcome.missed_installments = len(missed)
        loan = self.ledger.get_loan(loan.id)

        if loan.status != LoanStatus.OVERDUE:
            if record is not None:
                outcome.resolved = self._reconcile(record, loan)
            return

        now = self.clock.now()
        if record is None:
            record = self._open(loan, missed, now)
            outcome.newly_overdue = True
        if missed:
            record.last_overdue_at = now

        for item in missed:
            self.credit_engine.apply_penalty(
                loan.borrower_id,
                self.credit_engine.late_payment_penalty(item.overdue_payments),
                f"Missed installment {item.sequence} due {item.due_date}",
                loan_id=loan.id
            )

        outcome.penalty_accrued = self._accrue(record, loan, as_of)
        loan = self.ledger.get_loan(loan.id)

        if day_count(record.first_due_date, as_of) >= self.max_unresolved_days:
            self._default(record, loan, outcome, now, f"Unresolved for {self.max_unresolved_days} days")
        elif record.collection_attempts >= self.max_collection_attempts:
            self._default(record, loan, outcome, now,
                          f"Collection failed after {record.collection_attempts} attempts")
        else:
            outcome.collection_attempt = self._log_attempt(record, loan, now).method
            self._escalate(record, loan, outcome)

        record.current_balance = loan.current_balance
        record.overdue_amount = loan.overdue_amount
        record.last_swept_period = period
        record.updated_at = now
        self._save_record(record)

    def _period(self, as_of: date) -> str:
        return as_of.isoformat()

    def _open(self, loan: Loan, missed: List[MissedInstallment], now: datetime) -> OverdueRecord:
        first_due = missed[0].due_date if missed else (loan.next_payment_date or now.date())
        record = OverdueRecord(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            loan_id=loan.id,
            borrower_id=loan.borrower_id,
            status=OverdueStatus.ACTIVE,
            original_balance=loan.principal,
            current_balance=loan.current_balance,
            overdue_amount=loan.overdue_amount,
            first_due_date=first_due,
            first_overdue_at=now,
            last_overdue_at=now
        )
        logger.warning(f"Loan {loan.id} overdue since {first_due}: {loan.overdue_amount} in arrears")
        return record

    def _accrue(self, record: OverdueRecord, loan: Loan, as_of: date) -> Decimal:
        """
        Penalty interest on each missed installment for its days past grace not yet charged

        Every installment runs its own grace period from its own due date.
        Once any penalty is due, the record's total penalty is at least the
        collection fee.
        """
        remaining_arrears = loan.arrears_amount
        penalty = ZERO
        charged_days = 0
        for entry in self.ledger.get_schedule(loan.id):
            if entry.sequence >= loan.current_installment or remaining_arrears <= 0:
                break
            if entry.settled:
                continue
            amount = min(entry.outstanding, remaining_arrears)
            remaining_arrears -= amount
            grace_end = entry.due_date + timedelta(days=self.grace_period_days)
            start = max(record.last_accrual_date or grace_end, grace_end)
            days = day_count(start, as_of, self.day_count_convention)
            if days <= 0:
                continue
            penalty += simple_interest(amount, self.penalty_rate, days, self.day_count_convention)
            charged_days = max(charged_days, days)

        if charged_days == 0:
            return ZERO

        record.last_accrual_date = as_of
        if penalty > 0 and record.penalty_accrued + penalty < self.collection_fee:
            penalty = self.collection_fee - record.penalty_accrued
        if penalty > 0:
            self.ledger.accrue_penalty(loan.id, penalty)
            record.penalty_accrued += penalty
            logger.info(f"Accrued {penalty} penalty on loan {loan.id} for up to {charged_days} days")
        return penalty

    def _log_attempt(self, record: OverdueRecord, loan: Loan, now: datetime,
                     method: Optional[CollectionMethod] = None) -> CollectionAttempt:
        record.collection_attempts += 1
        method = method or collection_method_for(record.collection_attempts)
        final = method == CollectionMethod.DEFAULT_ACTION
        attempt = CollectionAttempt(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            loan_id=loan.id,
            overdue_record_id=record.id,
            borrower_id=loan.borrower_id,
            attempt_number=record.collection_attempts,
            method=method,
            attempted_at=now,
            notes=(f"Loan defaulted with balance {loan.current_balance}" if final
                   else f"{loan.overdue_amount} overdue after {loan.overdue_payments} missed payments"),
            requires_further_action=not final,
            next_action_at=None if final else now + timedelta(days=1)
        )
        self.storage.save(self.ATTEMPTS_TABLE, attempt.id, attempt.to_dict())

        event = LedgerEvent(
            kind=LedgerEventKind.COLLECTION_ATTEMPTED,
            entity_id=loan.id,
            borrower_id=loan.borrower_id,
            data={'attempt_number': attempt.attempt_number, 'method': method.value,
                  'overdue_amount': loan.overdue_amount},
            timestamp=now
        )
        self.storage.on_commit(lambda: publish_safely(self.notifier, event))
        return attempt

    def _escalate(self, record: OverdueRecord, loan: Loan, outcome: LoanSweepOutcome) -> None:
        if loan.overdue_payments >= self.suspension_threshold:
            outcome.suspended = self.suspend_borrower(
                loan.borrower_id, f"{loan.overdue_payments} missed payments", loan_id=loan.id)
            record.status = OverdueStatus.ESCALATED

        if loan.overdue_payments >= self.blacklist_threshold:
            outcome.blacklisted = self.blacklist_borrower(
                loan.borrower_id, f"{loan.overdue_payments} missed payments", loan_id=loan.id)
            outcome.liquidation_flagged = self.ledger.flag_collateral_liquidation(loan.id)
            record.status = OverdueStatus.ESCALATED

    def _default(self, record: OverdueRecord, loan: Loan, outcome: LoanSweepOutcome, now: datetime,
                 reason: str) -> None:
        loan = self.ledger.mark_defaulted(loan.id, reason)
        outcome.defaulted = True

        self.credit_engine.apply_penalty_tier(loan.borrower_id, PenaltyType.DEFAULT, reason, loan_id=loan.id)
        self._log_attempt(record, loan, now, CollectionMethod.DEFAULT_ACTION)
        outcome.collection_attempt = CollectionMethod.DEFAULT_ACTION
        outcome.blacklisted = self.blacklist_borrower(loan.borrower_id, f"Loan {loan.id} defaulted", loan_id=loan.id)
        outcome.liquidation_flagged = self.ledger.flag_collateral_liquidation(loan.id)

        record.status = OverdueStatus.WRITTEN_OFF
        record.resolved_at = now
        record.resolution = "defaulted"

    def _reconcile(self, record: OverdueRecord, loan: Loan) -> bool:
        """Close an open record whose loan is no longer overdue"""
        if loan.status == LoanStatus.OVERDUE:
            return False
        now = self.clock.now()
        if loan.status == LoanStatus.DEFAULTED:
            record.status = OverdueStatus.WRITTEN_OFF
            record.resolution = "defaulted"
        else:
            record.status = OverdueStatus.RESOLVED
            record.resolution = "paid_off" if loan.status == LoanStatus.PAID_OFF else "arrears_cleared"
        record.current_balance = loan.current_balance
        record.overdue_amount = loan.overdue_amount
        record.resolved_at = now
        record.updated_at = now
        with self.storage.atomic():
            self._save_record(record)
        logger.info(f"Overdue record for loan {loan.id} closed: {record.resolution}")
        return record.status == OverdueStatus.RESOLVED

    # Collateral

    def liquidate_collateral(self, loan_id: str) -> Decimal:
        """
        Liquidate a loan's collateral at its discounted value

        Works on repaying and defaulted loans. Returns the amount recovered.
        """
        with self.ledger.exclusive(loan_id), self.storage.atomic():
            recovered = self.ledger.apply_collateral_recovery(loan_id)
            record = self._open_record(loan_id)
            if record is not None:
                self._reconcile(record, self.ledger.get_loan(loan_id))
        logger.warning(f"Collateral of loan {loan_id} liquidated for {recovered}")
        return recovered

    # Borrower standing

    def is_blacklisted(self, borrower_id: str) -> bool:
        restriction = self._load_restriction(borrower_id)
        return restriction is not None and restriction.blacklisted

    def is_suspended(self, borrower_id: str) -> bool:
        restriction = self._load_restriction(borrower_id)
        return restriction is not None and restriction.suspended

    def get_restriction(self, borrower_id: str) -> Optional[BorrowerRestriction]:
        return self._load_restriction(borrower_id)

    def suspend_borrower(self, borrower_id: str, reason: str, loan_id: Optional[str] = None) -> bool:
        """Suspend loan privileges; False when already suspended"""
        return self._restrict(borrower_id, reason, loan_id, blacklist=False)

    def blacklist_borrower(self, borrower_id: str, reason: str, loan_id: Optional[str] = None) -> bool:
        """Deny all future qualification; False when already blacklisted"""
        return self._restrict(borrower_id, reason, loan_id, blacklist=True)

    def lift_suspension(self, borrower_id: str, actor: Optional[str] = None) -> bool:
        return self._lift(borrower_id, actor, blacklist=False)

    def remove_from_blacklist(self, borrower_id: str, actor: Optional[str] = None) -> bool:
        return self._lift(borrower_id, actor, blacklist=True)

    def _restrict(self, borrower_id: str, reason: str, loan_id: Optional[str], blacklist: bool) -> bool:
        if not borrower_id:
            raise ValidationError("Borrower ID is required")

        with self._restriction_locks.hold(borrower_id):
            now = self.clock.now()
            restriction = self._load_restriction(borrower_id) or BorrowerRestriction(
                id=borrower_id, created_at=now, updated_at=now, borrower_id=borrower_id
            )
            if blacklist:
                if restriction.blacklisted:
                    return False
                restriction.blacklisted = True
                restriction.blacklisted_at = now
            else:
                if restriction.suspended:
                    return False
                restriction.suspended = True
                restriction.suspended_at = now
            restriction.reason = reason
            restriction.loan_id = loan_id
            restriction.updated_at = now

            penalty_type = PenaltyType.BLACKLIST if blacklist else PenaltyType.ACCOUNT_SUSPENSION
            with self.credit_engine.exclusive(borrower_id), self.storage.atomic():
                self.storage.save(self.RESTRICTIONS_TABLE, borrower_id, restriction.to_dict())
                self.credit_engine.apply_penalty_tier(borrower_id, penalty_type, reason, loan_id=loan_id)

                audit_type = AuditEventType.BORROWER_BLACKLISTED if blacklist else AuditEventType.BORROWER_SUSPENDED
                kind = LedgerEventKind.BORROWER_BLACKLISTED if blacklist else LedgerEventKind.BORROWER_SUSPENDED

                def committed():
                    if self.audit_trail:
                        self.audit_trail.log_event(
                            event_type=audit_type,
                            entity_type="borrower",
                            entity_id=borrower_id,
                            metadata={'reason': reason, 'loan_id': loan_id}
                        )
                    logger.warning(f"Borrower {borrower_id} {'blacklisted' if blacklist else 'suspended'}: {reason}")
                    publish_safely(self.notifier, LedgerEvent(
                        kind=kind, entity_id=borrower_id, borrower_id=borrower_id,
                        data={'reason': reason, 'loan_id': loan_id}, timestamp=now
                    ))

                self.storage.on_commit(committed)
        return True

    def _lift(self, borrower_id: str, actor: Optional[str], blacklist: bool) -> bool:
        with self._restriction_locks.hold(borrower_id):
            restriction = self._load_restriction(borrower_id)
            if restriction is None:
                return False
            if blacklist:
                if not restriction.blacklisted:
                    return False
                restriction.blacklisted = False
                restriction.blacklisted_at = None
            else:
                if not restriction.suspended:
                    return False
                restriction.suspended = False
                restriction.suspended_at = None
            restriction.updated_at = self.clock.now()
            with self.storage.atomic():
                self.storage.save(self.RESTRICTIONS_TABLE, borrower_id, restriction.to_dict())

        if self.audit_trail:
            self.audit_trail.log_event(
                event_type=AuditEventType.BORROWER_RESTRICTION_LIFTED,
                entity_type="borrower",
                entity_id=borrower_id,
                metadata={'restriction': 'blacklist' if blacklist else 'suspension'},
                actor=actor
            )
        logger.info(f"{'Blacklist' if blacklist else 'Suspension'} lifted for borrower {borrower_id}")
        return True

    # Queries

    def get_total_overdue_amount(self, borrower_id: str) -> Decimal:
        """Arrears plus penalties across the borrower's overdue loans"""
        return sum(
            (loan.overdue_amount for loan in self.ledger.get_borrower_loans(borrower_id)
             if loan.status == LoanStatus.OVERDUE),
            ZERO
        )

    def get_overdue_records(self, borrower_id: Optional[str] = None, loan_id: Optional[str] = None,
                            open_only: bool = False) -> List[OverdueRecord]:
        filters = {}
        if borrower_id:
            filters['borrower_id'] = borrower_id
        if loan_id:
            filters['loan_id'] = loan_id
        records = [OverdueRecord.from_dict(d) for d in self.storage.find(self.RECORDS_TABLE, filters)]
        if open_only:
            records = [r for r in records if r.is_open]
        records.sort(key=lambda r: r.created_at)
        return records

    def get_collection_attempts(self, loan_id: str) -> List[CollectionAttempt]:
        attempts = [CollectionAttempt.from_dict(d)
                    for d in self.storage.find(self.ATTEMPTS_TABLE, {'loan_id': loan_id})]
        attempts.sort(key=lambda a: a.attempt_number)
        return attempts

    def calculate_penalty(self, overdue_amount, days_overdue: int) -> Decimal:
        """Penalty for ``days_overdue`` days net of the grace period, floored at the collection fee"""
        penalty = penalty_amount(overdue_amount, self.penalty_rate, days_overdue,
                                 self.grace_period_days, self.day_count_convention)
        if days_overdue <= self.grace_period_days:
            return penalty
        return max(penalty, self.collection_fee)

    # Persistence helpers

    def _open_record(self, loan_id: str) -> Optional[OverdueRecord]:
        records = self.get_overdue_records(loan_id=loan_id, open_only=True)
        if len(records) > 1:
            raise FatalDataError(f"Loan {loan_id} has {len(records)} open overdue records")
        return records[0] if records else None

    def _save_record(self, record: OverdueRecord) -> None:
        self.storage.save(self.RECORDS_TABLE, record.id, record.to_dict())

    def _load_restriction(self, borrower_id: str) -> Optional[BorrowerRestriction]:
        data = self.storage.load(self.RESTRICTIONS_TABLE, borrower_id)
        if data is None:
            return None
        return BorrowerRestriction.from_dict(data)
