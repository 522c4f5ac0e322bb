"""
Credit Scoring Module

Maintains a 300-850 credit score per borrower, derived from a weighted blend
of behavioral factors plus the net of all penalties and bonuses applied to
the borrower. Scores map onto five grades which drive loan pricing and
qualification.
"""

import logging
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set, Union

from .audit import AuditEventType, AuditTrail
from .clock import Clock, SystemClock
from .events import LedgerEvent, LedgerEventKind, NotificationPort, publish_safely
from .exceptions import TransientInfrastructureError, ValidationError
from .locks import KeyedLocks
from .money import to_decimal
from .storage import StorageInterface, StorageRecord

logger = logging.getLogger("ledger.credit")

MIN_SCORE = 300
MAX_SCORE = 850
DEFAULT_SCORE = 600
MAX_INTEREST_RATE = Decimal("0.25")


class CreditGrade(Enum):
    """Credit grades, best to worst"""
    A = "A"
    B = "B"
    C = "C"
    D = "D"
    F = "F"

    @property
    def min_score(self) -> int:
        return _GRADE_TABLE[self][0]

    @property
    def base_rate(self) -> Decimal:
        """Base annual interest rate offered to this grade"""
        return _GRADE_TABLE[self][1]

    @property
    def max_credit_limit(self) -> Decimal:
        return _GRADE_TABLE[self][2]

    @classmethod
    def from_score(cls, score: int) -> 'CreditGrade':
        for grade in cls:
            if score >= grade.min_score:
                return grade
        return cls.F


# grade: (minimum score, base annual rate, max credit limit)
_GRADE_TABLE = {
    CreditGrade.A: (800, Decimal("0.035"), Decimal("1000000")),
    CreditGrade.B: (740, Decimal("0.045"), Decimal("500000")),
    CreditGrade.C: (670, Decimal("0.065"), Decimal("200000")),
    CreditGrade.D: (580, Decimal("0.095"), Decimal("50000")),
    CreditGrade.F: (MIN_SCORE, Decimal("0.150"), Decimal("10000")),
}


class LoanType(Enum):
    """Loan products"""
    CREDIT = "credit"
    MORTGAGE = "mortgage"
    BUSINESS = "business"
    EMERGENCY = "emergency"

    @property
    def rate_multiplier(self) -> Decimal:
        return _LOAN_TYPE_TABLE[self][0]

    @property
    def max_term_months(self) -> int:
        return _LOAN_TYPE_TABLE[self][1]

    @property
    def requires_collateral(self) -> bool:
        return _LOAN_TYPE_TABLE[self][2]


# type: (rate multiplier, max term in months, requires collateral)
_LOAN_TYPE_TABLE = {
    LoanType.CREDIT: (Decimal("1.2"), 12, False),
    LoanType.MORTGAGE: (Decimal("0.8"), 240, True),
    LoanType.BUSINESS: (Decimal("1.5"), 60, False),
    LoanType.EMERGENCY: (Decimal("2.0"), 3, False),
}

DEFAULT_MIN_SCORES = {
    LoanType.CREDIT: 600,
    LoanType.MORTGAGE: 650,
    LoanType.BUSINESS: 700,
    LoanType.EMERGENCY: 500,
}


def interest_rate_for(grade: CreditGrade, loan_type: LoanType) -> Decimal:
    """Annual rate for a grade and product, capped at 25%"""
    return min(MAX_INTEREST_RATE, grade.base_rate * loan_type.rate_multiplier)


class PenaltyType(Enum):
    """Severity tiers for credit penalties"""
    LATE_PAYMENT = "late_payment"
    ACCOUNT_SUSPENSION = "account_suspension"
    DEFAULT = "default"
    BLACKLIST = "blacklist"


DEFAULT_PENALTY_TIERS = {
    PenaltyType.LATE_PAYMENT: 10,
    PenaltyType.ACCOUNT_SUSPENSION: 25,
    PenaltyType.DEFAULT: 50,
    PenaltyType.BLACKLIST: 100,
}

FACTOR_NAMES = (
    "transaction_frequency",
    "transaction_amount",
    "repayment_history",
    "account_age",
    "current_balance",
)

DEFAULT_WEIGHTS = {
    "transaction_frequency": 0.20,
    "transaction_amount": 0.15,
    "repayment_history": 0.35,
    "account_age": 0.15,
    "current_balance": 0.15,
}


class AdjustmentKind(Enum):
    PENALTY = "penalty"
    BONUS = "bonus"


@dataclass
class TransactionSample:
    """One economic transaction of a borrower"""
    amount: Decimal
    occurred_at: datetime


@dataclass
class AccountSnapshot:
    """Balance information for a borrower's main account"""
    current_balance: Decimal
    average_balance: Decimal
    opened_at: Optional[datetime] = None


@dataclass
class RepaymentHistory:
    """Aggregated loan repayment behavior of a borrower"""
    total_payments: int = 0
    on_time_payments: int = 0
    late_payments: int = 0
    total_loans: int = 0
    defaulted_loans: int = 0
    recovered_loans: int = 0


class BehaviorDataSource(ABC):
    """Source of transaction and account data for scoring"""

    @abstractmethod
    def transactions(self, borrower_id: str) -> List[TransactionSample]:
        pass

    @abstractmethod
    def account(self, borrower_id: str) -> Optional[AccountSnapshot]:
        pass


class InMemoryBehaviorSource(BehaviorDataSource):
    """Behavior data held in memory, fed by the host economy"""

    def __init__(self):
        self._transactions: Dict[str, List[TransactionSample]] = {}
        self._accounts: Dict[str, AccountSnapshot] = {}
        self._lock = threading.Lock()

    def record_transaction(self, borrower_id: str, amount, occurred_at: datetime) -> None:
        with self._lock:
            self._transactions.setdefault(borrower_id, []).append(
                TransactionSample(to_decimal(amount), occurred_at)
            )

    def set_account(self, borrower_id: str, snapshot: AccountSnapshot) -> None:
        with self._lock:
            self._accounts[borrower_id] = snapshot

    def transactions(self, borrower_id: str) -> List[TransactionSample]:
        with self._lock:
            return list(self._transactions.get(borrower_id, []))

    def account(self, borrower_id: str) -> Optional[AccountSnapshot]:
        with self._lock:
            return self._accounts.get(borrower_id)


class BorrowerStanding(ABC):
    """Borrower-level restrictions that override the numeric score"""

    @abstractmethod
    def is_blacklisted(self, borrower_id: str) -> bool:
        pass

    @abstractmethod
    def is_suspended(self, borrower_id: str) -> bool:
        pass


# Factor scores, each on a 0-100 scale

_HUNDRED = Decimal(100)


def _cap(value: Decimal) -> Decimal:
    return max(Decimal(0), min(_HUNDRED, value))


def frequency_factor(transactions: List[TransactionSample], now: datetime) -> Decimal:
    """Transactions in the last 30 days; 15 or more scores 100"""
    if not transactions:
        return Decimal(50)
    cutoff = now - timedelta(days=30)
    recent = sum(1 for t in transactions if t.occurred_at >= cutoff)
    return _cap(Decimal(recent) / 15 * _HUNDRED)


def amount_factor(transactions: List[TransactionSample]) -> Decimal:
    """Lifetime transaction volume; 50,000 or more scores 100"""
    if not transactions:
        return Decimal(50)
    total = sum((abs(t.amount) for t in transactions), Decimal(0))
    return _cap(total / 50000 * _HUNDRED)


def repayment_factor(history: RepaymentHistory) -> Decimal:
    """
    Punctuality minus late, default and plus recovery adjustments

    Borrowers with no payments yet start from a neutral 70.
    """
    if history.total_payments == 0 and history.total_loans == 0:
        return Decimal(70)

    if history.total_payments > 0:
        total = Decimal(history.total_payments)
        score = Decimal(history.on_time_payments) / total * _HUNDRED
        score -= Decimal(history.late_payments) / total * 30
    else:
        score = Decimal(70)

    if history.total_loans > 0:
        score -= Decimal(history.defaulted_loans) / history.total_loans * 40
    if history.defaulted_loans > 0:
        score += Decimal(history.recovered_loans) / history.defaulted_loans * 20

    return _cap(score)


def account_age_factor(account: Optional[AccountSnapshot], now: datetime) -> Decimal:
    """Account age; one year or older scores 100"""
    if account is None or account.opened_at is None:
        return Decimal(30)
    days = max(0, (now - account.opened_at).days)
    return _cap(Decimal(days) / 365 * _HUNDRED)


def balance_factor(account: Optional[AccountSnapshot]) -> Decimal:
    """Current balance relative to the average balance, on a log scale"""
    if account is None:
        return Decimal(30)
    if account.average_balance <= 0:
        return Decimal(70) if account.current_balance > 0 else Decimal(30)
    if account.current_balance <= 0:
        return Decimal(0)
    ratio = account.current_balance / account.average_balance
    return _cap((ratio + 1).log10() * 50)


def clamp_score(score: int) -> int:
    return max(MIN_SCORE, min(MAX_SCORE, score))


@dataclass
class CreditScoreRecord(StorageRecord):
    """Current score of one borrower"""
    borrower_id: str
    score: int
    grade: CreditGrade
    adjustment_total: int = 0
    factors: Dict[str, Any] = field(default_factory=dict)
    last_calculated_at: Optional[datetime] = None


@dataclass
class CreditAdjustment(StorageRecord):
    """Append-only penalty or bonus entry"""
    borrower_id: str
    kind: AdjustmentKind
    delta: int
    score_before: int
    score_after: int
    reason: str
    loan_id: Optional[str] = None


@dataclass
class QualificationResult:
    """Outcome of a qualification check"""
    qualified: bool
    score: int
    grade: CreditGrade
    minimum_score: int
    reason: str = ""


@dataclass
class RefreshResult:
    """Outcome of a batch score refresh"""
    processed: int = 0
    failed: int = 0
    skipped: bool = False
    cancelled: bool = False
    unprocessed: List[str] = field(default_factory=list)  # not reached before cancellation
    errors: Dict[str, str] = field(default_factory=dict)


class CreditScoringEngine:
    """
    Computes and maintains borrower credit scores

    Per-borrower operations are serialized; different borrowers are scored
    concurrently.
    """

    SCORES_TABLE = "credit_scores"
    ADJUSTMENTS_TABLE = "credit_adjustments"

    def __init__(
        self,
        storage: StorageInterface,
        clock: Optional[Clock] = None,
        behavior_source: Optional[BehaviorDataSource] = None,
        weights: Optional[Dict[str, float]] = None,
        min_scores: Optional[Dict[Union[LoanType, str], int]] = None,
        penalty_tiers: Optional[Dict[PenaltyType, int]] = None,
        notifier: Optional[NotificationPort] = None,
        audit_trail: Optional[AuditTrail] = None,
        refresh_batch_size: int = 100
    ):
        self.storage = storage
        self.clock = clock or SystemClock()
        self.behavior_source = behavior_source
        self.weights = self._validate_weights(weights or DEFAULT_WEIGHTS)
        self.min_scores = dict(DEFAULT_MIN_SCORES)
        for key, value in (min_scores or {}).items():
            loan_type = key if isinstance(key, LoanType) else LoanType(key)
            self.min_scores[loan_type] = int(value)
        self.penalty_tiers = dict(DEFAULT_PENALTY_TIERS)
        self.penalty_tiers.update(penalty_tiers or {})
        self.notifier = notifier
        self.audit_trail = audit_trail
        self.refresh_batch_size = refresh_batch_size

        self._locks = KeyedLocks("score")
        self._last_known: Dict[str, int] = {}
        self._pending: Set[str] = set()
        self._pending_lock = threading.Lock()
        self._refresh_running = threading.Lock()
        self._repayment_source: Optional[Callable[[str], RepaymentHistory]] = None
        self._standing: Optional[BorrowerStanding] = None

    @staticmethod
    def _validate_weights(weights: Dict[str, float]) -> Dict[str, Decimal]:
        missing = set(FACTOR_NAMES) - set(weights)
        unknown = set(weights) - set(FACTOR_NAMES)
        if missing or unknown:
            raise ValidationError(
                f"Scoring weights must cover exactly {FACTOR_NAMES}; "
                f"missing={sorted(missing)}, unknown={sorted(unknown)}"
            )
        converted = {name: to_decimal(value) for name, value in weights.items()}
        if any(w < 0 for w in converted.values()):
            raise ValidationError("Scoring weights cannot be negative")
        if abs(sum(converted.values()) - 1) > Decimal("0.000001"):
            raise ValidationError(f"Scoring weights must sum to 1.0, got {sum(converted.values())}")
        return converted

    def register_repayment_source(self, source: Callable[[str], RepaymentHistory]) -> None:
        """Install the provider of repayment history (the loan ledger)"""
        self._repayment_source = source

    def register_standing(self, standing: BorrowerStanding) -> None:
        """Install the provider of blacklist/suspension status"""
        self._standing = standing

    # Scoring

    def compute_factors(self, borrower_id: str) -> Dict[str, Decimal]:
        """Current factor scores for a borrower, each 0-100"""
        now = self.clock.now()
        transactions = self.behavior_source.transactions(borrower_id) if self.behavior_source else []
        account = self.behavior_source.account(borrower_id) if self.behavior_source else None
        history = self._repayment_source(borrower_id) if self._repayment_source else RepaymentHistory()

        return {
            "transaction_frequency": frequency_factor(transactions, now),
            "transaction_amount": amount_factor(transactions),
            "repayment_history": repayment_factor(history),
            "account_age": account_age_factor(account, now),
            "current_balance": balance_factor(account),
        }

    def behavioral_score(self, factors: Dict[str, Decimal]) -> int:
        """Map a weighted factor blend onto the 300-850 range"""
        blend = sum((self.weights[name] * factors[name] for name in FACTOR_NAMES), Decimal(0))
        raw = Decimal(MIN_SCORE) + blend / _HUNDRED * (MAX_SCORE - MIN_SCORE)
        return int(raw.quantize(Decimal(1), rounding=ROUND_HALF_UP))

    def calculate_score(self, borrower_id: str) -> int:
        """
        Recompute a borrower's score from current factor inputs

        Idempotent: with unchanged inputs the same score is produced and
        persisted. Net penalties and bonuses are preserved across
        recalculation.

        Raises:
            TransientInfrastructureError: If inputs or storage are unavailable
        """
        with self._locks.hold(borrower_id):
            factors = self.compute_factors(borrower_id)
            base_score = self.behavioral_score(factors)
            now = self.clock.now()

            with self.storage.atomic():
                record = self._load_record(borrower_id)
                previous = record.score if record else None
                if record is None:
                    record = self._new_record(borrower_id, now)
                score = clamp_score(base_score + record.adjustment_total)
                record.score = score
                record.grade = CreditGrade.from_score(score)
                record.factors = {
                    "scores": {name: str(value) for name, value in factors.items()},
                    "weights": {name: str(value) for name, value in self.weights.items()},
                    "behavioral_score": base_score,
                }
                record.last_calculated_at = now
                record.updated_at = now
                self.storage.save(self.SCORES_TABLE, borrower_id, record.to_dict())

                def committed():
                    self._last_known[borrower_id] = score
                    if previous != score:
                        logger.debug(f"Credit score for {borrower_id}: {previous} -> {score}")
                        publish_safely(self.notifier, LedgerEvent(
                            kind=LedgerEventKind.CREDIT_SCORE_UPDATED,
                            entity_id=borrower_id,
                            borrower_id=borrower_id,
                            data={"previous_score": previous, "score": score},
                            timestamp=now
                        ))

                self.storage.on_commit(committed)
        return score

    def exclusive(self, borrower_id: str):
        """Hold the borrower's score lock; loan and restriction locks are taken before it"""
        return self._locks.hold(borrower_id)

    # Queries

    def get_record(self, borrower_id: str) -> Optional[CreditScoreRecord]:
        return self._load_record(borrower_id)

    def get_score(self, borrower_id: str) -> int:
        """
        Current score; the default score if the borrower was never scored

        On a storage failure the last score this engine saw persisted is
        returned. Without one the error propagates; a score is never invented.
        """
        try:
            record = self._load_record(borrower_id)
        except TransientInfrastructureError:
            last = self._last_known.get(borrower_id)
            if last is None:
                raise
            logger.warning(f"Score store unavailable, serving last persisted score for {borrower_id}")
            return last

        if record is None:
            return DEFAULT_SCORE
        self._last_known[borrower_id] = record.score
        return record.score

    def get_grade(self, borrower_id: str) -> CreditGrade:
        return CreditGrade.from_score(self.get_score(borrower_id))

    def get_adjustments(self, borrower_id: str) -> List[CreditAdjustment]:
        """Penalty and bonus history, oldest first"""
        data = self.storage.find(self.ADJUSTMENTS_TABLE, {'borrower_id': borrower_id})
        adjustments = [CreditAdjustment.from_dict(d) for d in data]
        adjustments.sort(key=lambda a: a.created_at)
        return adjustments

    def check_qualification(self, borrower_id: str, loan_type: LoanType) -> QualificationResult:
        """Score and standing check for a loan product"""
        minimum = self.min_scores[loan_type]
        score = self.get_score(borrower_id)
        grade = CreditGrade.from_score(score)

        if self._standing is not None and self._standing.is_blacklisted(borrower_id):
            return QualificationResult(False, score, grade, minimum, "Borrower is blacklisted")
        if score < minimum:
            return QualificationResult(
                False, score, grade, minimum,
                f"Credit score {score} below minimum {minimum} for {loan_type.value} loans"
            )
        return QualificationResult(True, score, grade, minimum)

    def qualifies_for_loan(self, borrower_id: str, loan_type: LoanType) -> bool:
        return self.check_qualification(borrower_id, loan_type).qualified

    # Adjustments

    def apply_penalty(self, borrower_id: str, amount: int, reason: str,
                      loan_id: Optional[str] = None) -> int:
        """Subtract ``amount`` points (clamped) and log the adjustment"""
        return self._adjust(borrower_id, -self._positive(amount), AdjustmentKind.PENALTY, reason, loan_id)

    def apply_bonus(self, borrower_id: str, amount: int, reason: str,
                    loan_id: Optional[str] = None) -> int:
        """Add ``amount`` points (clamped) and log the adjustment"""
        return self._adjust(borrower_id, self._positive(amount), AdjustmentKind.BONUS, reason, loan_id)

    def apply_penalty_tier(self, borrower_id: str, penalty_type: PenaltyType, reason: str,
                           loan_id: Optional[str] = None) -> int:
        return self.apply_penalty(borrower_id, self.penalty_tiers[penalty_type], reason, loan_id)

    def late_payment_penalty(self, missed_payments: int) -> int:
        """Penalty for a missed installment, growing with the miss count up to the default tier"""
        per_miss = self.penalty_tiers[PenaltyType.LATE_PAYMENT]
        return min(per_miss * max(1, missed_payments), self.penalty_tiers[PenaltyType.DEFAULT])

    @staticmethod
    def _positive(amount: int) -> int:
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise ValidationError(f"Adjustment amount must be a positive integer, got {amount!r}")
        return amount

    def _adjust(self, borrower_id: str, delta: int, kind: AdjustmentKind, reason: str,
                loan_id: Optional[str]) -> int:
        if not borrower_id:
            raise ValidationError("Borrower ID is required")

        with self._locks.hold(borrower_id):
            now = self.clock.now()
            with self.storage.atomic():
                record = self._load_record(borrower_id) or self._new_record(borrower_id, now)
                before = record.score
                after = clamp_score(before + delta)

                record.score = after
                record.grade = CreditGrade.from_score(after)
                record.adjustment_total += delta
                record.updated_at = now
                self.storage.save(self.SCORES_TABLE, borrower_id, record.to_dict())

                adjustment = CreditAdjustment(
                    id=str(uuid.uuid4()),
                    created_at=now,
                    updated_at=now,
                    borrower_id=borrower_id,
                    kind=kind,
                    delta=delta,
                    score_before=before,
                    score_after=after,
                    reason=reason,
                    loan_id=loan_id
                )
                self.storage.save(self.ADJUSTMENTS_TABLE, adjustment.id, adjustment.to_dict())

                def committed():
                    self._last_known[borrower_id] = after
                    logger.info(f"Credit {kind.value} for {borrower_id}: {before} -> {after} ({reason})")
                    if self.audit_trail:
                        self.audit_trail.log_event(
                            event_type=AuditEventType.CREDIT_ADJUSTED,
                            entity_type="borrower",
                            entity_id=borrower_id,
                            metadata={
                                'kind': kind.value,
                                'delta': delta,
                                'score_before': before,
                                'score_after': after,
                                'reason': reason,
                                'loan_id': loan_id
                            }
                        )
                    publish_safely(self.notifier, LedgerEvent(
                        kind=(LedgerEventKind.CREDIT_PENALTY_APPLIED if kind == AdjustmentKind.PENALTY
                              else LedgerEventKind.CREDIT_BONUS_APPLIED),
                        entity_id=borrower_id,
                        borrower_id=borrower_id,
                        data={"delta": delta, "score_before": before, "score_after": after,
                              "reason": reason, "loan_id": loan_id},
                        timestamp=now
                    ))

                self.storage.on_commit(committed)
        return after

    # Refresh queue

    def queue_update(self, borrower_id: str) -> None:
        """Schedule a borrower for the next pending-update run"""
        with self._pending_lock:
            self._pending.add(borrower_id)

    def pending_updates(self) -> Set[str]:
        with self._pending_lock:
            return set(self._pending)

    def process_pending_updates(self, should_stop: Optional[Callable[[], bool]] = None) -> RefreshResult:
        """
        Recalculate every queued borrower

        Transient failures stay queued, and so does every borrower a skipped
        or cancelled run never reached.
        """
        with self._pending_lock:
            borrower_ids = sorted(self._pending)
            self._pending.clear()

        result = self.refresh_all(borrower_ids, should_stop=should_stop)
        requeue = borrower_ids if result.skipped else result.unprocessed
        if requeue:
            with self._pending_lock:
                self._pending.update(requeue)
        return result

    def known_borrowers(self) -> List[str]:
        return sorted(d['borrower_id'] for d in self.storage.load_all(self.SCORES_TABLE))

    def refresh_all(self, borrower_ids: Optional[List[str]] = None,
                    should_stop: Optional[Callable[[], bool]] = None) -> RefreshResult:
        """
        Recalculate scores in batches

        A run already in progress makes this call return ``skipped``. One
        borrower's failure is logged and counted without stopping the batch;
        a stop request is honoured between borrowers.
        """
        if not self._refresh_running.acquire(blocking=False):
            logger.info("Credit refresh already running, skipping")
            return RefreshResult(skipped=True)

        result = RefreshResult()
        try:
            if borrower_ids is None:
                borrower_ids = self.known_borrowers()

            for start in range(0, len(borrower_ids), self.refresh_batch_size):
                batch = borrower_ids[start:start + self.refresh_batch_size]
                for offset, borrower_id in enumerate(batch):
                    if should_stop and should_stop():
                        result.cancelled = True
                        result.unprocessed = list(borrower_ids[start + offset:])
                        logger.info(f"Credit refresh cancelled after {result.processed} borrowers")
                        return result
                    try:
                        self.calculate_score(borrower_id)
                        result.processed += 1
                    except TransientInfrastructureError as e:
                        result.failed += 1
                        result.errors[borrower_id] = str(e)
                        self.queue_update(borrower_id)
                        logger.warning(f"Credit refresh deferred for {borrower_id}: {e}")
                    except Exception as e:
                        result.failed += 1
                        result.errors[borrower_id] = str(e)
                        logger.error(f"Credit refresh failed for {borrower_id}: {e}", exc_info=True)

            logger.info(f"Credit refresh complete: {result.processed} updated, {result.failed} failed")
            return result
        finally:
            self._refresh_running.release()

    # Persistence helpers

    def _new_record(self, borrower_id: str, now: datetime) -> CreditScoreRecord:
        return CreditScoreRecord(
            id=borrower_id,
            created_at=now,
            updated_at=now,
            borrower_id=borrower_id,
            score=DEFAULT_SCORE,
            grade=CreditGrade.from_score(DEFAULT_SCORE)
        )

    def _load_record(self, borrower_id: str) -> Optional[CreditScoreRecord]:
        data = self.storage.load(self.SCORES_TABLE, borrower_id)
        if data is None:
            return None
        return CreditScoreRecord.from_dict(data)
