"""
Loan Ledger Module

Owns loans, their lifecycle state machine, amortization schedules and
payment application.

    PENDING -> APPROVED -> ACTIVE <-> OVERDUE -> PAID_OFF | DEFAULTED
    PENDING -> REJECTED

Balances are exact Decimals. ``current_balance`` is what the borrower owes
excluding penalties: outstanding principal plus interest billed on missed
installments. Every mutation of a loan holds that loan's lock and commits
through ``storage.atomic()``, so a transition is applied completely or not
at all.

Payment waterfall, oldest obligation first:
    1. penalty balance
    2. arrears (billed interest, then principal)
    3. current installment (interest, then principal)

Partial payments are accepted. They reduce the shortfall of the
earliest unsettled installment; an installment is only marked settled once
paid in full.
"""

import calendar
import logging
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional

from .audit import AuditEventType, AuditTrail
from .clock import Clock, SystemClock
from .credit_scoring import (
    BorrowerStanding, CreditGrade, CreditScoringEngine, LoanType, RepaymentHistory,
    interest_rate_for
)
from .events import LedgerEvent, LedgerEventKind, NotificationPort, publish_safely
from .exceptions import (
    FatalDataError, NotFoundError, PaymentRailError, StateConflictError, ValidationError
)
from .interest import amortized_payment, monthly_rate
from .locks import KeyedLocks
from .logging_config import log_action
from .money import ZERO, quantize_money, to_decimal, to_money
from .payment_rail import PaymentRail, TimeoutGuardedRail, TransferResult
from .storage import StorageInterface, StorageRecord

logger = logging.getLogger("ledger.loans")


class LoanStatus(Enum):
    """Loan lifecycle states"""
    PENDING = "pending"
    APPROVED = "approved"
    ACTIVE = "active"
    OVERDUE = "overdue"
    PAID_OFF = "paid_off"
    DEFAULTED = "defaulted"
    REJECTED = "rejected"


TERMINAL_STATUSES = {LoanStatus.PAID_OFF, LoanStatus.DEFAULTED, LoanStatus.REJECTED}
OPEN_STATUSES = {LoanStatus.PENDING, LoanStatus.APPROVED, LoanStatus.ACTIVE, LoanStatus.OVERDUE}
REPAYING_STATUSES = {LoanStatus.ACTIVE, LoanStatus.OVERDUE}

_TRANSITIONS = {
    LoanStatus.PENDING: {LoanStatus.APPROVED, LoanStatus.REJECTED},
    LoanStatus.APPROVED: {LoanStatus.ACTIVE},
    LoanStatus.ACTIVE: {LoanStatus.OVERDUE, LoanStatus.PAID_OFF},
    LoanStatus.OVERDUE: {LoanStatus.ACTIVE, LoanStatus.PAID_OFF, LoanStatus.DEFAULTED},
    LoanStatus.PAID_OFF: set(),
    LoanStatus.DEFAULTED: set(),
    LoanStatus.REJECTED: set(),
}


class RepaymentMethod(Enum):
    """How the schedule splits repayments"""
    EQUAL_INSTALLMENT = "equal_installment"
    EQUAL_PRINCIPAL = "equal_principal"


class PaymentMethod(Enum):
    """Source of a payment"""
    AUTOMATIC = "automatic"
    MANUAL = "manual"
    COLLATERAL = "collateral"
    REFINANCE = "refinance"


# Funds for these methods never pass through the payment rail
_INTERNAL_METHODS = {PaymentMethod.COLLATERAL, PaymentMethod.REFINANCE}


@dataclass
class Collateral:
    """Asset pledged against a loan"""
    collateral_type: str
    assessed_value: Decimal
    discount_rate: Decimal = Decimal("0.20")

    def __post_init__(self):
        self.assessed_value = to_money(self.assessed_value)
        self.discount_rate = to_decimal(self.discount_rate)
        if not self.collateral_type:
            raise ValidationError("Collateral type is required")
        if self.assessed_value <= 0:
            raise ValidationError("Collateral value must be positive")
        if not (Decimal("0") <= self.discount_rate < Decimal("1")):
            raise ValidationError("Collateral discount rate must be in [0, 1)")

    @property
    def recovery_value(self) -> Decimal:
        """Proceeds expected from liquidating the collateral"""
        return quantize_money(self.assessed_value * (1 - self.discount_rate))


@dataclass
class Loan(StorageRecord):
    """A loan and its ledger state"""
    borrower_id: str
    loan_type: LoanType
    principal: Decimal
    original_interest_rate: Decimal
    interest_rate: Decimal
    term_months: int
    status: LoanStatus
    purpose: str = ""
    lender_id: Optional[str] = None
    repayment_method: RepaymentMethod = RepaymentMethod.EQUAL_INSTALLMENT

    current_balance: Decimal = ZERO
    monthly_payment: Decimal = ZERO
    payments_made: int = 0
    total_payments: int = 0
    total_interest_paid: Decimal = ZERO
    total_principal_paid: Decimal = ZERO
    total_penalty_paid: Decimal = ZERO
    accrued_interest: Decimal = ZERO  # billed on missed installments, part of current_balance
    penalty_balance: Decimal = ZERO
    arrears_amount: Decimal = ZERO  # missed scheduled amounts still unpaid
    overdue_amount: Decimal = ZERO  # arrears + penalty
    overdue_payments: int = 0  # never decremented
    current_installment: int = 0
    current_interest_paid: Decimal = ZERO
    last_overdue_at: Optional[datetime] = None
    defaulted: bool = False
    defaulted_at: Optional[datetime] = None

    application_date: Optional[datetime] = None
    approval_date: Optional[datetime] = None
    disbursement_date: Optional[datetime] = None
    start_date: Optional[date] = None
    maturity_date: Optional[date] = None
    next_payment_date: Optional[date] = None
    closed_at: Optional[datetime] = None

    approved_by: Optional[str] = None
    notes: Optional[str] = None
    rejection_reason: Optional[str] = None
    borrower_credit_score: Optional[int] = None
    borrower_grade: Optional[CreditGrade] = None

    refinanced: bool = False
    refinanced_into: Optional[str] = None
    original_loan_id: Optional[str] = None

    collateral_type: Optional[str] = None
    collateral_value: Optional[Decimal] = None
    collateral_discount_rate: Optional[Decimal] = None
    collateral_liquidation_pending: bool = False
    collateral_liquidated: bool = False
    collateral_recovered: Decimal = ZERO

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def principal_outstanding(self) -> Decimal:
        return self.current_balance - self.accrued_interest

    @property
    def collateral(self) -> Optional[Collateral]:
        if self.collateral_type is None or self.collateral_value is None:
            return None
        return Collateral(self.collateral_type, self.collateral_value,
                          self.collateral_discount_rate or ZERO)


@dataclass
class RepaymentScheduleEntry(StorageRecord):
    """One expected installment; annotated as payments post, never removed"""
    loan_id: str
    sequence: int
    due_date: date
    scheduled_payment: Decimal
    principal_portion: Decimal
    interest_portion: Decimal
    remaining_balance: Decimal
    amount_paid: Decimal = ZERO
    settled: bool = False
    settled_at: Optional[datetime] = None

    @property
    def outstanding(self) -> Decimal:
        return max(ZERO, self.scheduled_payment - self.amount_paid)


@dataclass
class LoanPayment(StorageRecord):
    """An applied payment"""
    loan_id: str
    borrower_id: str
    amount: Decimal
    penalty_portion: Decimal
    interest_portion: Decimal
    principal_portion: Decimal
    method: PaymentMethod
    on_time: bool
    balance_after: Decimal
    status_after: LoanStatus
    idempotency_key: Optional[str] = None
    transfer_reference: Optional[str] = None


@dataclass
class PaymentResult:
    """Outcome of ``make_payment``"""
    success: bool
    total_payment: Decimal
    interest_portion: Decimal
    principal_portion: Decimal
    penalty_portion: Decimal
    updated_loan: Loan
    payment_id: Optional[str] = None
    paid_off: bool = False
    arrears_cleared: bool = False
    replayed: bool = False


@dataclass
class MissedInstallment:
    """An installment whose due date passed without full payment"""
    loan_id: str
    sequence: int
    due_date: date
    shortfall: Decimal
    capitalized_interest: Decimal
    overdue_payments: int
    first_miss: bool


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, clamping to the last day of short months"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


class LoanLedger:
    """
    Loan lifecycle and payment ledger
    """

    LOANS_TABLE = "loans"
    SCHEDULE_TABLE = "repayment_schedules"
    PAYMENTS_TABLE = "loan_payments"

    def __init__(
        self,
        storage: StorageInterface,
        credit_engine: CreditScoringEngine,
        payment_rail: PaymentRail,
        clock: Optional[Clock] = None,
        notifier: Optional[NotificationPort] = None,
        audit_trail: Optional[AuditTrail] = None,
        max_active_loans: int = 5,
        treasury_account_id: str = "treasury",
        rail_timeout: Optional[float] = None,
        payoff_bonus: int = 20
    ):
        self.storage = storage
        self.credit_engine = credit_engine
        if rail_timeout is not None and not isinstance(payment_rail, TimeoutGuardedRail):
            payment_rail = TimeoutGuardedRail(payment_rail, rail_timeout)
        self.payment_rail = payment_rail
        self.clock = clock or SystemClock()
        self.notifier = notifier
        self.audit_trail = audit_trail
        self.max_active_loans = max_active_loans
        self.treasury_account_id = treasury_account_id
        self.payoff_bonus = payoff_bonus

        self._loan_locks = KeyedLocks("loan")
        self._borrower_locks = KeyedLocks("borrower")
        self._standing: Optional[BorrowerStanding] = None

        credit_engine.register_repayment_source(self.repayment_history)

    def register_standing(self, standing: BorrowerStanding) -> None:
        """Install the provider of suspension status"""
        self._standing = standing

    @contextmanager
    def exclusive(self, loan_id: str):
        """Hold the single-writer lock of a loan"""
        with self._loan_locks.hold(loan_id):
            yield

    # Application and approval

    def submit_application(
        self,
        borrower_id: str,
        loan_type: LoanType,
        amount,
        term_months: int,
        purpose: str = "",
        collateral: Optional[Collateral] = None,
        lender_id: Optional[str] = None,
        repayment_method: RepaymentMethod = RepaymentMethod.EQUAL_INSTALLMENT
    ) -> str:
        """
        Submit a loan application

        Args:
            borrower_id: Applicant
            loan_type: Product applied for
            amount: Requested principal
            term_months: Repayment term
            purpose: Free-text purpose
            collateral: Pledged asset, required for mortgages
            lender_id: Funding party; the treasury when omitted

        Returns:
            ID of the new PENDING loan

        Raises:
            ValidationError: On bad terms, an unqualified or restricted
                borrower, or when the active-loan limit is reached
        """
        if not borrower_id:
            raise ValidationError("Borrower ID is required")
        amount = to_money(amount)
        if amount <= 0:
            raise ValidationError("Loan amount must be positive")
        if not isinstance(term_months, int) or term_months < 1:
            raise ValidationError("Loan term must be at least 1 month")
        if term_months > loan_type.max_term_months:
            raise ValidationError(
                f"Term {term_months} exceeds maximum {loan_type.max_term_months} months "
                f"for {loan_type.value} loans"
            )
        if loan_type.requires_collateral and collateral is None:
            raise ValidationError(f"{loan_type.value} loans require collateral")

        with self._borrower_locks.hold(borrower_id):
            if self._standing is not None and self._standing.is_suspended(borrower_id):
                raise ValidationError(f"Borrower {borrower_id} has suspended loan privileges")

            qualification = self.credit_engine.check_qualification(borrower_id, loan_type)
            if not qualification.qualified:
                raise ValidationError(f"Borrower {borrower_id} does not qualify: {qualification.reason}")

            if amount > qualification.grade.max_credit_limit:
                raise ValidationError(
                    f"Amount {amount} exceeds limit {qualification.grade.max_credit_limit} "
                    f"for grade {qualification.grade.value}"
                )

            open_loans = [l for l in self.get_borrower_loans(borrower_id) if l.status in OPEN_STATUSES]
            if len(open_loans) >= self.max_active_loans:
                raise ValidationError(
                    f"Borrower {borrower_id} already has {len(open_loans)} open loans "
                    f"(limit {self.max_active_loans})"
                )

            now = self.clock.now()
            rate = interest_rate_for(qualification.grade, loan_type)
            loan = Loan(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                borrower_id=borrower_id,
                loan_type=loan_type,
                principal=amount,
                original_interest_rate=rate,
                interest_rate=rate,
                term_months=term_months,
                status=LoanStatus.PENDING,
                purpose=purpose,
                lender_id=lender_id,
                repayment_method=repayment_method,
                application_date=now,
                borrower_credit_score=qualification.score,
                borrower_grade=qualification.grade
            )
            if collateral is not None:
                loan.collateral_type = collateral.collateral_type
                loan.collateral_value = collateral.assessed_value
                loan.collateral_discount_rate = collateral.discount_rate

            with self.storage.atomic():
                self._save_loan(loan)

        self._record(AuditEventType.LOAN_SUBMITTED, LedgerEventKind.LOAN_SUBMITTED, loan, {
            'loan_type': loan_type.value,
            'amount': amount,
            'term_months': term_months,
            'credit_score': qualification.score,
            'grade': qualification.grade.value
        })
        return loan.id

    def approve(self, loan_id: str, approver: str, notes: Optional[str] = None,
                interest_rate=None) -> Loan:
        """PENDING -> APPROVED, optionally granting a rate other than the grade rate"""
        if interest_rate is not None:
            interest_rate = to_decimal(interest_rate)
            if interest_rate < 0 or interest_rate > 1:
                raise ValidationError("Interest rate must be between 0 and 1")
        with self.exclusive(loan_id):
            loan = self._require(loan_id)
            if loan.status != LoanStatus.PENDING:
                raise StateConflictError(f"Cannot approve loan in {loan.status.value} state")

            now = self.clock.now()
            self._transition(loan, LoanStatus.APPROVED)
            loan.approved_by = approver
            loan.approval_date = now
            loan.notes = notes
            if interest_rate is not None:
                loan.original_interest_rate = interest_rate
                loan.interest_rate = interest_rate
            loan.updated_at = now
            with self.storage.atomic():
                self._save_loan(loan)

        self._record(AuditEventType.LOAN_APPROVED, LedgerEventKind.LOAN_APPROVED, loan,
                     {'approved_by': approver, 'notes': notes, 'interest_rate': loan.interest_rate},
                     actor=approver)
        return loan

    def reject(self, loan_id: str, reason: str, rejected_by: Optional[str] = None) -> Loan:
        """PENDING -> REJECTED"""
        with self.exclusive(loan_id):
            loan = self._require(loan_id)
            if loan.status != LoanStatus.PENDING:
                raise StateConflictError(f"Cannot reject loan in {loan.status.value} state")

            now = self.clock.now()
            self._transition(loan, LoanStatus.REJECTED)
            loan.rejection_reason = reason
            loan.closed_at = now
            loan.updated_at = now
            with self.storage.atomic():
                self._save_loan(loan)

        self._record(AuditEventType.LOAN_REJECTED, LedgerEventKind.LOAN_REJECTED, loan,
                     {'reason': reason, 'rejected_by': rejected_by}, actor=rejected_by)
        return loan

    def disburse(self, loan_id: str) -> Loan:
        """
        APPROVED -> ACTIVE

        Generates the repayment schedule and transfers the principal to the
        borrower. If the transfer fails or times out the loan stays APPROVED
        and the error propagates; retrying reuses the same transfer reference.
        """
        with self.exclusive(loan_id):
            loan = self._require(loan_id)
            if loan.status != LoanStatus.APPROVED:
                raise StateConflictError(f"Cannot disburse loan in {loan.status.value} state")

            payer = loan.lender_id or self.treasury_account_id
            self._transfer(payer, loan.borrower_id, loan.principal, f"disburse:{loan.id}")

            now = self.clock.now()
            schedule = self.generate_repayment_schedule(loan, start_date=now.date())

            self._transition(loan, LoanStatus.ACTIVE)
            self._activate(loan, schedule, now)

            with self.storage.atomic():
                self._check_invariants(loan)
                for entry in schedule:
                    self._save_entry(entry)
                self._save_loan(loan)

        self._record(AuditEventType.LOAN_DISBURSED, LedgerEventKind.LOAN_DISBURSED, loan, {
            'amount': loan.principal,
            'monthly_payment': loan.monthly_payment,
            'first_payment_date': loan.next_payment_date,
            'maturity_date': loan.maturity_date
        })
        return loan

    def _activate(self, loan: Loan, schedule: List[RepaymentScheduleEntry], now: datetime) -> None:
        loan.disbursement_date = now
        loan.start_date = now.date()
        loan.current_balance = loan.principal
        loan.monthly_payment = schedule[0].scheduled_payment
        loan.total_payments = len(schedule)
        loan.current_installment = 1
        loan.next_payment_date = schedule[0].due_date
        loan.maturity_date = schedule[-1].due_date
        loan.updated_at = now

    # Schedule

    def generate_repayment_schedule(self, loan: Loan,
                                    start_date: Optional[date] = None) -> List[RepaymentScheduleEntry]:
        """
        Deterministic schedule for the loan's principal, rate and term

        Interest is ``remaining * monthly_rate``; the final entry absorbs any
        rounding remainder so the principal portions sum exactly to the
        principal. The first installment is due one month after start.
        """
        start_date = start_date or loan.start_date or self.clock.today()
        rate = monthly_rate(loan.interest_rate)
        principal = loan.principal
        n = loan.term_months

        if loan.repayment_method == RepaymentMethod.EQUAL_PRINCIPAL:
            level_principal = quantize_money(principal / n)
            level_payment = None
        else:
            level_principal = None
            level_payment = amortized_payment(principal, loan.interest_rate, n)

        entries = []
        remaining = principal
        for sequence in range(1, n + 1):
            interest = quantize_money(remaining * rate)
            if sequence == n:
                principal_part = remaining
            elif level_payment is not None:
                principal_part = min(remaining, max(ZERO, level_payment - interest))
            else:
                principal_part = min(remaining, level_principal)
            payment = principal_part + interest
            remaining = remaining - principal_part

            entries.append(RepaymentScheduleEntry(
                id=f"{loan.id}:{sequence:04d}",
                created_at=loan.updated_at,
                updated_at=loan.updated_at,
                loan_id=loan.id,
                sequence=sequence,
                due_date=add_months(start_date, sequence),
                scheduled_payment=payment,
                principal_portion=principal_part,
                interest_portion=interest,
                remaining_balance=remaining
            ))
        return entries

    def get_schedule(self, loan_id: str) -> List[RepaymentScheduleEntry]:
        entries = [RepaymentScheduleEntry.from_dict(d)
                   for d in self.storage.find(self.SCHEDULE_TABLE, {'loan_id': loan_id})]
        entries.sort(key=lambda e: e.sequence)
        return entries

    # Payments

    def current_interest_due(self, loan: Loan) -> Decimal:
        """Interest of the current installment not yet paid"""
        if loan.status not in REPAYING_STATUSES or loan.next_payment_date is None:
            return ZERO
        interest = quantize_money(loan.principal_outstanding * monthly_rate(loan.interest_rate))
        return max(ZERO, interest - loan.current_interest_paid)

    def payoff_amount(self, loan_id: str) -> Decimal:
        """Amount that fully settles the loan now"""
        loan = self._require(loan_id)
        if loan.status not in REPAYING_STATUSES:
            return ZERO
        return loan.penalty_balance + loan.current_balance + self.current_interest_due(loan)

    def make_payment(self, loan_id: str, amount, method: PaymentMethod = PaymentMethod.MANUAL,
                     idempotency_key: Optional[str] = None) -> PaymentResult:
        """
        Apply a payment to an ACTIVE or OVERDUE loan

        Amounts at or above the payoff settle the loan (capped at the payoff).
        A payment already applied under ``idempotency_key`` is returned as-is
        without charging or reducing anything again.

        Raises:
            ValidationError: Non-positive amount
            StateConflictError: Loan is not repaying
            TransientInfrastructureError: Rail or storage unavailable; safe to retry
        """
        amount = to_money(amount)
        if amount <= 0:
            raise ValidationError("Payment amount must be positive")

        with self.exclusive(loan_id):
            if idempotency_key:
                replay = self._replay(loan_id, idempotency_key)
                if replay is not None:
                    return replay

            loan = self._require(loan_id)
            if loan.status not in REPAYING_STATUSES:
                raise StateConflictError(f"Cannot accept payment for loan in {loan.status.value} state")

            payment_id = f"{loan_id}:{idempotency_key}" if idempotency_key else str(uuid.uuid4())
            reference = f"payment:{payment_id}"
            was_overdue = loan.status == LoanStatus.OVERDUE
            applied = min(amount, self._payoff(loan))

            # Invariants are checked on the unsaved copies before the rail moves money
            schedule = self.get_schedule(loan_id)
            changed_entries, payment = self._waterfall(loan, schedule, applied, method, payment_id,
                                                       idempotency_key, reference, on_time=not was_overdue)

            if method not in _INTERNAL_METHODS:
                self._transfer(loan.borrower_id, loan.lender_id or self.treasury_account_id,
                               applied, reference)

            self._commit_payment(loan, changed_entries, payment)

        result = self._payment_result(payment, loan, was_overdue)
        self._after_payment(loan, payment, result)
        return result

    def _payoff(self, loan: Loan) -> Decimal:
        return loan.penalty_balance + loan.current_balance + self.current_interest_due(loan)

    def _apply(self, loan: Loan, schedule: List[RepaymentScheduleEntry], amount: Decimal,
               method: PaymentMethod, payment_id: str, idempotency_key: Optional[str],
               reference: Optional[str], on_time: bool) -> LoanPayment:
        """Run the waterfall and commit loan, schedule and payment together"""
        changed_entries, payment = self._waterfall(loan, schedule, amount, method, payment_id,
                                                   idempotency_key, reference, on_time)
        self._commit_payment(loan, changed_entries, payment)
        return payment

    def _waterfall(self, loan: Loan, schedule: List[RepaymentScheduleEntry], amount: Decimal,
                   method: PaymentMethod, payment_id: str, idempotency_key: Optional[str],
                   reference: Optional[str], on_time: bool):
        """
        Allocate ``amount`` to penalty, arrears, interest then principal

        Mutates ``loan`` and ``schedule`` in place without saving them and
        raises FatalDataError if the result breaks a ledger invariant.

        Returns:
            (changed schedule entries, payment record)
        """
        now = self.clock.now()
        current_interest_due = self.current_interest_due(loan)
        paying_off = amount >= loan.penalty_balance + loan.current_balance + current_interest_due
        remaining = amount

        penalty = min(remaining, loan.penalty_balance)
        remaining -= penalty

        to_arrears = min(remaining, loan.arrears_amount)
        arrears_interest = min(to_arrears, loan.accrued_interest)
        arrears_principal = to_arrears - arrears_interest
        remaining -= to_arrears

        current_interest = min(remaining, current_interest_due)
        remaining -= current_interest
        current_principal = remaining

        max_principal = loan.principal_outstanding - arrears_principal
        if current_principal > max_principal:
            # Billed interest beyond the arrears is settled before principal goes negative
            arrears_interest += current_principal - max_principal
            current_principal = max_principal

        if paying_off:
            # Billed interest not covered by arrears is still owed on payoff
            arrears_interest = loan.accrued_interest
            arrears_principal = loan.principal_outstanding
            current_principal = ZERO

        interest_portion = arrears_interest + current_interest
        principal_portion = arrears_principal + current_principal

        loan.penalty_balance -= penalty
        loan.total_penalty_paid += penalty
        loan.accrued_interest -= arrears_interest
        loan.arrears_amount = max(ZERO, loan.arrears_amount - to_arrears)
        loan.current_interest_paid += current_interest
        loan.current_balance -= arrears_interest + principal_portion
        loan.total_interest_paid += interest_portion
        loan.total_principal_paid += principal_portion

        changed_entries = self._allocate_to_schedule(schedule, amount - penalty, now, settle_all=paying_off)
        loan.payments_made = sum(1 for e in schedule if e.settled)

        if paying_off or loan.current_balance == 0:
            loan.arrears_amount = ZERO
            loan.overdue_amount = ZERO
            loan.next_payment_date = None
            loan.closed_at = now
            self._transition(loan, LoanStatus.PAID_OFF)
        else:
            loan.overdue_amount = loan.arrears_amount + loan.penalty_balance
            self._advance_pointer(loan, schedule)
            if loan.status == LoanStatus.OVERDUE and loan.overdue_amount == 0:
                self._transition(loan, LoanStatus.ACTIVE)
        loan.updated_at = now

        payment = LoanPayment(
            id=payment_id,
            created_at=now,
            updated_at=now,
            loan_id=loan.id,
            borrower_id=loan.borrower_id,
            amount=amount,
            penalty_portion=penalty,
            interest_portion=interest_portion,
            principal_portion=principal_portion,
            method=method,
            on_time=on_time,
            balance_after=loan.current_balance,
            status_after=loan.status,
            idempotency_key=idempotency_key,
            transfer_reference=reference
        )
        self._check_invariants(loan)
        return changed_entries, payment

    def _commit_payment(self, loan: Loan, changed_entries: List[RepaymentScheduleEntry],
                        payment: LoanPayment) -> None:
        with self.storage.atomic():
            for entry in changed_entries:
                self._save_entry(entry)
            self._save_loan(loan)
            self.storage.save(self.PAYMENTS_TABLE, payment.id, payment.to_dict())

    @staticmethod
    def _allocate_to_schedule(schedule: List[RepaymentScheduleEntry], amount: Decimal,
                              now: datetime, settle_all: bool = False) -> List[RepaymentScheduleEntry]:
        """Spread a payment over unsettled installments, earliest first"""
        changed = []
        remaining = amount
        for entry in schedule:
            if entry.settled:
                continue
            if settle_all:
                entry.amount_paid += min(remaining, entry.outstanding)
                remaining -= min(remaining, entry.outstanding)
                entry.settled = True
            elif remaining > 0:
                portion = min(remaining, entry.outstanding)
                entry.amount_paid += portion
                remaining -= portion
                entry.settled = entry.outstanding == 0
            else:
                break
            if entry.settled:
                entry.settled_at = now
            entry.updated_at = now
            changed.append(entry)
        return changed

    @staticmethod
    def _advance_pointer(loan: Loan, schedule: List[RepaymentScheduleEntry]) -> None:
        """Move the current installment past installments settled in advance"""
        current = next((e for e in schedule if e.sequence == loan.current_installment), None)
        if current is None or not current.settled:
            return
        upcoming = next((e for e in schedule if e.sequence > loan.current_installment and not e.settled), None)
        loan.current_interest_paid = ZERO
        if upcoming is None:
            loan.current_installment = len(schedule) + 1
            loan.next_payment_date = None
        else:
            loan.current_installment = upcoming.sequence
            loan.next_payment_date = upcoming.due_date

    def _replay(self, loan_id: str, idempotency_key: str) -> Optional[PaymentResult]:
        data = self.storage.load(self.PAYMENTS_TABLE, f"{loan_id}:{idempotency_key}")
        if data is None:
            return None
        payment = LoanPayment.from_dict(data)
        loan = self._require(loan_id)
        logger.info(f"Replaying payment {payment.id} for loan {loan_id}")
        result = self._payment_result(payment, loan, was_overdue=False)
        result.replayed = True
        return result

    @staticmethod
    def _payment_result(payment: LoanPayment, loan: Loan, was_overdue: bool) -> PaymentResult:
        return PaymentResult(
            success=True,
            total_payment=payment.amount,
            interest_portion=payment.interest_portion,
            principal_portion=payment.principal_portion,
            penalty_portion=payment.penalty_portion,
            updated_loan=loan,
            payment_id=payment.id,
            paid_off=payment.status_after == LoanStatus.PAID_OFF,
            arrears_cleared=was_overdue and payment.status_after != LoanStatus.OVERDUE
        )

    def _after_payment(self, loan: Loan, payment: LoanPayment, result: PaymentResult) -> None:
        self._record(AuditEventType.LOAN_PAYMENT_MADE, LedgerEventKind.LOAN_PAYMENT, loan, {
            'payment_id': payment.id,
            'amount': payment.amount,
            'penalty_portion': payment.penalty_portion,
            'interest_portion': payment.interest_portion,
            'principal_portion': payment.principal_portion,
            'method': payment.method.value,
            'balance_after': payment.balance_after
        })
        if result.arrears_cleared and not result.paid_off:
            self._publish(self._event(LedgerEventKind.LOAN_ARREARS_CLEARED, loan, {}))
        if result.paid_off:
            self._record(AuditEventType.LOAN_PAID_OFF, LedgerEventKind.LOAN_PAID_OFF, loan, {
                'total_interest_paid': loan.total_interest_paid,
                'total_penalty_paid': loan.total_penalty_paid,
                'refinanced': loan.refinanced
            })
            if self.payoff_bonus > 0 and payment.method not in _INTERNAL_METHODS:
                self.credit_engine.apply_bonus(loan.borrower_id, self.payoff_bonus,
                                               "Loan paid off", loan_id=loan.id)

    # Refinance

    def refinance(self, loan_id: str, new_amount, new_rate, reason: Optional[str] = None,
                  term_months: Optional[int] = None) -> str:
        """
        Close a repaying loan by opening a new one that pays it off

        The old loan ends PAID_OFF and marked refinanced; the new loan is
        ACTIVE, linked back through ``original_loan_id``. Any amount above
        the payoff is disbursed to the borrower.

        Returns:
            ID of the new loan
        """
        new_amount = to_money(new_amount)
        new_rate = to_decimal(new_rate)
        if new_rate < 0 or new_rate > 1:
            raise ValidationError("Interest rate must be between 0 and 1")

        with self.exclusive(loan_id):
            old = self._require(loan_id)
            if old.status not in REPAYING_STATUSES:
                raise StateConflictError(f"Cannot refinance loan in {old.status.value} state")
            term = term_months or old.term_months
            if term < 1 or term > old.loan_type.max_term_months:
                raise ValidationError(f"Invalid refinance term {term}")
            if self._standing is not None and self._standing.is_blacklisted(old.borrower_id):
                raise ValidationError(f"Borrower {old.borrower_id} is blacklisted")

            payoff = self._payoff(old)
            if new_amount < payoff:
                raise ValidationError(f"Refinance amount {new_amount} is below payoff {payoff}")

            now = self.clock.now()
            new_loan = Loan(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                borrower_id=old.borrower_id,
                loan_type=old.loan_type,
                principal=new_amount,
                original_interest_rate=new_rate,
                interest_rate=new_rate,
                term_months=term,
                status=LoanStatus.ACTIVE,
                purpose=reason or old.purpose,
                lender_id=old.lender_id,
                repayment_method=old.repayment_method,
                application_date=now,
                approval_date=now,
                approved_by="refinance",
                notes=reason,
                borrower_credit_score=self.credit_engine.get_score(old.borrower_id),
                original_loan_id=old.id,
                collateral_type=old.collateral_type,
                collateral_value=old.collateral_value,
                collateral_discount_rate=old.collateral_discount_rate
            )
            new_loan.borrower_grade = CreditGrade.from_score(new_loan.borrower_credit_score)

            excess = new_amount - payoff
            if excess > 0:
                self._transfer(new_loan.lender_id or self.treasury_account_id, old.borrower_id,
                               excess, f"refinance:{old.id}")

            schedule = self.generate_repayment_schedule(new_loan, start_date=now.date())
            self._activate(new_loan, schedule, now)

            old.refinanced = True
            old.refinanced_into = new_loan.id
            with self.storage.atomic():
                payment = self._apply(old, self.get_schedule(old.id), payoff, PaymentMethod.REFINANCE,
                                      f"{old.id}:refinance", None, None, on_time=old.status == LoanStatus.ACTIVE)
                self._check_invariants(new_loan)
                for entry in schedule:
                    self._save_entry(entry)
                self._save_loan(new_loan)

        self._after_payment(old, payment, self._payment_result(payment, old, was_overdue=False))
        self._record(AuditEventType.LOAN_REFINANCED, LedgerEventKind.LOAN_REFINANCED, new_loan, {
            'original_loan_id': old.id,
            'payoff': payoff,
            'new_amount': new_amount,
            'new_rate': new_rate,
            'reason': reason
        })
        return new_loan.id

    # Overdue-facing mutations, called by the overdue processor under exclusive()

    def record_missed_installments(self, loan_id: str, as_of: date) -> List[MissedInstallment]:
        """
        Mark every installment due before ``as_of`` and not fully paid as missed

        For each: unpaid interest is billed onto the balance, the shortfall
        joins the arrears, ``overdue_payments`` increments and the due date
        advances. Installments already recorded are never counted twice.
        """
        with self.exclusive(loan_id):
            loan = self._require(loan_id)
            if loan.status not in REPAYING_STATUSES:
                return []

            schedule = self.get_schedule(loan_id)
            by_sequence = {e.sequence: e for e in schedule}
            now = self.clock.now()
            missed = []

            while loan.next_payment_date is not None and loan.next_payment_date < as_of:
                entry = by_sequence[loan.current_installment]
                if not entry.settled:
                    unpaid_interest = self.current_interest_due(loan)
                    loan.accrued_interest += unpaid_interest
                    loan.current_balance += unpaid_interest
                    loan.arrears_amount += entry.outstanding
                    loan.overdue_payments += 1
                    loan.last_overdue_at = now
                    first_miss = loan.status == LoanStatus.ACTIVE
                    if first_miss:
                        self._transition(loan, LoanStatus.OVERDUE)
                    missed.append(MissedInstallment(
                        loan_id=loan.id,
                        sequence=entry.sequence,
                        due_date=entry.due_date,
                        shortfall=entry.outstanding,
                        capitalized_interest=unpaid_interest,
                        overdue_payments=loan.overdue_payments,
                        first_miss=first_miss
                    ))

                nxt = by_sequence.get(loan.current_installment + 1)
                loan.current_installment += 1
                loan.current_interest_paid = ZERO
                loan.next_payment_date = nxt.due_date if nxt else None

            if not missed:
                return []

            loan.overdue_amount = loan.arrears_amount + loan.penalty_balance
            loan.updated_at = now
            with self.storage.atomic():
                self._check_invariants(loan)
                self._save_loan(loan)

        for item in missed:
            self._record(AuditEventType.LOAN_OVERDUE, LedgerEventKind.LOAN_OVERDUE, loan, {
                'installment': item.sequence,
                'due_date': item.due_date,
                'shortfall': item.shortfall,
                'overdue_payments': item.overdue_payments
            })
        return missed

    def accrue_penalty(self, loan_id: str, amount: Decimal) -> Loan:
        """Add penalty interest to an overdue loan"""
        amount = to_money(amount)
        if amount < 0:
            raise ValidationError("Penalty cannot be negative")
        with self.exclusive(loan_id):
            loan = self._require(loan_id)
            if loan.status != LoanStatus.OVERDUE:
                raise StateConflictError(f"Cannot accrue penalty on loan in {loan.status.value} state")
            if amount == 0:
                return loan
            loan.penalty_balance += amount
            loan.overdue_amount = loan.arrears_amount + loan.penalty_balance
            loan.updated_at = self.clock.now()
            with self.storage.atomic():
                self._check_invariants(loan)
                self._save_loan(loan)

        self._publish(self._event(LedgerEventKind.LOAN_PENALTY_ACCRUED, loan, {
            'amount': amount, 'penalty_balance': loan.penalty_balance
        }))
        return loan

    def mark_defaulted(self, loan_id: str, reason: str = "") -> Loan:
        """OVERDUE -> DEFAULTED"""
        with self.exclusive(loan_id):
            loan = self._require(loan_id)
            now = self.clock.now()
            self._transition(loan, LoanStatus.DEFAULTED)
            loan.defaulted = True
            loan.defaulted_at = now
            loan.closed_at = now
            loan.next_payment_date = None
            loan.updated_at = now
            with self.storage.atomic():
                self._check_invariants(loan)
                self._save_loan(loan)

        self._record(AuditEventType.LOAN_DEFAULTED, LedgerEventKind.LOAN_DEFAULTED, loan, {
            'balance': loan.current_balance,
            'overdue_amount': loan.overdue_amount,
            'reason': reason
        })
        return loan

    def flag_collateral_liquidation(self, loan_id: str) -> bool:
        """Mark a collateralized loan for liquidation; False without collateral"""
        with self.exclusive(loan_id):
            loan = self._require(loan_id)
            if loan.collateral is None or loan.collateral_liquidated:
                return False
            if loan.collateral_liquidation_pending:
                return True
            loan.collateral_liquidation_pending = True
            loan.updated_at = self.clock.now()
            with self.storage.atomic():
                self._save_loan(loan)

        self._publish(self._event(LedgerEventKind.COLLATERAL_LIQUIDATION_FLAGGED, loan, {
            'collateral_type': loan.collateral_type,
            'collateral_value': loan.collateral_value
        }))
        return True

    def apply_collateral_recovery(self, loan_id: str) -> Decimal:
        """
        Liquidate pledged collateral against the loan

        For a repaying loan the proceeds are applied as a COLLATERAL payment.
        A defaulted loan keeps its written-off balance and only records the
        recovered amount.

        Returns:
            Amount recovered
        """
        with self.exclusive(loan_id):
            loan = self._require(loan_id)
            collateral = loan.collateral
            if collateral is None:
                raise ValidationError(f"Loan {loan_id} has no collateral")
            if loan.collateral_liquidated:
                raise StateConflictError(f"Collateral of loan {loan_id} already liquidated")
            if loan.status not in REPAYING_STATUSES and loan.status != LoanStatus.DEFAULTED:
                raise StateConflictError(f"Cannot liquidate collateral of loan in {loan.status.value} state")

            recovered = collateral.recovery_value
            if loan.status in REPAYING_STATUSES:
                recovered = min(recovered, self._payoff(loan))
                loan.collateral_liquidated = True
                loan.collateral_liquidation_pending = False
                loan.collateral_recovered = recovered
                was_overdue = loan.status == LoanStatus.OVERDUE
                payment = self._apply(loan, self.get_schedule(loan_id), recovered, PaymentMethod.COLLATERAL,
                                      f"{loan_id}:collateral", None, None, on_time=False)
            else:
                loan.collateral_liquidated = True
                loan.collateral_liquidation_pending = False
                loan.collateral_recovered = recovered
                loan.updated_at = self.clock.now()
                payment = None
                with self.storage.atomic():
                    self._save_loan(loan)

        if payment is not None:
            self._after_payment(loan, payment, self._payment_result(payment, loan, was_overdue))
        self._record(AuditEventType.COLLATERAL_LIQUIDATED, LedgerEventKind.COLLATERAL_LIQUIDATED, loan, {
            'collateral_type': loan.collateral_type,
            'assessed_value': collateral.assessed_value,
            'recovered': recovered
        })
        return recovered

    # Queries

    def get_loan(self, loan_id: str) -> Optional[Loan]:
        data = self.storage.load(self.LOANS_TABLE, loan_id)
        if data is None:
            return None
        return Loan.from_dict(data)

    def get_borrower_loans(self, borrower_id: str) -> List[Loan]:
        loans = [Loan.from_dict(d) for d in self.storage.find(self.LOANS_TABLE, {'borrower_id': borrower_id})]
        loans.sort(key=lambda l: l.created_at)
        return loans

    def get_active_loans(self) -> List[Loan]:
        """Loans currently being repaid (ACTIVE or OVERDUE)"""
        return [
            Loan.from_dict(d) for d in self.storage.load_all(self.LOANS_TABLE)
            if d.get('status') in {s.value for s in REPAYING_STATUSES}
        ]

    def get_loans_past_due(self, as_of: date) -> List[Loan]:
        """Repaying loans whose next payment date passed before ``as_of``"""
        return [
            loan for loan in self.get_active_loans()
            if loan.next_payment_date is not None and loan.next_payment_date < as_of
        ]

    def get_payments(self, loan_id: str) -> List[LoanPayment]:
        payments = [LoanPayment.from_dict(d) for d in self.storage.find(self.PAYMENTS_TABLE, {'loan_id': loan_id})]
        payments.sort(key=lambda p: p.created_at)
        return payments

    def repayment_history(self, borrower_id: str) -> RepaymentHistory:
        """Aggregate repayment behavior across all of a borrower's loans"""
        loans = [l for l in self.get_borrower_loans(borrower_id)
                 if l.status not in (LoanStatus.PENDING, LoanStatus.APPROVED, LoanStatus.REJECTED)]
        payments = [
            p for p in (LoanPayment.from_dict(d)
                        for d in self.storage.find(self.PAYMENTS_TABLE, {'borrower_id': borrower_id}))
            if p.method in (PaymentMethod.MANUAL, PaymentMethod.AUTOMATIC)
        ]
        defaulted = [l for l in loans if l.defaulted]
        return RepaymentHistory(
            total_payments=len(payments),
            on_time_payments=sum(1 for p in payments if p.on_time),
            late_payments=sum(1 for p in payments if not p.on_time),
            total_loans=len(loans),
            defaulted_loans=len(defaulted),
            recovered_loans=sum(1 for l in defaulted if l.collateral_recovered > 0)
        )

    # Internals

    def _require(self, loan_id: str) -> Loan:
        loan = self.get_loan(loan_id)
        if loan is None:
            raise NotFoundError(f"Loan {loan_id} not found")
        return loan

    @staticmethod
    def _transition(loan: Loan, new_status: LoanStatus) -> None:
        if new_status not in _TRANSITIONS[loan.status]:
            raise StateConflictError(
                f"Invalid transition for loan {loan.id}: {loan.status.value} -> {new_status.value}"
            )
        loan.status = new_status

    def _transfer(self, payer_id: str, payee_id: str, amount: Decimal, reference: str) -> TransferResult:
        result = self.payment_rail.transfer(payer_id, payee_id, amount, reference)
        if not result.success:
            raise PaymentRailError(f"Transfer {reference} declined: {result.message}")
        return result

    def _check_invariants(self, loan: Loan) -> None:
        """Refuse to commit a loan whose ledger state is impossible"""
        problems = []
        if loan.current_balance < 0:
            problems.append(f"negative balance {loan.current_balance}")
        if loan.payments_made > loan.total_payments:
            problems.append(f"payments_made {loan.payments_made} > total_payments {loan.total_payments}")
        for name in ('penalty_balance', 'accrued_interest', 'arrears_amount', 'overdue_amount'):
            if getattr(loan, name) < 0:
                problems.append(f"negative {name}")
        if loan.status in REPAYING_STATUSES and loan.current_balance == 0:
            problems.append(f"zero balance while {loan.status.value}")
        if loan.status == LoanStatus.PAID_OFF and loan.current_balance != 0:
            problems.append(f"paid off with balance {loan.current_balance}")

        if problems:
            message = f"Invariant violation on loan {loan.id}: {'; '.join(problems)}"
            logger.error(message)
            raise FatalDataError(message)

    def _save_loan(self, loan: Loan) -> None:
        self.storage.save(self.LOANS_TABLE, loan.id, loan.to_dict())

    def _save_entry(self, entry: RepaymentScheduleEntry) -> None:
        self.storage.save(self.SCHEDULE_TABLE, entry.id, entry.to_dict())

    def _event(self, kind: LedgerEventKind, loan: Loan, data: Dict) -> LedgerEvent:
        payload = {'status': loan.status.value, 'balance': loan.current_balance}
        payload.update(data)
        return LedgerEvent(kind=kind, entity_id=loan.id, borrower_id=loan.borrower_id,
                           data=payload, timestamp=self.clock.now())

    def _record(self, audit_type: AuditEventType, kind: LedgerEventKind, loan: Loan,
                metadata: Dict, actor: Optional[str] = None) -> None:
        """Audit, log and publish a transition once it is committed"""
        event = self._event(kind, loan, metadata)

        def record():
            if self.audit_trail:
                self.audit_trail.log_event(
                    event_type=audit_type,
                    entity_type="loan",
                    entity_id=loan.id,
                    metadata=metadata,
                    actor=actor
                )
            log_action(logger, "info", f"{kind.value} {loan.id}",
                       user_id=loan.borrower_id, action=kind.value, resource=f"loan:{loan.id}")
            publish_safely(self.notifier, event)

        self.storage.on_commit(record)

    def _publish(self, event: LedgerEvent) -> None:
        self.storage.on_commit(lambda: publish_safely(self.notifier, event))
