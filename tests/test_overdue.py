"""
Test suite for overdue processing

Tests missed-installment detection, penalty accrual after the grace period,
collection escalation, suspension and blacklisting thresholds, defaulting,
collateral liquidation and sweep idempotency.
"""

import pytest
from decimal import Decimal
from datetime import datetime, timezone, date
from unittest.mock import patch

from loan_ledger.audit import AuditEventType, AuditTrail
from loan_ledger.clock import FixedClock
from loan_ledger.credit_scoring import CreditScoringEngine, LoanType
from loan_ledger.events import LedgerEventKind, RecordingNotifier
from loan_ledger.exceptions import StorageUnavailableError, ValidationError
from loan_ledger.interest import simple_interest
from loan_ledger.loans import Collateral, LoanLedger, LoanStatus
from loan_ledger.overdue import (
    CollectionMethod, OverdueProcessor, OverdueStatus, collection_method_for
)
from loan_ledger.payment_rail import InMemoryPaymentRail
from loan_ledger.storage import InMemoryStorage


START = datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc)


class OverdueTestCase:
    """Shared fixtures: one 10,000 loan at 5% over 12 months, due on the 15th"""

    processor_options = {}

    def setup_method(self):
        """Set up test fixtures"""
        self.clock = FixedClock(START)
        self.storage = InMemoryStorage()
        self.rail = InMemoryPaymentRail(overdraft_accounts={"treasury"})
        self.notifier = RecordingNotifier()
        self.audit_trail = AuditTrail(self.storage, self.clock)
        self.credit_engine = CreditScoringEngine(self.storage, clock=self.clock,
                                                 notifier=self.notifier)
        self.ledger = LoanLedger(self.storage, self.credit_engine, self.rail, clock=self.clock,
                                 notifier=self.notifier, audit_trail=self.audit_trail)
        self.processor = OverdueProcessor(
            self.ledger,
            self.credit_engine,
            notifier=self.notifier,
            audit_trail=self.audit_trail,
            **self.processor_options
        )
        self.loan_id = self.open_loan("alice", collateral=Collateral("vehicle", Decimal("5000")))

    def open_loan(self, borrower, amount="10000", **kwargs):
        loan_id = self.ledger.submit_application(borrower, LoanType.CREDIT, Decimal(amount), 12, **kwargs)
        self.ledger.approve(loan_id, "officer", interest_rate="0.05")
        self.ledger.disburse(loan_id)
        self.rail.set_balance(borrower, "100000")
        return loan_id

    def sweep(self, as_of):
        self.clock.set(datetime(as_of.year, as_of.month, as_of.day, 6, 0, tzinfo=timezone.utc))
        return self.processor.run_sweep(as_of)


class TestCollectionMethod:
    """Test escalation channel selection"""

    @pytest.mark.parametrize("attempt,method", [
        (1, CollectionMethod.EMAIL),
        (2, CollectionMethod.EMAIL),
        (3, CollectionMethod.SMS),
        (4, CollectionMethod.PHONE_CALL),
        (5, CollectionMethod.SYSTEM_NOTIFICATION),
        (12, CollectionMethod.SYSTEM_NOTIFICATION),
    ])
    def test_channel_escalates(self, attempt, method):
        assert collection_method_for(attempt) == method


class TestProcessorConfiguration:
    """Test threshold validation"""

    def setup_method(self):
        """Set up test fixtures"""
        storage = InMemoryStorage()
        self.credit_engine = CreditScoringEngine(storage)
        self.ledger = LoanLedger(storage, self.credit_engine, InMemoryPaymentRail())

    def test_blacklist_below_suspension(self):
        with pytest.raises(ValidationError, match="Blacklist threshold"):
            OverdueProcessor(self.ledger, self.credit_engine, suspension_threshold=4, blacklist_threshold=2)

    def test_zero_threshold(self):
        with pytest.raises(ValidationError, match="at least 1"):
            OverdueProcessor(self.ledger, self.credit_engine, suspension_threshold=0)

    def test_collection_limits(self):
        with pytest.raises(ValidationError, match="collection attempts"):
            OverdueProcessor(self.ledger, self.credit_engine, max_collection_attempts=0)
        with pytest.raises(ValidationError, match="Collection fee"):
            OverdueProcessor(self.ledger, self.credit_engine, collection_fee="-1")

    def test_calculate_penalty(self):
        processor = OverdueProcessor(self.ledger, self.credit_engine)
        assert processor.calculate_penalty(Decimal("1000"), 7) == Decimal("0.00")
        assert processor.calculate_penalty(Decimal("1000"), 10) == simple_interest(
            Decimal("1000"), Decimal("0.18"), 3)


class TestOverdueSweep(OverdueTestCase):
    """Test the sweep over a single loan"""

    def test_nothing_due(self):
        result = self.sweep(date(2024, 2, 10))
        assert result.loans_examined == 0
        assert self.processor.get_overdue_records() == []

    def test_first_miss_opens_record(self):
        result = self.sweep(date(2024, 2, 16))

        assert result.loans_processed == 1
        assert result.missed_installments == 1
        assert result.newly_overdue == 1
        assert result.penalties_accrued == Decimal("0.00")  # still within grace
        assert result.collection_attempts == 1

        loan = self.ledger.get_loan(self.loan_id)
        assert loan.status == LoanStatus.OVERDUE
        assert loan.overdue_amount == Decimal("856.07")

        records = self.processor.get_overdue_records(loan_id=self.loan_id)
        assert len(records) == 1
        assert records[0].status == OverdueStatus.ACTIVE
        assert records[0].first_due_date == date(2024, 2, 15)
        assert records[0].overdue_amount == Decimal("856.07")

        attempts = self.processor.get_collection_attempts(self.loan_id)
        assert [a.method for a in attempts] == [CollectionMethod.EMAIL]

        # Late payment penalty on the credit score
        assert self.credit_engine.get_score("alice") == 590
        assert len(self.notifier.events(LedgerEventKind.LOAN_OVERDUE)) == 1

    def test_sweep_is_idempotent_per_period(self):
        self.sweep(date(2024, 2, 16))
        loan_before = self.ledger.get_loan(self.loan_id)

        result = self.sweep(date(2024, 2, 16))

        assert result.loans_skipped == 1
        assert result.loans_processed == 0
        loan_after = self.ledger.get_loan(self.loan_id)
        assert loan_after.overdue_amount == loan_before.overdue_amount
        assert loan_after.overdue_payments == 1
        assert len(self.processor.get_collection_attempts(self.loan_id)) == 1
        assert self.credit_engine.get_score("alice") == 590

    def test_penalty_accrues_after_grace(self):
        self.sweep(date(2024, 2, 16))
        result = self.sweep(date(2024, 3, 1))

        # Grace ends 2024-02-22; 8 chargeable days on the 856.07 arrears
        expected = simple_interest(Decimal("856.07"), Decimal("0.18"), 8)
        assert expected == self.processor.calculate_penalty(Decimal("856.07"), 15)
        assert result.penalties_accrued == expected

        loan = self.ledger.get_loan(self.loan_id)
        assert loan.penalty_balance == expected
        assert loan.overdue_amount == Decimal("856.07") + expected
        record = self.processor.get_overdue_records(loan_id=self.loan_id)[0]
        assert record.penalty_accrued == expected
        assert record.last_accrual_date == date(2024, 3, 1)

    def test_penalty_days_never_charged_twice(self):
        self.sweep(date(2024, 2, 16))
        first = self.sweep(date(2024, 3, 1)).penalties_accrued
        second = self.sweep(date(2024, 3, 2)).penalties_accrued

        # Only the one new day is charged on the second visit
        assert second == simple_interest(Decimal("856.07"), Decimal("0.18"), 1)
        loan = self.ledger.get_loan(self.loan_id)
        assert loan.penalty_balance == first + second

    def test_failed_visit_rolls_back_whole_loan(self):
        with patch.object(self.credit_engine, "apply_penalty",
                          side_effect=StorageUnavailableError("score store down")):
            result = self.sweep(date(2024, 2, 16))

        assert "score store down" in result.errors[self.loan_id]
        loan = self.ledger.get_loan(self.loan_id)
        assert loan.status == LoanStatus.ACTIVE
        assert loan.overdue_payments == 0
        assert loan.next_payment_date == date(2024, 2, 15)
        assert self.processor.get_overdue_records() == []
        assert self.processor.get_collection_attempts(self.loan_id) == []
        assert self.notifier.events(LedgerEventKind.LOAN_OVERDUE) == []
        assert self.audit_trail.get_events_by_type(AuditEventType.LOAN_OVERDUE) == []

        result = self.sweep(date(2024, 2, 17))

        assert result.errors == {}
        assert result.missed_installments == 1
        record = self.processor.get_overdue_records(loan_id=self.loan_id)[0]
        assert record.first_due_date == date(2024, 2, 15)
        adjustments = self.credit_engine.get_adjustments("alice")
        assert [a.reason for a in adjustments] == ["Missed installment 1 due 2024-02-15"]
        assert self.credit_engine.get_score("alice") == 590
        assert self.audit_trail.verify_integrity()['valid']

    def test_each_installment_has_its_own_grace(self):
        self.sweep(date(2024, 2, 16))
        result = self.sweep(date(2024, 3, 16))

        # Installment 1 is charged 2024-02-22 to 2024-03-16; installment 2 is still in grace
        expected = simple_interest(Decimal("856.07"), Decimal("0.18"), 23)
        assert expected == Decimal("9.70")
        assert result.penalties_accrued == expected

        loan = self.ledger.get_loan(self.loan_id)
        assert loan.arrears_amount == Decimal("1712.14")
        assert loan.penalty_balance == expected

    def test_collection_escalates_each_visit(self):
        for day in (16, 17, 18, 19, 20):
            self.sweep(date(2024, 2, day))
        methods = [a.method for a in self.processor.get_collection_attempts(self.loan_id)]
        assert methods == [
            CollectionMethod.EMAIL,
            CollectionMethod.EMAIL,
            CollectionMethod.SMS,
            CollectionMethod.PHONE_CALL,
            CollectionMethod.SYSTEM_NOTIFICATION
        ]

    def test_partial_payment_keeps_loan_overdue(self):
        self.sweep(date(2024, 2, 16))
        self.ledger.make_payment(self.loan_id, Decimal("400"))

        loan = self.ledger.get_loan(self.loan_id)
        assert loan.status == LoanStatus.OVERDUE
        assert loan.overdue_amount == Decimal("456.07")
        assert self.processor.get_total_overdue_amount("alice") == Decimal("456.07")

    def test_cleared_arrears_resolve_record(self):
        self.sweep(date(2024, 2, 16))
        self.ledger.make_payment(self.loan_id, Decimal("856.07"))
        assert self.ledger.get_loan(self.loan_id).status == LoanStatus.ACTIVE

        result = self.sweep(date(2024, 2, 17))

        assert result.resolved == [self.loan_id]
        record = self.processor.get_overdue_records(loan_id=self.loan_id)[0]
        assert record.status == OverdueStatus.RESOLVED
        assert record.resolution == "arrears_cleared"
        assert self.processor.get_overdue_records(open_only=True) == []
        assert self.processor.get_total_overdue_amount("alice") == Decimal("0.00")

    def test_stop_request(self):
        self.open_loan("bob")
        result = self.processor.run_sweep(date(2024, 2, 16), should_stop=lambda: True)
        assert result.cancelled
        assert result.loans_examined == 2
        assert result.loans_processed == 0

    def test_one_failing_loan_does_not_stop_the_sweep(self):
        other = self.open_loan("bob")
        original = self.ledger.record_missed_installments

        def flaky(loan_id, as_of):
            if loan_id == self.loan_id:
                raise RuntimeError("schedule unreadable")
            return original(loan_id, as_of)

        with patch.object(self.ledger, "record_missed_installments", side_effect=flaky):
            result = self.sweep(date(2024, 2, 16))

        assert "schedule unreadable" in result.errors[self.loan_id]
        assert result.loans_processed == 1
        assert self.ledger.get_loan(other).status == LoanStatus.OVERDUE
        assert self.ledger.get_loan(self.loan_id).status == LoanStatus.ACTIVE


class TestEscalationThresholds(OverdueTestCase):
    """Test suspension and blacklisting as misses accumulate"""

    processor_options = {"max_unresolved_days": 365, "max_collection_attempts": 12}

    def test_monthly_misses_escalate(self):
        self.sweep(date(2024, 2, 16))
        self.sweep(date(2024, 3, 16))
        assert not self.processor.is_suspended("alice")

        result = self.sweep(date(2024, 4, 16))
        assert result.suspended == [self.loan_id]
        assert self.processor.is_suspended("alice")
        assert not self.processor.is_blacklisted("alice")
        record = self.processor.get_overdue_records(loan_id=self.loan_id)[0]
        assert record.status == OverdueStatus.ESCALATED

        with pytest.raises(ValidationError, match="suspended"):
            self.ledger.submit_application("alice", LoanType.EMERGENCY, Decimal("100"), 1)

        self.sweep(date(2024, 5, 16))
        self.sweep(date(2024, 6, 16))
        result = self.sweep(date(2024, 7, 16))

        assert result.suspended == []  # already suspended
        assert result.blacklisted == [self.loan_id]
        assert result.liquidations_flagged == [self.loan_id]
        assert self.processor.is_blacklisted("alice")
        loan = self.ledger.get_loan(self.loan_id)
        assert loan.overdue_payments == 6
        assert loan.collateral_liquidation_pending
        assert not self.credit_engine.qualifies_for_loan("alice", LoanType.EMERGENCY)

    def test_catch_up_sweep_counts_every_miss(self):
        """A sweep after a long gap records all missed installments at once"""
        result = self.sweep(date(2024, 7, 16))

        assert result.missed_installments == 6
        assert result.suspended == [self.loan_id]
        assert result.blacklisted == [self.loan_id]
        assert self.ledger.get_loan(self.loan_id).overdue_payments == 6

    def test_restriction_audit_and_lift(self):
        self.sweep(date(2024, 7, 16))
        blacklisted = self.audit_trail.get_events_by_type(AuditEventType.BORROWER_BLACKLISTED)
        assert [e.entity_id for e in blacklisted] == ["alice"]

        assert self.processor.lift_suspension("alice", actor="officer")
        assert self.processor.remove_from_blacklist("alice", actor="officer")
        assert not self.processor.is_suspended("alice")
        assert not self.processor.is_blacklisted("alice")
        assert not self.processor.remove_from_blacklist("alice")
        lifted = self.audit_trail.get_events_by_type(AuditEventType.BORROWER_RESTRICTION_LIFTED)
        assert len(lifted) == 2

    def test_manual_restrictions(self):
        assert self.processor.suspend_borrower("bob", "Manual review")
        assert not self.processor.suspend_borrower("bob", "Manual review")
        restriction = self.processor.get_restriction("bob")
        assert restriction.suspended
        assert restriction.reason == "Manual review"
        # Suspension tier penalty
        assert self.credit_engine.get_score("bob") == 575


class TestDefault(OverdueTestCase):
    """Test defaulting of loans left unresolved"""

    def test_default_after_max_unresolved_days(self):
        # 90 days after the first missed due date of 2024-02-15
        result = self.sweep(date(2024, 5, 15))

        assert result.defaulted == [self.loan_id]
        assert result.blacklisted == [self.loan_id]
        assert result.liquidations_flagged == [self.loan_id]

        loan = self.ledger.get_loan(self.loan_id)
        assert loan.status == LoanStatus.DEFAULTED
        assert loan.defaulted
        assert loan.current_balance > 0

        record = self.processor.get_overdue_records(loan_id=self.loan_id)[0]
        assert record.status == OverdueStatus.WRITTEN_OFF
        assert record.resolution == "defaulted"
        attempts = self.processor.get_collection_attempts(self.loan_id)
        assert attempts[-1].method == CollectionMethod.DEFAULT_ACTION
        assert not attempts[-1].requires_further_action

        assert self.processor.is_blacklisted("alice")
        assert self.processor.get_total_overdue_amount("alice") == Decimal("0.00")
        assert len(self.notifier.events(LedgerEventKind.LOAN_DEFAULTED)) == 1

    def test_defaulted_loan_leaves_the_sweep(self):
        self.sweep(date(2024, 5, 15))
        result = self.sweep(date(2024, 5, 16))
        assert result.loans_examined == 0

    def test_not_defaulted_one_day_early(self):
        result = self.sweep(date(2024, 5, 14))
        assert result.defaulted == []
        assert self.ledger.get_loan(self.loan_id).status == LoanStatus.OVERDUE


class TestCollectionLimits(OverdueTestCase):
    """Test defaulting once collection attempts run out"""

    processor_options = {"max_collection_attempts": 3}

    def test_default_after_last_attempt(self):
        for day in (16, 17, 18):
            assert self.sweep(date(2024, 2, day)).defaulted == []

        result = self.sweep(date(2024, 2, 19))

        assert result.defaulted == [self.loan_id]
        assert result.blacklisted == [self.loan_id]
        assert self.ledger.get_loan(self.loan_id).status == LoanStatus.DEFAULTED
        methods = [a.method for a in self.processor.get_collection_attempts(self.loan_id)]
        assert methods == [
            CollectionMethod.EMAIL,
            CollectionMethod.EMAIL,
            CollectionMethod.SMS,
            CollectionMethod.DEFAULT_ACTION
        ]
        record = self.processor.get_overdue_records(loan_id=self.loan_id)[0]
        assert record.status == OverdueStatus.WRITTEN_OFF
        assert self.processor.is_blacklisted("alice")


class TestCollectionFee(OverdueTestCase):
    """Test the minimum penalty charged once grace has passed"""

    processor_options = {"collection_fee": "50"}

    def test_first_penalty_is_at_least_the_fee(self):
        assert self.sweep(date(2024, 2, 16)).penalties_accrued == Decimal("0.00")
        first = self.sweep(date(2024, 3, 1)).penalties_accrued
        assert first == Decimal("50.00")

        # The floor covers the record's total, so later days are charged as interest
        second = self.sweep(date(2024, 3, 2)).penalties_accrued
        assert second == simple_interest(Decimal("856.07"), Decimal("0.18"), 1)

        loan = self.ledger.get_loan(self.loan_id)
        assert loan.penalty_balance == Decimal("50.00") + second
        assert self.processor.get_overdue_records(loan_id=self.loan_id)[0].penalty_accrued == loan.penalty_balance

    def test_calculate_penalty_floor(self):
        assert self.processor.calculate_penalty(Decimal("856.07"), 7) == Decimal("0.00")
        assert self.processor.calculate_penalty(Decimal("856.07"), 15) == Decimal("50.00")
        assert self.processor.calculate_penalty(Decimal("100000"), 15) == simple_interest(
            Decimal("100000"), Decimal("0.18"), 8)


class TestCollateralLiquidation(OverdueTestCase):
    """Test liquidating pledged collateral"""

    def test_liquidation_clears_arrears(self):
        self.sweep(date(2024, 2, 16))
        recovered = self.processor.liquidate_collateral(self.loan_id)

        assert recovered == Decimal("4000.00")
        loan = self.ledger.get_loan(self.loan_id)
        assert loan.status == LoanStatus.ACTIVE
        assert loan.collateral_liquidated
        assert loan.current_balance == Decimal("6083.34")

        record = self.processor.get_overdue_records(loan_id=self.loan_id)[0]
        assert record.status == OverdueStatus.RESOLVED
        # Liquidation is not a repayment the borrower made
        assert self.ledger.repayment_history("alice").total_payments == 0

    def test_liquidation_after_default(self):
        self.sweep(date(2024, 5, 15))
        recovered = self.processor.liquidate_collateral(self.loan_id)

        loan = self.ledger.get_loan(self.loan_id)
        assert recovered == Decimal("4000.00")
        assert loan.status == LoanStatus.DEFAULTED
        assert loan.collateral_recovered == Decimal("4000.00")
        assert not loan.collateral_liquidation_pending
        assert self.ledger.repayment_history("alice").recovered_loans == 1

    def test_liquidation_without_collateral(self):
        plain = self.open_loan("bob")
        with pytest.raises(ValidationError, match="no collateral"):
            self.processor.liquidate_collateral(plain)
