"""
Test suite for credit scoring

Tests factor calculation, grade mapping, penalties and bonuses, qualification
checks, and the batch refresh queue.
"""

import pytest
from decimal import Decimal
from datetime import datetime, timezone, timedelta
from unittest.mock import Mock

from loan_ledger.clock import FixedClock
from loan_ledger.credit_scoring import (
    AccountSnapshot, AdjustmentKind, CreditGrade, CreditScoringEngine, DEFAULT_SCORE,
    InMemoryBehaviorSource, LoanType, PenaltyType, RepaymentHistory, TransactionSample,
    account_age_factor, amount_factor, balance_factor, frequency_factor, interest_rate_for,
    repayment_factor
)
from loan_ledger.events import LedgerEventKind, RecordingNotifier
from loan_ledger.exceptions import StorageUnavailableError, ValidationError
from loan_ledger.storage import InMemoryStorage


NOW = datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc)


class FlakyStorage(InMemoryStorage):
    """In-memory storage whose reads can be switched off"""

    def __init__(self):
        super().__init__()
        self.available = True

    def load(self, table, record_id):
        if not self.available:
            raise StorageUnavailableError("storage offline")
        return super().load(table, record_id)


class TestCreditGrade:
    """Test grade mapping and pricing tables"""

    @pytest.mark.parametrize("score,grade", [
        (850, CreditGrade.A),
        (800, CreditGrade.A),
        (799, CreditGrade.B),
        (740, CreditGrade.B),
        (739, CreditGrade.C),
        (670, CreditGrade.C),
        (669, CreditGrade.D),
        (580, CreditGrade.D),
        (579, CreditGrade.F),
        (300, CreditGrade.F),
    ])
    def test_grade_boundaries(self, score, grade):
        assert CreditGrade.from_score(score) == grade

    def test_default_score_is_grade_d(self):
        assert CreditGrade.from_score(DEFAULT_SCORE) == CreditGrade.D
        assert CreditGrade.D.max_credit_limit == Decimal("50000")

    def test_interest_rate_for(self):
        """Grade base rate times product multiplier"""
        assert interest_rate_for(CreditGrade.D, LoanType.CREDIT) == Decimal("0.114")
        assert interest_rate_for(CreditGrade.A, LoanType.MORTGAGE) == Decimal("0.028")

    def test_interest_rate_is_capped(self):
        """F-grade emergency loans would be 30%; capped at 25%"""
        assert interest_rate_for(CreditGrade.F, LoanType.EMERGENCY) == Decimal("0.25")

    def test_loan_type_table(self):
        assert LoanType.MORTGAGE.requires_collateral
        assert not LoanType.CREDIT.requires_collateral
        assert LoanType.EMERGENCY.max_term_months == 3
        assert LoanType.MORTGAGE.max_term_months == 240


class TestScoringFactors:
    """Test individual factor scores"""

    def test_no_transactions_is_neutral(self):
        assert frequency_factor([], NOW) == Decimal(50)
        assert amount_factor([]) == Decimal(50)

    def test_frequency_counts_last_30_days(self):
        recent = [TransactionSample(Decimal("10"), NOW - timedelta(days=i)) for i in range(15)]
        old = [TransactionSample(Decimal("10"), NOW - timedelta(days=60)) for _ in range(20)]
        assert frequency_factor(recent, NOW) == Decimal(100)
        assert frequency_factor(old, NOW) == Decimal(0)

    def test_amount_factor_caps_at_100(self):
        big = [TransactionSample(Decimal("60000"), NOW)]
        half = [TransactionSample(Decimal("-25000"), NOW)]
        assert amount_factor(big) == Decimal(100)
        assert amount_factor(half) == Decimal(50)

    def test_repayment_no_history(self):
        assert repayment_factor(RepaymentHistory()) == Decimal(70)

    def test_repayment_late_payments(self):
        history = RepaymentHistory(total_payments=10, on_time_payments=8, late_payments=2, total_loans=1)
        assert repayment_factor(history) == Decimal(74)

    def test_repayment_default_and_recovery(self):
        history = RepaymentHistory(total_payments=10, on_time_payments=10, total_loans=2,
                                   defaulted_loans=1, recovered_loans=1)
        # 100 - 20 for the default + 20 for recovery
        assert repayment_factor(history) == Decimal(100)

    def test_account_age(self):
        assert account_age_factor(None, NOW) == Decimal(30)
        snapshot = AccountSnapshot(Decimal("10"), Decimal("10"), opened_at=NOW - timedelta(days=730))
        assert account_age_factor(snapshot, NOW) == Decimal(100)

    def test_balance_factor(self):
        assert balance_factor(None) == Decimal(30)
        assert balance_factor(AccountSnapshot(Decimal("0"), Decimal("100"))) == Decimal(0)
        assert balance_factor(AccountSnapshot(Decimal("50"), Decimal("0"))) == Decimal(70)
        # log10(9 + 1) * 50
        assert balance_factor(AccountSnapshot(Decimal("900"), Decimal("100"))) == Decimal(50)


class TestCreditScoringEngine:
    """Test score calculation and adjustments"""

    def setup_method(self):
        """Set up test fixtures"""
        self.clock = FixedClock(NOW)
        self.storage = InMemoryStorage()
        self.behavior = InMemoryBehaviorSource()
        self.notifier = RecordingNotifier()
        self.engine = CreditScoringEngine(
            self.storage,
            clock=self.clock,
            behavior_source=self.behavior,
            notifier=self.notifier
        )

    def test_unscored_borrower_gets_default(self):
        assert self.engine.get_score("nobody") == DEFAULT_SCORE
        assert self.engine.get_grade("nobody") == CreditGrade.D
        assert self.engine.get_record("nobody") is None

    def test_calculate_score_without_data(self):
        """Neutral factors blend to 51, i.e. 300 + 0.51 * 550 = 580.5 -> 581"""
        score = self.engine.calculate_score("alice")
        assert score == 581
        record = self.engine.get_record("alice")
        assert record.score == 581
        assert record.grade == CreditGrade.D
        assert record.factors["behavioral_score"] == 581
        assert record.last_calculated_at == NOW

    def test_calculate_score_is_idempotent(self):
        first = self.engine.calculate_score("alice")
        self.notifier.clear()
        second = self.engine.calculate_score("alice")
        assert first == second
        # Unchanged score publishes nothing
        assert self.notifier.events(LedgerEventKind.CREDIT_SCORE_UPDATED) == []

    def test_strong_behavior_scores_high(self):
        for i in range(20):
            self.behavior.record_transaction("bob", "5000", NOW - timedelta(days=i))
        self.behavior.set_account("bob", AccountSnapshot(
            current_balance=Decimal("900"),
            average_balance=Decimal("100"),
            opened_at=NOW - timedelta(days=800)
        ))
        score = self.engine.calculate_score("bob")
        # frequency 100, amount 100, repayment 70, age 100, balance 50
        assert score == 751  # blend 82 -> 300 + 0.82 * 550

    def test_penalty_and_bonus(self):
        after_penalty = self.engine.apply_penalty("alice", 50, "Late payment")
        assert after_penalty == DEFAULT_SCORE - 50
        after_bonus = self.engine.apply_bonus("alice", 30, "Paid off")
        assert after_bonus == DEFAULT_SCORE - 20

        adjustments = self.engine.get_adjustments("alice")
        assert [a.delta for a in adjustments] == [-50, 30]
        assert adjustments[0].kind == AdjustmentKind.PENALTY
        assert adjustments[0].score_before == DEFAULT_SCORE
        assert adjustments[1].score_after == DEFAULT_SCORE - 20

    def test_adjustments_clamp_to_range(self):
        assert self.engine.apply_penalty("alice", 1000, "Fraud") == 300
        assert self.engine.apply_bonus("bob", 1000, "Perfect") == 850

    def test_adjustments_survive_recalculation(self):
        """Net penalties stay applied on top of the behavioral score"""
        self.engine.calculate_score("alice")
        self.engine.apply_penalty("alice", 10, "Late payment")
        assert self.engine.calculate_score("alice") == 571

    @pytest.mark.parametrize("amount", [0, -5, True, 2.5])
    def test_adjustment_amount_must_be_positive_integer(self, amount):
        with pytest.raises(ValidationError, match="positive integer"):
            self.engine.apply_penalty("alice", amount, "bad")

    def test_adjustment_events_published(self):
        self.engine.apply_penalty("alice", 10, "Late payment", loan_id="L1")
        events = self.notifier.events(LedgerEventKind.CREDIT_PENALTY_APPLIED)
        assert len(events) == 1
        assert events[0].data["delta"] == -10
        assert events[0].data["loan_id"] == "L1"

    def test_penalty_tiers(self):
        assert self.engine.apply_penalty_tier("alice", PenaltyType.BLACKLIST, "Blacklisted") == 500
        assert self.engine.late_payment_penalty(1) == 10
        assert self.engine.late_payment_penalty(3) == 30
        assert self.engine.late_payment_penalty(9) == 50  # capped at the default tier

    def test_weights_must_sum_to_one(self):
        weights = {
            "transaction_frequency": 0.5,
            "transaction_amount": 0.5,
            "repayment_history": 0.5,
            "account_age": 0.0,
            "current_balance": 0.0,
        }
        with pytest.raises(ValidationError, match="sum to 1.0"):
            CreditScoringEngine(self.storage, weights=weights)

    def test_weights_must_name_every_factor(self):
        with pytest.raises(ValidationError, match="missing"):
            CreditScoringEngine(self.storage, weights={"repayment_history": 1.0})


class TestQualification:
    """Test qualification checks"""

    def setup_method(self):
        """Set up test fixtures"""
        self.storage = InMemoryStorage()
        self.engine = CreditScoringEngine(
            self.storage,
            clock=FixedClock(NOW),
            min_scores={"business": 800}
        )

    def test_score_at_minimum_qualifies(self):
        self.engine.apply_bonus("alice", 200, "Seed")
        result = self.engine.check_qualification("alice", LoanType.BUSINESS)
        assert result.qualified
        assert result.score == 800
        assert result.grade == CreditGrade.A

    def test_score_below_minimum(self):
        self.engine.apply_bonus("bob", 199, "Seed")
        result = self.engine.check_qualification("bob", LoanType.BUSINESS)
        assert not result.qualified
        assert result.minimum_score == 800
        assert "below minimum" in result.reason

    def test_default_minimums(self):
        assert self.engine.qualifies_for_loan("carol", LoanType.CREDIT)
        assert self.engine.qualifies_for_loan("carol", LoanType.EMERGENCY)
        assert not self.engine.qualifies_for_loan("carol", LoanType.MORTGAGE)

    def test_blacklist_overrides_score(self):
        standing = Mock()
        standing.is_blacklisted.return_value = True
        self.engine.register_standing(standing)
        self.engine.apply_bonus("dave", 250, "Seed")

        result = self.engine.check_qualification("dave", LoanType.CREDIT)
        assert not result.qualified
        assert result.reason == "Borrower is blacklisted"
        standing.is_blacklisted.assert_called_with("dave")


class TestScoreFallback:
    """Test behavior when the score store is unavailable"""

    def setup_method(self):
        """Set up test fixtures"""
        self.storage = FlakyStorage()
        self.engine = CreditScoringEngine(self.storage, clock=FixedClock(NOW))

    def test_serves_last_persisted_score(self):
        self.engine.apply_penalty("alice", 40, "Late payment")
        self.storage.available = False
        assert self.engine.get_score("alice") == 560

    def test_never_invents_a_score(self):
        self.storage.available = False
        with pytest.raises(StorageUnavailableError):
            self.engine.get_score("stranger")


class TestRefresh:
    """Test batch refresh and the pending-update queue"""

    def setup_method(self):
        """Set up test fixtures"""
        self.storage = InMemoryStorage()
        self.behavior = Mock(wraps=InMemoryBehaviorSource())
        self.engine = CreditScoringEngine(
            self.storage,
            clock=FixedClock(NOW),
            behavior_source=self.behavior,
            refresh_batch_size=2
        )

    def test_refresh_known_borrowers(self):
        for borrower in ("a", "b", "c"):
            self.engine.apply_bonus(borrower, 5, "Seed")
        result = self.engine.refresh_all()
        assert result.processed == 3
        assert result.failed == 0
        assert not result.cancelled

    def test_one_failure_does_not_stop_the_batch(self):
        def transactions(borrower_id):
            if borrower_id == "bad":
                raise RuntimeError("corrupt history")
            return []

        self.behavior.transactions.side_effect = transactions
        result = self.engine.refresh_all(["a", "bad", "c"])
        assert result.processed == 2
        assert result.failed == 1
        assert "corrupt history" in result.errors["bad"]
        assert "bad" not in self.engine.pending_updates()

    def test_transient_failure_is_requeued(self):
        def transactions(borrower_id):
            if borrower_id == "flaky":
                raise StorageUnavailableError("behavior store offline")
            return []

        self.behavior.transactions.side_effect = transactions
        result = self.engine.refresh_all(["flaky", "ok"])
        assert result.processed == 1
        assert self.engine.pending_updates() == {"flaky"}

    def test_stop_request_cancels_between_borrowers(self):
        result = self.engine.refresh_all(["a", "b"], should_stop=lambda: True)
        assert result.cancelled
        assert result.processed == 0
        assert self.engine.get_record("a") is None

    def test_process_pending_updates(self):
        self.engine.queue_update("a")
        self.engine.queue_update("b")
        result = self.engine.process_pending_updates()
        assert result.processed == 2
        assert self.engine.pending_updates() == set()
        assert self.engine.get_score("a") == 581

    def test_cancelled_pending_run_keeps_the_rest_queued(self):
        for borrower in ("a", "b", "c"):
            self.engine.queue_update(borrower)
        stops = iter([False, True])

        result = self.engine.process_pending_updates(should_stop=lambda: next(stops))

        assert result.cancelled
        assert result.processed == 1
        assert result.unprocessed == ["b", "c"]
        assert self.engine.get_record("a") is not None
        assert self.engine.pending_updates() == {"b", "c"}
