"""
Loan Ledger System

Wires storage, rail, engines and scheduler together from a LedgerConfig.
"""

import logging
from decimal import Decimal
from typing import Optional

from .audit import AuditTrail
from .clock import Clock, SystemClock
from .config import LedgerConfig, get_config
from .credit_scoring import BehaviorDataSource, CreditScoringEngine, InMemoryBehaviorSource, PenaltyType
from .events import LoggingNotifier, NotificationPort
from .interest import DayCountConvention
from .loans import LoanLedger
from .overdue import OverdueProcessor
from .payment_rail import HttpPaymentRail, InMemoryPaymentRail, PaymentRail
from .scheduler import BackgroundScheduler, build_default_scheduler
from .storage import InMemoryStorage, SQLiteStorage, StorageInterface

logger = logging.getLogger("ledger")


class LedgerSystem:
    """Loan ledger with all components initialized"""

    def __init__(
        self,
        config: Optional[LedgerConfig] = None,
        clock: Optional[Clock] = None,
        storage: Optional[StorageInterface] = None,
        payment_rail: Optional[PaymentRail] = None,
        behavior_source: Optional[BehaviorDataSource] = None,
        notifier: Optional[NotificationPort] = None
    ):
        self.config = config or get_config()
        self.clock = clock or SystemClock()

        if storage is not None:
            self.storage = storage
        elif self.config.storage_backend == "sqlite":
            self.storage = SQLiteStorage(self.config.database_path)
        else:
            self.storage = InMemoryStorage()

        rail_timeout = None
        if payment_rail is not None:
            self.payment_rail = payment_rail
            rail_timeout = self.config.payment_rail_timeout_seconds
        elif self.config.payment_rail_url:
            # httpx enforces the timeout itself
            self.payment_rail = HttpPaymentRail(
                self.config.payment_rail_url,
                timeout=self.config.payment_rail_timeout_seconds,
                api_key=self.config.payment_rail_api_key or None
            )
        else:
            self.payment_rail = InMemoryPaymentRail(overdraft_accounts={self.config.treasury_account_id})
            rail_timeout = self.config.payment_rail_timeout_seconds

        self.behavior_source = behavior_source or InMemoryBehaviorSource()
        self.notifier = notifier or LoggingNotifier()
        self.audit_trail = AuditTrail(self.storage, self.clock)

        self.credit_engine = CreditScoringEngine(
            self.storage,
            clock=self.clock,
            behavior_source=self.behavior_source,
            weights=self.config.scoring_weights(),
            min_scores=self.config.min_scores,
            penalty_tiers={
                PenaltyType.LATE_PAYMENT: self.config.penalty_late_payment,
                PenaltyType.ACCOUNT_SUSPENSION: self.config.penalty_account_suspension,
                PenaltyType.DEFAULT: self.config.penalty_default,
                PenaltyType.BLACKLIST: self.config.penalty_blacklist,
            },
            notifier=self.notifier,
            audit_trail=self.audit_trail,
            refresh_batch_size=self.config.credit_refresh_batch_size
        )
        self.loan_ledger = LoanLedger(
            self.storage,
            self.credit_engine,
            self.payment_rail,
            clock=self.clock,
            notifier=self.notifier,
            audit_trail=self.audit_trail,
            max_active_loans=self.config.max_active_loans,
            treasury_account_id=self.config.treasury_account_id,
            rail_timeout=rail_timeout,
            payoff_bonus=self.config.payoff_bonus
        )
        self.overdue_processor = OverdueProcessor(
            self.loan_ledger,
            self.credit_engine,
            notifier=self.notifier,
            audit_trail=self.audit_trail,
            penalty_rate=Decimal(self.config.penalty_rate),
            grace_period_days=self.config.grace_period_days,
            suspension_threshold=self.config.suspension_threshold,
            blacklist_threshold=self.config.blacklist_threshold,
            max_unresolved_days=self.config.max_unresolved_days,
            max_collection_attempts=self.config.max_collection_attempts,
            collection_fee=Decimal(self.config.collection_fee),
            day_count_convention=DayCountConvention(self.config.day_count_convention)
        )
        self.scheduler: BackgroundScheduler = build_default_scheduler(self)

    @property
    def collateral_discount_rate(self) -> Decimal:
        return Decimal(self.config.collateral_discount_rate)

    def start_background(self) -> None:
        self.scheduler.start()

    def shutdown(self) -> None:
        """Stop background work, then release the rail and storage"""
        self.scheduler.stop(timeout=self.config.shutdown_timeout_seconds)
        self.loan_ledger.payment_rail.close()
        self.storage.close()
        logger.info("Ledger system shut down")
