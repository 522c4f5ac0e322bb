"""
Loan Ledger Engine

Loan lifecycle tracking for virtual economies: credit scoring, amortized
repayment schedules with exact Decimal math, and periodic overdue processing.
"""

__version__ = "1.0.0"
