"""
Interest Math Module

Pure, stateless interest primitives shared by loan amortization, overdue
penalties and any deposit-side calculation.

Contract for degenerate input: non-positive principal, rate or duration never
raise. ``simple_interest``, ``compound_interest``, ``penalty_amount`` and
``amortized_payment`` return ``0.00``; ``compound_amount`` returns the
principal unchanged. Schedule generation relies on this so it never aborts on
edge cases.

Monetary results are rounded to cents with ROUND_HALF_UP. Intermediate rates
and year fractions are kept to 10 decimal places.
"""

from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Union

from .money import ZERO, quantize_money, quantize_rate, to_decimal

Number = Union[Decimal, int, str]

MONTHS_PER_YEAR = 12


class DayCountConvention(Enum):
    """How a day count is converted into a fraction of a year"""
    ACTUAL_365_25 = "actual_365_25"
    ACTUAL_365 = "actual_365"
    ACTUAL_360 = "actual_360"
    THIRTY_360 = "thirty_360"

    @property
    def year_basis(self) -> Decimal:
        return {
            DayCountConvention.ACTUAL_365_25: Decimal("365.25"),
            DayCountConvention.ACTUAL_365: Decimal("365"),
            DayCountConvention.ACTUAL_360: Decimal("360"),
            DayCountConvention.THIRTY_360: Decimal("360"),
        }[self]


DEFAULT_CONVENTION = DayCountConvention.ACTUAL_365_25


def day_count(start: date, end: date,
              convention: DayCountConvention = DEFAULT_CONVENTION) -> int:
    """
    Number of days between two dates under a convention

    30/360 uses the US rule: day 31 is treated as day 30, and the end day is
    capped at 30 only when the start day is 30 or 31.
    """
    if convention != DayCountConvention.THIRTY_360:
        return (end - start).days

    d1 = min(start.day, 30)
    d2 = end.day
    if d1 == 30:
        d2 = min(d2, 30)
    return (
        360 * (end.year - start.year)
        + 30 * (end.month - start.month)
        + (d2 - d1)
    )


def year_fraction(days: Number, convention: DayCountConvention = DEFAULT_CONVENTION) -> Decimal:
    """Fraction of a year represented by ``days``"""
    return quantize_rate(to_decimal(days) / convention.year_basis)


def monthly_rate(annual_rate: Number) -> Decimal:
    """Nominal annual rate converted to a monthly periodic rate"""
    return quantize_rate(to_decimal(annual_rate) / MONTHS_PER_YEAR)


def simple_interest(principal: Number, annual_rate: Number, days: Number,
                    convention: DayCountConvention = DEFAULT_CONVENTION) -> Decimal:
    """
    Simple interest: principal * rate * years

    Args:
        principal: Amount the interest accrues on
        annual_rate: Nominal annual rate, e.g. Decimal("0.05")
        days: Accrual period in days
        convention: Day-count convention for the year fraction

    Returns:
        Interest rounded to cents, ``0.00`` for degenerate input
    """
    principal = to_decimal(principal)
    annual_rate = to_decimal(annual_rate)
    days = to_decimal(days)
    if principal <= 0 or annual_rate <= 0 or days <= 0:
        return ZERO

    return quantize_money(principal * annual_rate * year_fraction(days, convention))


def compound_amount(principal: Number, annual_rate: Number, days: Number,
                    compounds_per_year: int = MONTHS_PER_YEAR,
                    convention: DayCountConvention = DEFAULT_CONVENTION) -> Decimal:
    """
    Final amount after compounding: P * (1 + r/n) ** (n * years)

    Returns the principal unchanged for degenerate input.
    """
    principal = to_decimal(principal)
    annual_rate = to_decimal(annual_rate)
    days = to_decimal(days)
    if principal <= 0 or annual_rate <= 0 or days <= 0 or compounds_per_year <= 0:
        return quantize_money(principal)

    periodic_rate = quantize_rate(annual_rate / compounds_per_year)
    periods = Decimal(compounds_per_year) * year_fraction(days, convention)
    factor = (Decimal(1) + periodic_rate) ** periods
    return quantize_money(principal * factor)


def compound_interest(principal: Number, annual_rate: Number, days: Number,
                      compounds_per_year: int = MONTHS_PER_YEAR,
                      convention: DayCountConvention = DEFAULT_CONVENTION) -> Decimal:
    """Interest earned by compounding, ``0.00`` for degenerate input"""
    principal = to_decimal(principal)
    final = compound_amount(principal, annual_rate, days, compounds_per_year, convention)
    interest = final - quantize_money(principal)
    return interest if interest > 0 else ZERO


def amortized_payment(principal: Number, annual_rate: Number, term_months: int) -> Decimal:
    """
    Level monthly payment from the annuity formula

    M = P * r * (1 + r) ** n / ((1 + r) ** n - 1), with r the monthly rate.
    Falls back to straight-line P / n when the rate is zero or negative.
    """
    principal = to_decimal(principal)
    if principal <= 0 or term_months <= 0:
        return ZERO

    rate = monthly_rate(annual_rate)
    if rate <= 0:
        return quantize_money(principal / term_months)

    factor = (Decimal(1) + rate) ** term_months
    return quantize_money(principal * rate * factor / (factor - 1))


def penalty_amount(overdue_amount: Number, penalty_rate: Number, days_overdue: int,
                   grace_period_days: int = 0,
                   convention: DayCountConvention = DEFAULT_CONVENTION) -> Decimal:
    """
    Penalty interest on an overdue amount

    Only days beyond the grace period are charged; within the grace period
    the penalty is zero.
    """
    chargeable_days = days_overdue - grace_period_days
    if chargeable_days <= 0:
        return ZERO
    return simple_interest(overdue_amount, penalty_rate, chargeable_days, convention)
