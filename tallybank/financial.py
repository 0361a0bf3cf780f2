"""
Financial Calculator Module

Pure functions for interest, amortization, maturity and date arithmetic.
Nothing here touches storage. Results are kept at full Decimal precision;
callers round with `money.round_money` when a value becomes a ledger amount.

Rates are annual percentages (5 means 5%). Loan interest is simple interest
on the principal over actual days (365-day year); GIC interest compounds
monthly.
"""

from decimal import Decimal
from datetime import date, timedelta
from typing import Optional, Tuple
import calendar

from .constants import (
    BI_WEEKLY_PERIOD_DAYS, DAYS_PER_YEAR, GIC_COMPOUNDING_PERIODS, MONTHS_PER_YEAR,
    PaymentFrequency,
)
from .money import ZERO, to_decimal


ONE = Decimal("1")
HUNDRED = Decimal("100")


def simple_interest(principal, annual_rate, days: int) -> Decimal:
    """principal × (rate / 100) × (days / 365)"""
    principal = to_decimal(principal)
    annual_rate = to_decimal(annual_rate)
    return principal * (annual_rate / HUNDRED) * (Decimal(days) / Decimal(DAYS_PER_YEAR))


def compound_interest(principal, annual_rate, periods_per_year: int, years) -> Decimal:
    """
    Interest earned by compounding, excluding the principal itself

    Args:
        principal: Amount invested
        annual_rate: Annual rate in percent
        periods_per_year: Compounding periods per year
        years: Investment length in years, may be fractional
    """
    principal = to_decimal(principal)
    rate_per_period = to_decimal(annual_rate) / HUNDRED / Decimal(periods_per_year)
    exponent = Decimal(periods_per_year) * to_decimal(years)
    return principal * (ONE + rate_per_period) ** exponent - principal


def monthly_amortized_payment(principal, annual_rate, term_months: int) -> Decimal:
    """
    Standard amortized monthly payment

    P × c(1+c)^n / ((1+c)^n − 1) with c the monthly rate. A zero rate
    spreads the principal evenly.
    """
    if term_months <= 0:
        raise ValueError("Term must be at least one month")
    principal = to_decimal(principal)
    monthly_rate = to_decimal(annual_rate) / HUNDRED / Decimal(MONTHS_PER_YEAR)

    if monthly_rate == ZERO:
        return principal / Decimal(term_months)

    factor = (ONE + monthly_rate) ** term_months
    return principal * (monthly_rate * factor) / (factor - ONE)


def payment_by_frequency(principal, annual_rate, term_months: int,
                         frequency: PaymentFrequency) -> Optional[Decimal]:
    """
    Scheduled payment for a loan's payment frequency

    Bi-weekly is the monthly payment spread over 26 payments a year,
    annual is twelve monthly payments. Loans settled at maturity have no
    periodic payment and return None.
    """
    if frequency == PaymentFrequency.AT_MATURITY:
        return None

    monthly = monthly_amortized_payment(principal, annual_rate, term_months)
    if frequency == PaymentFrequency.BI_WEEKLY:
        return monthly * Decimal(MONTHS_PER_YEAR) / Decimal(26)
    if frequency == PaymentFrequency.ANNUALLY:
        return monthly * Decimal(MONTHS_PER_YEAR)
    return monthly


def total_loan_interest(principal, annual_rate, term_months: int) -> Decimal:
    """Simple interest on the principal over the whole term"""
    years = Decimal(term_months) / Decimal(MONTHS_PER_YEAR)
    return to_decimal(principal) * (to_decimal(annual_rate) / HUNDRED) * years


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, clipping to the last day of shorter months"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def maturity_date(start_date: date, term_months: int) -> date:
    return add_months(start_date, term_months)


def has_reached_maturity(start_date: date, term_months: int,
                         as_of: Optional[date] = None) -> bool:
    as_of = as_of or date.today()
    return as_of >= maturity_date(start_date, term_months)


def days_between(start: date, end: date) -> int:
    """Whole days from start to end; negative when end precedes start"""
    return (end - start).days


def days_until_maturity(start_date: date, term_months: int,
                        as_of: Optional[date] = None) -> int:
    as_of = as_of or date.today()
    return days_between(as_of, maturity_date(start_date, term_months))


def accrued_interest(principal, annual_rate, start_date: date, as_of: Optional[date] = None,
                     maturity: Optional[date] = None) -> Decimal:
    """
    Simple interest accrued for every full day from start_date up to,
    but not including, as_of (interest "to yesterday")

    Accrual stops at maturity and is never negative.
    """
    as_of = as_of or date.today()
    end = min(as_of, maturity) if maturity else as_of
    days = max(0, days_between(start_date, end))
    return simple_interest(principal, annual_rate, days)


def gic_maturity_value(principal, annual_rate, term_months: int) -> Decimal:
    """
    Value of a GIC at maturity with monthly compounding

    principal × (1 + rate/100/12) ^ (12 × years), years = term_months / 12
    """
    principal = to_decimal(principal)
    monthly_rate = to_decimal(annual_rate) / HUNDRED / Decimal(GIC_COMPOUNDING_PERIODS)
    # 12 periods a year for term_months / 12 years is term_months periods
    return principal * (ONE + monthly_rate) ** term_months


def interest_due_period(start_date: date, term_months: int, frequency: PaymentFrequency,
                        as_of: date) -> Optional[Tuple[date, date]]:
    """
    Interest period ending on as_of, if as_of is an interest due date

    Bi-weekly loans are due every 14 days after the start date. Monthly and
    annual loans are due on the start day-of-month (clipped to month end)
    once at least one full period has passed. Loans settled at maturity are
    never due, and no due date falls after maturity.

    Returns:
        (period_start, due_date) or None when nothing is due on as_of
    """
    if frequency == PaymentFrequency.AT_MATURITY:
        return None
    if as_of <= start_date or as_of > maturity_date(start_date, term_months):
        return None

    if frequency == PaymentFrequency.BI_WEEKLY:
        elapsed = days_between(start_date, as_of)
        if elapsed % BI_WEEKLY_PERIOD_DAYS == 0:
            return as_of - timedelta(days=BI_WEEKLY_PERIOD_DAYS), as_of
        return None

    step = MONTHS_PER_YEAR if frequency == PaymentFrequency.ANNUALLY else 1
    months_elapsed = (as_of.year - start_date.year) * 12 + as_of.month - start_date.month
    if months_elapsed < step or months_elapsed % step != 0:
        return None
    if add_months(start_date, months_elapsed) != as_of:
        return None
    return add_months(start_date, months_elapsed - step), as_of
