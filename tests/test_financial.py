"""
Test suite for the financial calculator

Interest, amortization, maturity and due-date arithmetic.
"""

import pytest
from decimal import Decimal
from datetime import date

from tallybank.constants import PaymentFrequency
from tallybank.financial import (
    accrued_interest, add_months, compound_interest, days_between, days_until_maturity,
    gic_maturity_value, has_reached_maturity, interest_due_period, maturity_date,
    monthly_amortized_payment, payment_by_frequency, simple_interest, total_loan_interest,
)
from tallybank.money import round_money


class TestInterest:
    """Test interest formulas"""

    def test_simple_interest_full_year(self):
        assert simple_interest(Decimal("1000"), Decimal("5"), 365) == Decimal("50")

    def test_simple_interest_actual_days(self):
        """12% on 10,000 for 30 days"""
        assert round_money(simple_interest(Decimal("10000"), Decimal("12"), 30)) == Decimal("98.63")

    def test_simple_interest_rejects_float(self):
        with pytest.raises(ValueError):
            simple_interest(1000.0, Decimal("5"), 10)

    def test_compound_interest_returns_interest_only(self):
        interest = compound_interest(Decimal("1000"), Decimal("12"), 12, 1)
        assert round_money(interest) == Decimal("126.83")

    def test_total_loan_interest(self):
        assert total_loan_interest(Decimal("1200"), Decimal("10"), 6) == Decimal("60")

    def test_accrued_interest_excludes_today(self):
        """Ten full days from Jan 1 to Jan 11"""
        accrued = accrued_interest(Decimal("3650"), Decimal("10"), date(2024, 1, 1), date(2024, 1, 11))
        assert round_money(accrued) == Decimal("10.00")

    def test_accrued_interest_stops_at_maturity(self):
        accrued = accrued_interest(Decimal("3650"), Decimal("10"), date(2024, 1, 1),
                                   date(2024, 3, 1), maturity=date(2024, 1, 6))
        assert round_money(accrued) == Decimal("5.00")

    def test_accrued_interest_never_negative(self):
        accrued = accrued_interest(Decimal("3650"), Decimal("10"), date(2024, 1, 10), date(2024, 1, 1))
        assert accrued == Decimal("0")


class TestPayments:
    """Test amortized and per-frequency payments"""

    def test_monthly_payment_standard_formula(self):
        payment = monthly_amortized_payment(Decimal("10000"), Decimal("12"), 12)
        assert round_money(payment) == Decimal("888.49")

    def test_monthly_payment_zero_rate(self):
        assert monthly_amortized_payment(Decimal("10000"), Decimal("0"), 10) == Decimal("1000")

    def test_monthly_payment_requires_term(self):
        with pytest.raises(ValueError):
            monthly_amortized_payment(Decimal("10000"), Decimal("5"), 0)

    def test_payment_by_frequency(self):
        principal, rate = Decimal("10000"), Decimal("12")

        monthly = payment_by_frequency(principal, rate, 12, PaymentFrequency.MONTHLY)
        bi_weekly = payment_by_frequency(principal, rate, 12, PaymentFrequency.BI_WEEKLY)
        annually = payment_by_frequency(principal, rate, 12, PaymentFrequency.ANNUALLY)

        assert round_money(monthly) == Decimal("888.49")
        assert round_money(bi_weekly) == Decimal("410.07")
        assert round_money(annually) == Decimal("10661.85")
        assert payment_by_frequency(principal, rate, 12, PaymentFrequency.AT_MATURITY) is None


class TestDates:
    """Test calendar arithmetic and maturity"""

    def test_add_months_clips_to_month_end(self):
        assert add_months(date(2024, 1, 31), 1) == date(2024, 2, 29)
        assert add_months(date(2023, 1, 31), 1) == date(2023, 2, 28)
        assert add_months(date(2024, 11, 15), 3) == date(2025, 2, 15)

    def test_maturity(self):
        start = date(2024, 1, 1)

        assert maturity_date(start, 12) == date(2025, 1, 1)
        assert not has_reached_maturity(start, 12, date(2024, 12, 31))
        assert has_reached_maturity(start, 12, date(2025, 1, 1))
        assert days_until_maturity(start, 12, date(2024, 12, 22)) == 10

    def test_days_between(self):
        assert days_between(date(2024, 2, 1), date(2024, 3, 1)) == 29
        assert days_between(date(2024, 3, 1), date(2024, 2, 1)) == -29

    def test_gic_maturity_value_compounds_monthly(self):
        value = gic_maturity_value(Decimal("1000"), Decimal("5"), 12)
        assert round_money(value) == Decimal("1051.16")


class TestInterestDuePeriod:
    """Test when loan interest falls due"""

    def test_bi_weekly(self):
        start = date(2024, 1, 1)
        freq = PaymentFrequency.BI_WEEKLY

        assert interest_due_period(start, 12, freq, date(2024, 1, 15)) == (date(2024, 1, 1), date(2024, 1, 15))
        assert interest_due_period(start, 12, freq, date(2024, 1, 29)) == (date(2024, 1, 15), date(2024, 1, 29))
        assert interest_due_period(start, 12, freq, date(2024, 1, 14)) is None
        assert interest_due_period(start, 12, freq, start) is None

    def test_monthly_clips_month_end(self):
        start = date(2024, 1, 31)
        freq = PaymentFrequency.MONTHLY

        assert interest_due_period(start, 12, freq, date(2024, 2, 29)) == (date(2024, 1, 31), date(2024, 2, 29))
        assert interest_due_period(start, 12, freq, date(2024, 3, 31)) == (date(2024, 2, 29), date(2024, 3, 31))
        assert interest_due_period(start, 12, freq, date(2024, 3, 29)) is None

    def test_annually(self):
        start = date(2024, 3, 10)
        freq = PaymentFrequency.ANNUALLY

        assert interest_due_period(start, 24, freq, date(2025, 3, 10)) == (date(2024, 3, 10), date(2025, 3, 10))
        assert interest_due_period(start, 24, freq, date(2024, 4, 10)) is None

    def test_never_after_maturity(self):
        assert interest_due_period(date(2024, 1, 10), 2, PaymentFrequency.MONTHLY, date(2024, 4, 10)) is None

    def test_at_maturity_is_never_due(self):
        assert interest_due_period(date(2024, 1, 10), 2, PaymentFrequency.AT_MATURITY, date(2024, 2, 10)) is None
