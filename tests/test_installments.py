"""
Test suite for installment module

Tests component accounting, the derived outstanding balances and the
invariant guard that keeps due == paid + waived + written off + outstanding.
"""

import pytest
from decimal import Decimal
from datetime import date

from loan_ledger.currency import Money, Currency
from loan_ledger.exceptions import LedgerInvariantError
from loan_ledger.installments import (
    Component, LoanInstallment, LoanInstallmentCharge, PeriodFrequencyType,
    first_normal_installment_number, sum_component
)


def usd(value) -> Money:
    return Money(Decimal(str(value)), Currency.USD)


def make_installment(number=1, from_date=date(2024, 1, 1), due_date=date(2024, 2, 1), **kwargs) -> LoanInstallment:
    amounts = {
        "principal": usd(50),
        "interest_charged": usd(10),
        "fee_charges_charged": usd(3),
        "penalty_charges_charged": usd(5),
    }
    amounts.update(kwargs)
    return LoanInstallment(number, from_date, due_date, Currency.USD, **amounts)


class TestInstallmentBalances:
    """Test derived balances"""

    def test_unpaid_installment(self):
        """Test a fresh installment owes everything"""
        installment = make_installment()

        assert installment.total_due == usd(68)
        assert installment.total_outstanding == usd(68)
        assert installment.principal_outstanding == usd(50)
        assert installment.interest_outstanding == usd(10)
        assert installment.fee_charges_outstanding == usd(3)
        assert installment.penalty_charges_outstanding == usd(5)
        assert installment.total_paid.is_zero()
        assert not installment.obligations_met

    def test_missing_amounts_default_to_zero(self):
        installment = LoanInstallment(1, date(2024, 1, 1), date(2024, 2, 1), Currency.USD)
        assert installment.total_due.is_zero()
        assert installment.credited_principal.is_zero()

    def test_currency_must_match(self):
        """Test that installment fields must use the installment currency"""
        with pytest.raises(LedgerInvariantError, match="must be in USD"):
            LoanInstallment(
                1, date(2024, 1, 1), date(2024, 2, 1), Currency.USD,
                principal=Money(Decimal('50'), Currency.EUR)
            )

    def test_negative_due_rejected(self):
        with pytest.raises(LedgerInvariantError, match="negative"):
            make_installment(principal=usd(-1))


class TestInstallmentMutations:
    """Test paying, waiving, writing off and unpaying components"""

    def setup_method(self):
        self.installment = make_installment()
        self.on_date = date(2024, 1, 20)

    def test_pay_is_bounded_by_outstanding(self):
        """Test paying more than outstanding only applies the outstanding"""
        applied = self.installment.pay_component(Component.PRINCIPAL, self.on_date, usd(60))

        assert applied == usd(50)
        assert self.installment.principal_completed == usd(50)
        assert self.installment.principal_outstanding.is_zero()

    def test_obligations_met_when_fully_settled(self):
        """Test the installment is flagged once nothing is outstanding"""
        for component in Component:
            self.installment.pay_component(component, self.on_date, usd(100))

        assert self.installment.obligations_met
        assert self.installment.obligations_met_on_date == self.on_date

        self.installment.unpay_component(Component.FEE, self.on_date, usd(1))
        assert not self.installment.obligations_met
        assert self.installment.obligations_met_on_date is None

    def test_waive_and_write_off(self):
        """Test waivers and write-offs reduce outstanding"""
        waived = self.installment.waive_component(Component.INTEREST, self.on_date, usd(4))
        assert waived == usd(4)
        assert self.installment.interest_outstanding == usd(6)

        written_off = self.installment.write_off_component(Component.INTEREST, self.on_date)
        assert written_off == usd(6)
        assert self.installment.interest_written_off == usd(6)
        assert self.installment.interest_outstanding.is_zero()

        assert self.installment.write_off_component(Component.INTEREST, self.on_date).is_zero()

    def test_unpay_is_bounded_by_paid(self):
        """Test that unpaying cannot take back more than was paid"""
        self.installment.pay_component(Component.FEE, self.on_date, usd(2))

        unpaid = self.installment.unpay_component(Component.FEE, self.on_date, usd(5))

        assert unpaid == usd(2)
        assert self.installment.fee_charges_paid.is_zero()

    def test_zero_or_negative_amounts_apply_nothing(self):
        assert self.installment.pay_component(Component.PRINCIPAL, self.on_date, usd(0)).is_zero()
        assert self.installment.pay_component(Component.PRINCIPAL, self.on_date, usd(-5)).is_zero()
        assert self.installment.principal_completed.is_zero()

    def test_invariant_guard_restores_previous_value(self):
        """Test that a charge reduction below the paid amount fails loudly"""
        self.installment.pay_component(Component.FEE, self.on_date, usd(3))

        with pytest.raises(LedgerInvariantError, match="exceed amount due"):
            self.installment.update_charge_portions(usd(1), usd(5))

        assert self.installment.fee_charges_charged == usd(3)

    def test_update_charge_portions(self):
        """Test replacing fee and penalty amounts charged"""
        self.installment.update_charge_portions(usd(7), usd(2))

        assert self.installment.fee_charges_charged == usd(7)
        assert self.installment.penalty_charges_charged == usd(2)


class TestCredits:
    """Test chargeback adjustments"""

    def test_add_credit_increases_due(self):
        installment = make_installment()
        installment.add_credit(Component.PRINCIPAL, usd(20))

        assert installment.principal == usd(70)
        assert installment.credited_principal == usd(20)
        assert installment.principal_outstanding == usd(70)

    def test_interest_cannot_be_credited(self):
        installment = make_installment()
        with pytest.raises(LedgerInvariantError, match="cannot be credited"):
            installment.add_credit(Component.INTEREST, usd(1))

    def test_credited_fee_survives_charge_refresh(self):
        """Test that credited fees stay on top of the charge amounts"""
        installment = make_installment()
        installment.add_credit(Component.FEE, usd(4))

        installment.update_charge_portions(usd(3), usd(5))

        assert installment.fee_charges_charged == usd(7)

    def test_reset_derived_components(self):
        """Test that reset clears settlements and credited adjustments"""
        installment = make_installment()
        installment.installment_charges.append(
            LoanInstallmentCharge(charge_id="c1", installment_number=1, amount=usd(3), amount_paid=usd(3))
        )
        installment.add_credit(Component.PRINCIPAL, usd(20))
        installment.pay_component(Component.PRINCIPAL, date(2024, 1, 10), usd(30))
        installment.waive_component(Component.INTEREST, date(2024, 1, 10), usd(10))

        installment.reset_derived_components()

        assert installment.principal == usd(50)
        assert installment.credited_principal.is_zero()
        assert installment.principal_completed.is_zero()
        assert installment.interest_waived.is_zero()
        assert installment.installment_charges[0].amount_paid.is_zero()
        assert installment.total_outstanding == usd(68)


class TestPeriods:
    """Test period membership"""

    def test_period_excludes_from_date(self):
        installment = make_installment(from_date=date(2024, 1, 1), due_date=date(2024, 2, 1))

        assert not installment.is_in_period(date(2024, 1, 1))
        assert installment.is_in_period(date(2024, 1, 2))
        assert installment.is_in_period(date(2024, 2, 1))
        assert not installment.is_in_period(date(2024, 2, 2))

    def test_first_installment_includes_from_date(self):
        installment = make_installment(from_date=date(2024, 1, 1), due_date=date(2024, 2, 1))
        assert installment.is_in_period(date(2024, 1, 1), is_first_installment=True)

    def test_first_normal_installment_skips_down_payment(self):
        down_payment = make_installment(number=1)
        down_payment.is_down_payment = True
        regular = make_installment(number=2)

        assert first_normal_installment_number([regular, down_payment]) == 2
        assert first_normal_installment_number([]) is None

    def test_sum_component(self):
        installments = [make_installment(number=1), make_installment(number=2)]
        assert sum_component(installments, Currency.USD, "principal") == usd(100)

    def test_periods_per_year(self):
        assert PeriodFrequencyType.MONTHS.periods_per_year == 12
        assert PeriodFrequencyType.WEEKS.periods_per_year == 52
        assert PeriodFrequencyType.DAYS.periods_per_year == 365
        assert PeriodFrequencyType.YEARS.periods_per_year == 1


class TestInstallmentCharge:
    """Test per-installment charge shares"""

    def test_share_settlement(self):
        row = LoanInstallmentCharge(charge_id="c1", installment_number=1, amount=usd(5))

        assert row.pay(usd(3)) == usd(3)
        assert row.waive(usd(5)) == usd(2)
        assert row.amount_outstanding.is_zero()
        assert row.unpay(usd(10)) == usd(3)
        assert row.write_off_outstanding() == usd(3)
        assert row.amount_outstanding.is_zero()

    def test_to_dict_uses_storage_scale(self):
        installment = make_installment(principal=Money(Decimal('10.1234567'), Currency.USD))
        data = installment.to_dict()
        assert data["principal"] == "10.123457"
        assert data["from_date"] == "2024-01-01"
