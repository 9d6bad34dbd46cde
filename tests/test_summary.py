"""
Test suite for loan summary

Tests that the summary is a full recomputation from installments and
charges and that the aggregate totals agree with their components.
"""

from decimal import Decimal
from datetime import date

from loan_ledger.currency import Money, Currency
from loan_ledger.installments import Component, LoanInstallment
from loan_ledger.charges import ChargeCalculationType, ChargeTimeType, LoanCharge
from loan_ledger.summary import LoanSummary


def usd(value) -> Money:
    return Money(Decimal(str(value)), Currency.USD)


def make_installments():
    return [
        LoanInstallment(
            number, date(2024, number, 1), date(2024, number + 1, 1), Currency.USD,
            principal=usd(500), interest_charged=usd(20),
            fee_charges_charged=usd(5), penalty_charges_charged=usd(2)
        )
        for number in (1, 2)
    ]


class TestSummaryComputation:
    """Test summary totals"""

    def setup_method(self):
        self.installments = make_installments()
        self.summary = LoanSummary(Currency.USD)
        self.zero = Money.zero(Currency.USD)

    def update(self, charges=None):
        self.summary.update_total_fee_charges_due_at_disbursement(charges or [])
        self.summary.update_summary(
            Currency.USD, usd(1000), self.installments, charges or [], self.zero, self.zero
        )

    def test_fresh_loan(self):
        self.update()

        assert self.summary.total_principal == usd(1000)
        assert self.summary.total_interest_charged == usd(40)
        assert self.summary.total_fee_charges_charged == usd(10)
        assert self.summary.total_penalty_charges_charged == usd(4)
        assert self.summary.total_expected_repayment == usd(1054)
        assert self.summary.total_expected_cost_of_loan == usd(54)
        assert self.summary.total_outstanding == usd(1054)
        assert not self.summary.is_repaid_in_full()

    def test_outstanding_is_sum_of_components(self):
        """Test total outstanding equals the four component outstandings"""
        on_date = date(2024, 1, 20)
        first = self.installments[0]
        first.pay_component(Component.INTEREST, on_date, usd(20))
        first.pay_component(Component.PRINCIPAL, on_date, usd(123.45))
        first.waive_component(Component.PENALTY, on_date, usd(2))
        self.installments[1].write_off_component(Component.FEE, on_date)

        self.update()

        components = (
            self.summary.total_principal_outstanding + self.summary.total_interest_outstanding
            + self.summary.total_fee_charges_outstanding + self.summary.total_penalty_charges_outstanding
        )
        assert self.summary.total_outstanding == components
        assert self.summary.total_outstanding == Money.total(
            Currency.USD, (i.total_outstanding for i in self.installments)
        )
        assert self.summary.total_repayment == usd(143.45)
        assert self.summary.total_cost_of_loan == usd(20)
        assert self.summary.total_written_off == usd(5)

    def test_repaid_in_full(self):
        on_date = date(2024, 2, 1)
        for installment in self.installments:
            for component in Component:
                installment.pay_component(component, on_date, usd(1000))

        self.update()

        assert self.summary.is_repaid_in_full()
        assert self.summary.total_repayment == usd(1054)

    def test_disbursement_charges(self):
        """Test fees due and collected at disbursement are a separate bucket"""
        charge = LoanCharge.create("Processing fee", Currency.USD, ChargeTimeType.DISBURSEMENT,
                                   ChargeCalculationType.FLAT, Decimal('30'))
        charge.pay(usd(30))

        self.update([charge])

        assert self.summary.total_fee_charges_due_at_disbursement == usd(30)
        assert self.summary.total_fee_charges_charged == usd(40)
        assert self.summary.total_fee_charges_repaid == usd(30)
        assert self.summary.total_fee_charges_outstanding == usd(10)

    def test_fee_waivers_come_from_charges(self):
        charge = LoanCharge.create("Late fee", Currency.USD, ChargeTimeType.SPECIFIED_DUE_DATE,
                                   ChargeCalculationType.FLAT, Decimal('5'), due_date=date(2024, 1, 15))
        charge.waive(usd(5))
        self.installments[0].waive_component(Component.FEE, date(2024, 1, 20), usd(5))

        self.update([charge])

        assert self.summary.total_fee_charges_waived == usd(5)
        assert self.summary.total_waived == usd(5)

    def test_adjustments_from_chargebacks(self):
        self.installments[1].add_credit(Component.PRINCIPAL, usd(75))

        self.update()

        assert self.summary.total_principal_adjustments == usd(75)
        assert self.summary.total_principal_outstanding == usd(1075)

    def test_capitalized_income(self):
        self.summary.update_summary(
            Currency.USD, usd(1000), self.installments, [], usd(50), usd(5)
        )

        assert self.summary.total_principal == usd(1050)
        assert self.summary.total_capitalized_income_adjustment == usd(5)

    def test_recomputation_is_idempotent(self):
        self.update()
        first = self.summary.to_storage_dict()

        self.update()

        assert self.summary.to_storage_dict() == first


class TestSummaryFields:
    """Test field maintenance helpers"""

    def test_zero_fields_keeps_disbursement_fees(self):
        summary = LoanSummary(Currency.USD)
        summary.total_fee_charges_due_at_disbursement = usd(30)
        summary.total_outstanding = usd(500)

        summary.zero_fields()

        assert summary.total_fee_charges_due_at_disbursement == usd(30)
        assert summary.total_outstanding.is_zero()

    def test_storage_dict(self):
        summary = LoanSummary(Currency.USD, total_outstanding=Money(Decimal('1.0000005'), Currency.USD))

        data = summary.to_storage_dict()

        assert data["total_outstanding"] == Decimal('1.000001')
        assert "currency" not in data
