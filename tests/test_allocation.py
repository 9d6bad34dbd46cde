"""
Test suite for repayment allocation

Tests the waterfall order of each strategy, the kind-specific branches
(interest waiver, charges waiver, charge payment), refunds, chargebacks,
write-offs and conservation of the allocated amount.
"""

import pytest
from decimal import Decimal
from datetime import date

from loan_ledger.currency import Money, Currency
from loan_ledger.exceptions import StrategyNotFoundError
from loan_ledger.installments import Component, LoanInstallment
from loan_ledger.transactions import LoanChargePaidBy, LoanTransaction, LoanTransactionType
from loan_ledger.charges import ChargeCalculationType, ChargeTimeType, LoanCharge
from loan_ledger.allocation import (
    AllocationContext, LoanRepaymentScheduleTransactionProcessor, PaymentTiming,
    PortionChanges, RepaymentStrategy, classify_timing
)


def usd(value) -> Money:
    return Money(Decimal(str(value)), Currency.USD)


def make_schedule(count=2):
    """Monthly installments of principal 50, interest 10, fee 3, penalty 5"""
    installments = []
    for number in range(1, count + 1):
        installments.append(LoanInstallment(
            number,
            date(2024, number, 1),
            date(2024, number + 1, 1),
            Currency.USD,
            principal=usd(50),
            interest_charged=usd(10),
            fee_charges_charged=usd(3),
            penalty_charges_charged=usd(5)
        ))
    return installments


def repayment(amount, on_date=date(2024, 2, 1), transaction_type=LoanTransactionType.REPAYMENT, **kwargs):
    return LoanTransaction.create(transaction_type, on_date, usd(amount), **kwargs)


class TestStrategyRegistry:
    """Test the closed set of strategies"""

    def test_from_code(self):
        strategy = RepaymentStrategy.from_code("mifos-standard-strategy")
        assert strategy == RepaymentStrategy.PENALTY_FEE_INTEREST_PRINCIPAL
        assert strategy.display_name == "Penalties, Fees, Interest, Principal Order"

    def test_unknown_code(self):
        with pytest.raises(StrategyNotFoundError, match="not found"):
            LoanRepaymentScheduleTransactionProcessor.for_code("no-such-strategy")

    def test_position_insensitive_strategy_uses_one_hook(self):
        """Test that advance and late payments delegate to the on-time handler"""
        hooks = RepaymentStrategy.INTEREST_PRINCIPAL_PENALTY_FEE.hooks
        assert hooks.in_advance is hooks.on_time
        assert hooks.late is hooks.on_time

    def test_late_hook_differs_for_principal_first_strategy(self):
        hooks = RepaymentStrategy.PRINCIPAL_INTEREST_PENALTY_FEE.hooks
        assert hooks.late is not hooks.on_time
        assert hooks.for_timing(PaymentTiming.LATE) is hooks.late


class TestTiming:
    """Test temporal classification of transactions"""

    def setup_method(self):
        self.installment = make_schedule(1)[0]

    def test_classification(self):
        assert classify_timing(date(2023, 12, 15), self.installment) == PaymentTiming.IN_ADVANCE
        assert classify_timing(date(2024, 1, 15), self.installment) == PaymentTiming.ON_TIME
        assert classify_timing(date(2024, 2, 1), self.installment) == PaymentTiming.ON_TIME
        assert classify_timing(date(2024, 2, 2), self.installment) == PaymentTiming.LATE

    def test_first_installment_boundary(self):
        """Test the from date belongs to the first installment only"""
        assert classify_timing(date(2024, 1, 1), self.installment) == PaymentTiming.IN_ADVANCE
        assert classify_timing(date(2024, 1, 1), self.installment, True) == PaymentTiming.ON_TIME


class TestWaterfall:
    """Test ordinary repayment allocation"""

    def setup_method(self):
        self.processor = LoanRepaymentScheduleTransactionProcessor.for_code(
            "interest-principal-penalties-fees-order-strategy"
        )
        self.installments = make_schedule()

    def test_interest_principal_penalty_fee_order(self):
        """Test 40 against interest 10, principal 50, penalty 5, fee 3"""
        transaction = repayment(40)

        remainder = self.processor.allocate(transaction, self.installments[:1])

        assert remainder.is_zero()
        assert transaction.interest_portion == usd(10)
        assert transaction.principal_portion == usd(30)
        assert transaction.penalty_charges_portion.is_zero()
        assert transaction.fee_charges_portion.is_zero()
        assert len(transaction.mappings) == 1
        assert transaction.mappings[0].installment_number == 1
        assert transaction.mappings[0].amount == usd(40)

    def test_spills_into_next_installment(self):
        """Test installments are settled in due date order"""
        transaction = repayment(100)

        remainder = self.processor.allocate(transaction, list(reversed(self.installments)))

        assert remainder.is_zero()
        assert self.installments[0].obligations_met
        assert self.installments[1].interest_paid == usd(10)
        assert self.installments[1].principal_completed == usd(22)
        assert [m.installment_number for m in transaction.mappings] == [1, 2]

    def test_overpayment_remainder(self):
        transaction = repayment(200)

        remainder = self.processor.allocate(transaction, self.installments)

        assert remainder == usd(64)
        assert transaction.portions_total == usd(136)

    def test_conservation(self):
        """Test mapped amounts plus the remainder equal the transaction amount"""
        for amount in ("0.01", "33.333333", "68", "99.99", "150"):
            installments = make_schedule()
            transaction = repayment(amount)

            remainder = self.processor.allocate(transaction, installments)

            mapped = Money.total(Currency.USD, (m.amount for m in transaction.mappings))
            assert mapped + remainder == transaction.amount
            assert transaction.portions_total == mapped

    def test_zero_amount_is_noop(self):
        """Test a zero amount creates no mapping and changes nothing"""
        before = [installment.to_dict() for installment in self.installments]
        transaction = repayment(0)

        remainder = self.processor.allocate(transaction, self.installments)

        assert remainder.is_zero()
        assert transaction.mappings == []
        assert [installment.to_dict() for installment in self.installments] == before

    def test_non_allocated_type_is_untouched(self):
        transaction = LoanTransaction.create(LoanTransactionType.ACCRUAL, date(2024, 2, 1), usd(10))

        remainder = self.processor.allocate(transaction, self.installments)

        assert remainder == usd(10)
        assert transaction.mappings == []
        assert self.installments[0].total_paid.is_zero()

    def test_repayment_links_charges(self):
        """Test fee amounts paid on an installment are mirrored onto the charge"""
        charge = LoanCharge.create(
            "Service fee", Currency.USD, ChargeTimeType.SPECIFIED_DUE_DATE,
            ChargeCalculationType.FLAT, Decimal('3'), due_date=date(2024, 1, 15)
        )
        transaction = repayment(68)

        self.processor.allocate(transaction, self.installments, [charge])

        assert charge.amount_paid == usd(3)
        assert len(transaction.loan_charges_paid) == 1
        assert transaction.loan_charges_paid[0].charge is charge
        assert transaction.loan_charges_paid[0].installment_number == 1


class TestOtherStrategies:
    """Test the remaining strategy orders"""

    def test_penalty_fee_interest_principal(self):
        processor = LoanRepaymentScheduleTransactionProcessor.for_code("mifos-standard-strategy")
        transaction = repayment(40)

        processor.allocate(transaction, make_schedule(1))

        assert transaction.penalty_charges_portion == usd(5)
        assert transaction.fee_charges_portion == usd(3)
        assert transaction.interest_portion == usd(10)
        assert transaction.principal_portion == usd(22)

    def test_principal_first_on_time(self):
        processor = LoanRepaymentScheduleTransactionProcessor.for_code(
            "principal-interest-penalties-fees-order-strategy"
        )
        transaction = repayment(40, on_date=date(2024, 1, 20))

        processor.allocate(transaction, make_schedule(1))

        assert transaction.principal_portion == usd(40)
        assert transaction.interest_portion.is_zero()

    def test_principal_first_late_pays_interest_first(self):
        processor = LoanRepaymentScheduleTransactionProcessor.for_code(
            "principal-interest-penalties-fees-order-strategy"
        )
        transaction = repayment(40, on_date=date(2024, 3, 15))

        processor.allocate(transaction, make_schedule(1))

        assert transaction.interest_portion == usd(10)
        assert transaction.principal_portion == usd(30)


class TestWaivers:
    """Test interest and charge waivers"""

    def setup_method(self):
        self.processor = LoanRepaymentScheduleTransactionProcessor.for_code(
            "interest-principal-penalties-fees-order-strategy"
        )
        self.installments = make_schedule()

    def test_interest_waiver_touches_interest_only(self):
        transaction = repayment(15, transaction_type=LoanTransactionType.WAIVE_INTEREST)

        remainder = self.processor.allocate(transaction, self.installments)

        assert remainder.is_zero()
        assert self.installments[0].interest_waived == usd(10)
        assert self.installments[1].interest_waived == usd(5)
        assert transaction.interest_portion == usd(15)
        assert transaction.principal_portion.is_zero()
        assert self.installments[0].principal_completed.is_zero()

    def test_charges_waiver_is_bounded_by_recorded_portions(self):
        """Test a waiver recording penalty 2 and fee 1 waives exactly that"""
        installment = LoanInstallment(
            1, date(2024, 1, 1), date(2024, 2, 1), Currency.USD,
            principal=usd(50), fee_charges_charged=usd(10), penalty_charges_charged=usd(10)
        )
        transaction = repayment(
            100, transaction_type=LoanTransactionType.WAIVE_CHARGES,
            fee_charges_portion=usd(1), penalty_charges_portion=usd(2)
        )

        self.processor.allocate(transaction, [installment])

        assert installment.penalty_charges_waived == usd(2)
        assert installment.fee_charges_waived == usd(1)
        assert transaction.penalty_charges_portion == usd(2)
        assert transaction.fee_charges_portion == usd(1)
        assert installment.principal_completed.is_zero()

    def test_charges_waiver_limit_spans_installments(self):
        """Test the waiver limit is consumed across installments"""
        transaction = repayment(
            7, transaction_type=LoanTransactionType.WAIVE_CHARGES,
            fee_charges_portion=usd(0), penalty_charges_portion=usd(7)
        )

        self.processor.allocate(transaction, self.installments)

        assert self.installments[0].penalty_charges_waived == usd(5)
        assert self.installments[1].penalty_charges_waived == usd(2)
        assert transaction.penalty_charges_portion == usd(7)

    def test_charges_waiver_targets_linked_installment(self):
        charge = LoanCharge.create(
            "Late fee", Currency.USD, ChargeTimeType.SPECIFIED_DUE_DATE,
            ChargeCalculationType.FLAT, Decimal('3'), due_date=date(2024, 2, 15)
        )
        transaction = repayment(
            3, transaction_type=LoanTransactionType.WAIVE_CHARGES, fee_charges_portion=usd(3)
        )
        transaction.loan_charges_paid.append(LoanChargePaidBy(
            transaction_id=transaction.id, charge=charge, amount=usd(3), installment_number=2
        ))

        self.processor.allocate(transaction, self.installments, [charge])

        assert self.installments[0].fee_charges_waived.is_zero()
        assert self.installments[1].fee_charges_waived == usd(3)
        assert charge.amount_waived == usd(3)


class TestChargePayment:
    """Test charge payments"""

    def setup_method(self):
        self.processor = LoanRepaymentScheduleTransactionProcessor.for_code(
            "interest-principal-penalties-fees-order-strategy"
        )
        self.installments = make_schedule()

    def test_fee_payment_goes_to_fees_only(self):
        charge = LoanCharge.create(
            "Late fee", Currency.USD, ChargeTimeType.SPECIFIED_DUE_DATE,
            ChargeCalculationType.FLAT, Decimal('3'), due_date=date(2024, 2, 15)
        )
        transaction = repayment(10, transaction_type=LoanTransactionType.CHARGE_PAYMENT)
        transaction.loan_charges_paid.append(LoanChargePaidBy(
            transaction_id=transaction.id, charge=charge, amount=usd(10), installment_number=2
        ))

        remainder = self.processor.allocate(transaction, self.installments, [charge])

        assert remainder == usd(7)
        assert transaction.fee_charges_portion == usd(3)
        assert transaction.interest_portion.is_zero()
        assert self.installments[0].fee_charges_paid.is_zero()
        assert self.installments[1].fee_charges_paid == usd(3)
        assert charge.amount_paid == usd(3)

    def test_penalty_payment_goes_to_penalties_only(self):
        charge = LoanCharge.create(
            "Overdue penalty", Currency.USD, ChargeTimeType.SPECIFIED_DUE_DATE,
            ChargeCalculationType.FLAT, Decimal('5'), is_penalty=True, due_date=date(2024, 1, 20)
        )
        transaction = repayment(5, transaction_type=LoanTransactionType.CHARGE_PAYMENT)
        transaction.loan_charges_paid.append(LoanChargePaidBy(
            transaction_id=transaction.id, charge=charge, amount=usd(5)
        ))

        self.processor.allocate(transaction, self.installments, [charge], target_installment_numbers=[1])

        assert transaction.penalty_charges_portion == usd(5)
        assert transaction.fee_charges_portion.is_zero()
        assert self.installments[0].penalty_charges_paid == usd(5)
        assert charge.amount_paid == usd(5)

    def test_unmatched_payment_allocates_nothing(self):
        """Test a payment whose installment was never found stays unallocated"""
        transaction = repayment(20, transaction_type=LoanTransactionType.CHARGE_PAYMENT)
        transaction.loan_charges_paid.append(LoanChargePaidBy(
            transaction_id=transaction.id, charge=None, amount=usd(20), installment_not_found=True
        ))

        remainder = self.processor.allocate(transaction, self.installments, [])

        assert remainder == usd(20)
        assert transaction.portions_total.is_zero()
        assert transaction.mappings == []
        assert all(i.fee_charges_paid.is_zero() for i in self.installments)


class TestRefundChargebackWriteOff:
    """Test money moving back out and write-offs"""

    def setup_method(self):
        self.processor = LoanRepaymentScheduleTransactionProcessor.for_code(
            "interest-principal-penalties-fees-order-strategy"
        )
        self.installments = make_schedule()

    def test_refund_unwinds_fee_then_penalty(self):
        """Test a refund of 8 against a fully paid installment"""
        installment = self.installments[0]
        self.processor.allocate(repayment(68), [installment])
        refund = repayment(8, on_date=date(2024, 2, 5), transaction_type=LoanTransactionType.REFUND)

        remainder = self.processor.allocate(refund, [installment])

        assert remainder.is_zero()
        assert refund.fee_charges_portion == usd(3)
        assert refund.penalty_charges_portion == usd(5)
        assert refund.principal_portion.is_zero()
        assert refund.interest_portion.is_zero()
        assert installment.fee_charges_paid.is_zero()
        assert installment.penalty_charges_paid.is_zero()
        assert not installment.obligations_met

    def test_refund_starts_from_latest_installment(self):
        self.processor.allocate(repayment(100), self.installments)
        refund = repayment(20, on_date=date(2024, 2, 5), transaction_type=LoanTransactionType.REFUND)

        self.processor.allocate(refund, self.installments)

        # Installment 2 held interest 10 and principal 22; principal is unwound before interest
        assert self.installments[1].principal_completed == usd(2)
        assert self.installments[1].interest_paid == usd(10)
        assert self.installments[0].obligations_met
        assert [m.installment_number for m in refund.mappings] == [2]

    def test_refund_beyond_paid_leaves_remainder(self):
        self.processor.allocate(repayment(10), self.installments)
        refund = repayment(25, on_date=date(2024, 2, 5), transaction_type=LoanTransactionType.REFUND)

        remainder = self.processor.allocate(refund, self.installments)

        assert remainder == usd(15)

    def test_chargeback_credits_principal(self):
        chargeback = repayment(20, on_date=date(2024, 2, 15), transaction_type=LoanTransactionType.CHARGEBACK)

        remainder = self.processor.allocate(chargeback, self.installments)

        assert remainder.is_zero()
        assert self.installments[1].credited_principal == usd(20)
        assert self.installments[1].principal == usd(70)
        assert chargeback.principal_portion == usd(20)
        assert chargeback.mappings[0].installment_number == 2

    def test_write_off_clears_outstanding(self):
        self.processor.allocate(repayment(40), self.installments)
        write_off = repayment(96, on_date=date(2024, 2, 15), transaction_type=LoanTransactionType.WRITE_OFF)

        remainder = self.processor.allocate(write_off, self.installments)

        assert remainder.is_zero()
        assert all(installment.total_outstanding.is_zero() for installment in self.installments)
        assert write_off.principal_portion == usd(70)
        assert write_off.interest_portion == usd(10)
        assert write_off.fee_charges_portion == usd(6)
        assert write_off.penalty_charges_portion == usd(10)


class TestPortionChanges:
    """Test the per-installment change record"""

    def test_of_defaults_to_zero(self):
        changes = PortionChanges.of(Currency.USD, {Component.INTEREST: usd(4)})

        assert changes.get(Component.INTEREST) == usd(4)
        assert changes.principal.is_zero()
        assert changes.total == usd(4)

    def test_context_records_waiver_limits(self):
        transaction = repayment(
            3, transaction_type=LoanTransactionType.WAIVE_CHARGES,
            fee_charges_portion=usd(1), penalty_charges_portion=usd(2)
        )
        context = AllocationContext(transaction, [])

        assert context.fee_waiver_limit == usd(1)
        assert context.penalty_waiver_limit == usd(2)
        assert not context.is_penalty_payment
