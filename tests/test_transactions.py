"""
Test suite for loan transactions

Tests transaction creation, reversal, replay copies and the persisted shape.
"""

import pytest
from decimal import Decimal
from datetime import date

from loan_ledger.currency import Money, Currency
from loan_ledger.exceptions import ValidationError
from loan_ledger.transactions import (
    LoanChargePaidBy, LoanTransaction, LoanTransactionType, TransactionToInstallmentMapping
)


def usd(value) -> Money:
    return Money(Decimal(str(value)), Currency.USD)


class TestTransactionTypes:
    """Test transaction type classification"""

    def test_repayment_types(self):
        assert LoanTransactionType.REPAYMENT.is_repayment_type
        assert LoanTransactionType.GOODWILL_CREDIT.is_repayment_type
        assert not LoanTransactionType.REFUND.is_repayment_type
        assert not LoanTransactionType.WAIVE_INTEREST.is_repayment_type

    def test_allocated_types(self):
        assert LoanTransactionType.REPAYMENT.is_allocated
        assert LoanTransactionType.CHARGEBACK.is_allocated
        assert not LoanTransactionType.DISBURSEMENT.is_allocated
        assert not LoanTransactionType.ACCRUAL.is_allocated


class TestLoanTransaction:
    """Test the transaction entity"""

    def setup_method(self):
        self.transaction = LoanTransaction.create(
            LoanTransactionType.REPAYMENT, date(2024, 2, 1), usd(100), external_id="ext-1"
        )

    def test_create(self):
        assert self.transaction.id
        assert self.transaction.currency == Currency.USD
        assert self.transaction.principal_portion.is_zero()
        assert self.transaction.portions_total.is_zero()
        assert not self.transaction.reversed

    def test_negative_amount_rejected(self):
        with pytest.raises(ValidationError, match="cannot be negative"):
            LoanTransaction.create(LoanTransactionType.REPAYMENT, date(2024, 2, 1), usd(-1))

    def test_accrual_portions_may_stay_unset(self):
        accrual = LoanTransaction.create(LoanTransactionType.ACCRUAL, date(2024, 2, 1), usd(5))

        assert accrual.principal_portion is None
        assert accrual.portion("principal_portion").is_zero()
        assert accrual.portions_total.is_zero()

    def test_update_components(self):
        self.transaction.update_components(usd(60), usd(30), usd(5), usd(5))
        self.transaction.update_components(usd(0), usd(0), usd(0), usd(0))

        assert self.transaction.principal_portion == usd(60)
        assert self.transaction.portions_total == usd(100)

    def test_reverse(self):
        self.transaction.reverse(date(2024, 2, 5))

        assert self.transaction.reversed
        assert not self.transaction.is_not_reversed
        assert self.transaction.reversed_on_date == date(2024, 2, 5)

        with pytest.raises(ValidationError, match="already reversed"):
            self.transaction.reverse(date(2024, 2, 6))

    def test_copy_for_replay(self):
        """Test a replay copy keeps identity data and drops portions"""
        self.transaction.loan_id = "loan-1"
        self.transaction.created_sequence = 7
        self.transaction.update_components(usd(90), usd(10), usd(0), usd(0))

        copy = self.transaction.copy_for_replay()

        assert copy.id != self.transaction.id
        assert copy.loan_id == "loan-1"
        assert copy.created_sequence == 7
        assert copy.external_id == "ext-1"
        assert copy.amount == usd(100)
        assert copy.portions_total.is_zero()
        assert not self.transaction.has_same_portions(copy)

    def test_charges_waiver_copy_keeps_recorded_portions(self):
        waiver = LoanTransaction.create(
            LoanTransactionType.WAIVE_CHARGES, date(2024, 2, 1), usd(8),
            fee_charges_portion=usd(3), penalty_charges_portion=usd(5)
        )
        waiver.loan_charges_paid.append(LoanChargePaidBy(waiver.id, None, usd(8), installment_number=2))

        copy = waiver.copy_for_replay()

        assert copy.fee_charges_portion == usd(3)
        assert copy.penalty_charges_portion == usd(5)
        assert copy.loan_charges_paid[0].transaction_id == copy.id
        assert copy.loan_charges_paid[0].installment_number == 2

        waiver.reset_derived_components()
        assert waiver.fee_charges_portion == usd(3)

    def test_copy_keeps_unmatched_installment_flag(self):
        payment = LoanTransaction.create(LoanTransactionType.CHARGE_PAYMENT, date(2024, 2, 1), usd(20))
        payment.loan_charges_paid.append(LoanChargePaidBy(payment.id, None, usd(20), installment_not_found=True))

        copy = payment.copy_for_replay()
        payment.adopt_allocation(copy)

        assert copy.loan_charges_paid[0].installment_not_found
        assert payment.loan_charges_paid[0].installment_not_found
        assert payment.loan_charges_paid[0].installment_number is None

    def test_adopt_allocation(self):
        copy = self.transaction.copy_for_replay()
        copy.update_components(usd(90), usd(10), usd(0), usd(0))
        copy.mappings.append(TransactionToInstallmentMapping(
            copy.id, 1, usd(90), usd(10), usd(0), usd(0)
        ))

        self.transaction.adopt_allocation(copy)

        assert self.transaction.has_same_portions(copy)
        assert self.transaction.mappings[0].transaction_id == self.transaction.id
        assert self.transaction.mappings[0].amount == usd(100)

    def test_to_dict(self):
        self.transaction.update_components(usd("33.3333335"), usd(0), usd(0), usd(0))

        data = self.transaction.to_dict()

        assert data["transaction_type"] == "repayment"
        assert data["transaction_date"] == "2024-02-01"
        assert data["amount"] == "100.000000"
        assert data["principal_portion"] == "33.333334"
        assert data["external_id"] == "ext-1"
        assert data["charges_paid"] == []
