"""
Loan Summary Module

Account-level totals derived from the installment set and the charge set.
The summary is always recomputed in full; it is never patched incrementally.
"""

from dataclasses import dataclass, fields
from decimal import Decimal
from typing import Dict, Optional, Sequence, TYPE_CHECKING

from .currency import Money, Currency, quantize_storage
from .installments import LoanInstallment, sum_component

if TYPE_CHECKING:
    from .charges import LoanCharge


@dataclass
class LoanSummary:
    """Derived totals of a loan"""
    currency: Currency

    total_principal_disbursed: Money = None
    total_capitalized_income: Money = None
    total_capitalized_income_adjustment: Money = None
    total_principal: Money = None
    total_principal_adjustments: Money = None
    total_principal_repaid: Money = None
    total_principal_written_off: Money = None
    total_principal_outstanding: Money = None

    total_interest_charged: Money = None
    total_interest_repaid: Money = None
    total_interest_waived: Money = None
    total_interest_written_off: Money = None
    total_interest_outstanding: Money = None

    total_fee_charges_charged: Money = None
    total_fee_charges_due_at_disbursement: Money = None
    total_fee_adjustments: Money = None
    total_fee_charges_repaid: Money = None
    total_fee_charges_waived: Money = None
    total_fee_charges_written_off: Money = None
    total_fee_charges_outstanding: Money = None

    total_penalty_charges_charged: Money = None
    total_penalty_adjustments: Money = None
    total_penalty_charges_repaid: Money = None
    total_penalty_charges_waived: Money = None
    total_penalty_charges_written_off: Money = None
    total_penalty_charges_outstanding: Money = None

    total_expected_repayment: Money = None
    total_repayment: Money = None
    total_expected_cost_of_loan: Money = None
    total_cost_of_loan: Money = None
    total_waived: Money = None
    total_written_off: Money = None
    total_outstanding: Money = None

    def __post_init__(self):
        zero_amount = Money.zero(self.currency)
        for name in self._money_fields():
            if getattr(self, name) is None:
                setattr(self, name, zero_amount)

    @classmethod
    def _money_fields(cls):
        return [f.name for f in fields(cls) if f.name != "currency"]

    def zero_fields(self) -> None:
        """Reset every derived total; fees due at disbursement are kept"""
        zero_amount = Money.zero(self.currency)
        for name in self._money_fields():
            if name != "total_fee_charges_due_at_disbursement":
                setattr(self, name, zero_amount)

    def update_total_fee_charges_due_at_disbursement(self, charges: Sequence['LoanCharge']) -> None:
        self.total_fee_charges_due_at_disbursement = Money.total(self.currency, (
            charge.amount for charge in charges
            if charge.active and charge.is_due_at_disbursement and not charge.is_penalty
        ))

    def update_summary(
        self,
        currency: Currency,
        principal: Money,
        installments: Sequence[LoanInstallment],
        charges: Optional[Sequence['LoanCharge']],
        capitalized_income: Money,
        capitalized_income_adjustment: Money
    ) -> None:
        """
        Recompute every total from the schedule and the charges

        Aggregates are sums of the component totals computed earlier in the
        same call, so total outstanding always equals the sum of the four
        component outstandings.
        """
        self.total_principal_disbursed = principal
        self.total_capitalized_income = capitalized_income
        self.total_capitalized_income_adjustment = capitalized_income_adjustment
        self.total_principal = principal + capitalized_income

        self.total_principal_adjustments = sum_component(installments, currency, "credited_principal")
        self.total_fee_adjustments = sum_component(installments, currency, "credited_fee")
        self.total_penalty_adjustments = sum_component(installments, currency, "credited_penalty")

        self.total_principal_repaid = sum_component(installments, currency, "principal_completed")
        self.total_principal_written_off = sum_component(installments, currency, "principal_written_off")
        self.total_principal_outstanding = (
            self.total_principal + self.total_principal_adjustments
            - self.total_principal_repaid - self.total_principal_written_off
        )

        self.total_interest_charged = sum_component(installments, currency, "interest_charged")
        self.total_interest_repaid = sum_component(installments, currency, "interest_paid")
        self.total_interest_waived = sum_component(installments, currency, "interest_waived")
        self.total_interest_written_off = sum_component(installments, currency, "interest_written_off")
        self.total_interest_outstanding = (
            self.total_interest_charged - self.total_interest_repaid
            - self.total_interest_waived - self.total_interest_written_off
        )

        self.total_fee_charges_charged = (
            sum_component(installments, currency, "fee_charges_charged")
            + self.total_fee_charges_due_at_disbursement
        )
        # Charges collected at disbursement are not installment components
        repaid_at_disbursement = Money.total(currency, (
            charge.amount_paid for charge in (charges or [])
            if charge.is_due_at_disbursement and not charge.is_penalty
        ))
        self.total_fee_charges_repaid = (
            sum_component(installments, currency, "fee_charges_paid") + repaid_at_disbursement
        )
        if charges is not None:
            self.total_fee_charges_waived = Money.total(currency, (
                charge.amount_waived for charge in charges
                if charge.active and not charge.is_penalty
            ))
        else:
            self.total_fee_charges_waived = Money.zero(currency)
        self.total_fee_charges_written_off = sum_component(installments, currency, "fee_charges_written_off")
        self.total_fee_charges_outstanding = (
            self.total_fee_charges_charged - self.total_fee_charges_repaid
            - self.total_fee_charges_waived - self.total_fee_charges_written_off
        )

        self.total_penalty_charges_charged = sum_component(installments, currency, "penalty_charges_charged")
        self.total_penalty_charges_repaid = sum_component(installments, currency, "penalty_charges_paid")
        self.total_penalty_charges_waived = sum_component(installments, currency, "penalty_charges_waived")
        self.total_penalty_charges_written_off = sum_component(installments, currency, "penalty_charges_written_off")
        self.total_penalty_charges_outstanding = (
            self.total_penalty_charges_charged - self.total_penalty_charges_repaid
            - self.total_penalty_charges_waived - self.total_penalty_charges_written_off
        )

        self.total_expected_repayment = (
            self.total_principal + self.total_interest_charged
            + self.total_fee_charges_charged + self.total_penalty_charges_charged
        )
        self.total_repayment = (
            self.total_principal_repaid + self.total_interest_repaid
            + self.total_fee_charges_repaid + self.total_penalty_charges_repaid
        )
        self.total_expected_cost_of_loan = (
            self.total_interest_charged + self.total_fee_charges_charged + self.total_penalty_charges_charged
        )
        self.total_cost_of_loan = (
            self.total_interest_repaid + self.total_fee_charges_repaid + self.total_penalty_charges_repaid
        )
        self.total_waived = (
            self.total_interest_waived + self.total_fee_charges_waived + self.total_penalty_charges_waived
        )
        self.total_written_off = (
            self.total_principal_written_off + self.total_interest_written_off
            + self.total_fee_charges_written_off + self.total_penalty_charges_written_off
        )
        self.total_outstanding = (
            self.total_principal_outstanding + self.total_interest_outstanding
            + self.total_fee_charges_outstanding + self.total_penalty_charges_outstanding
        )

    def is_repaid_in_full(self) -> bool:
        return self.total_outstanding.is_zero()

    def to_storage_dict(self) -> Dict[str, Decimal]:
        """Totals rounded to the storage scale"""
        return {name: quantize_storage(getattr(self, name).amount) for name in self._money_fields()}
