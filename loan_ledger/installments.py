"""
Installment Module

One period of a loan's amortization schedule. Each financial component
(principal, interest, fee charges, penalty charges) tracks what is due and
how much of it was paid, waived or written off; the outstanding balance is
always derived so that due == paid + waived + written off + outstanding.
"""

from datetime import date
from dataclasses import dataclass, field
from typing import Dict, List, Optional
from enum import Enum

from .currency import Money, Currency
from .exceptions import LedgerInvariantError


class PeriodFrequencyType(Enum):
    """Unit of the loan term and of the repayment period"""
    DAYS = "days"
    WEEKS = "weeks"
    MONTHS = "months"
    YEARS = "years"

    @property
    def periods_per_year(self) -> int:
        return {"days": 365, "weeks": 52, "months": 12, "years": 1}[self.value]


class Component(Enum):
    """Financial components of an installment"""
    PRINCIPAL = "principal"
    INTEREST = "interest"
    FEE = "fee"
    PENALTY = "penalty"


_DUE_FIELDS = {
    Component.PRINCIPAL: "principal",
    Component.INTEREST: "interest_charged",
    Component.FEE: "fee_charges_charged",
    Component.PENALTY: "penalty_charges_charged",
}

_PAID_FIELDS = {
    Component.PRINCIPAL: "principal_completed",
    Component.INTEREST: "interest_paid",
    Component.FEE: "fee_charges_paid",
    Component.PENALTY: "penalty_charges_paid",
}

_WAIVED_FIELDS = {
    Component.PRINCIPAL: "principal_waived",
    Component.INTEREST: "interest_waived",
    Component.FEE: "fee_charges_waived",
    Component.PENALTY: "penalty_charges_waived",
}

_WRITTEN_OFF_FIELDS = {
    Component.PRINCIPAL: "principal_written_off",
    Component.INTEREST: "interest_written_off",
    Component.FEE: "fee_charges_written_off",
    Component.PENALTY: "penalty_charges_written_off",
}

# Chargeback adjustments; interest cannot be credited
_CREDITED_FIELDS = {
    Component.PRINCIPAL: "credited_principal",
    Component.FEE: "credited_fee",
    Component.PENALTY: "credited_penalty",
}

_MONEY_FIELDS = (
    list(_DUE_FIELDS.values()) + list(_PAID_FIELDS.values()) + list(_WAIVED_FIELDS.values())
    + list(_WRITTEN_OFF_FIELDS.values()) + list(_CREDITED_FIELDS.values())
)


@dataclass
class LoanInstallmentCharge:
    """Share of an instalment fee charge falling on one installment"""
    charge_id: str
    installment_number: int
    amount: Money
    amount_paid: Money = None
    amount_waived: Money = None
    amount_written_off: Money = None

    def __post_init__(self):
        zero_amount = Money.zero(self.amount.currency)
        if self.amount_paid is None:
            self.amount_paid = zero_amount
        if self.amount_waived is None:
            self.amount_waived = zero_amount
        if self.amount_written_off is None:
            self.amount_written_off = zero_amount

    @property
    def amount_outstanding(self) -> Money:
        return self.amount - self.amount_paid - self.amount_waived - self.amount_written_off

    def pay(self, amount: Money) -> Money:
        applied = self.amount_outstanding.min_of(amount)
        self.amount_paid = self.amount_paid + applied
        return applied

    def waive(self, amount: Money) -> Money:
        applied = self.amount_outstanding.min_of(amount)
        self.amount_waived = self.amount_waived + applied
        return applied

    def unpay(self, amount: Money) -> Money:
        applied = self.amount_paid.min_of(amount)
        self.amount_paid = self.amount_paid - applied
        return applied

    def write_off_outstanding(self) -> Money:
        outstanding = self.amount_outstanding
        self.amount_written_off = self.amount_written_off + outstanding
        return outstanding

    def reset_paid_amounts(self) -> None:
        zero_amount = Money.zero(self.amount.currency)
        self.amount_paid = zero_amount
        self.amount_waived = zero_amount
        self.amount_written_off = zero_amount


@dataclass
class LoanInstallment:
    """Single installment of the repayment schedule"""
    installment_number: int
    from_date: date
    due_date: date
    currency: Currency

    principal: Money = None
    principal_completed: Money = None
    principal_waived: Money = None
    principal_written_off: Money = None

    interest_charged: Money = None
    interest_paid: Money = None
    interest_waived: Money = None
    interest_written_off: Money = None

    fee_charges_charged: Money = None
    fee_charges_paid: Money = None
    fee_charges_waived: Money = None
    fee_charges_written_off: Money = None

    penalty_charges_charged: Money = None
    penalty_charges_paid: Money = None
    penalty_charges_waived: Money = None
    penalty_charges_written_off: Money = None

    credited_principal: Money = None
    credited_fee: Money = None
    credited_penalty: Money = None

    obligations_met: bool = False
    obligations_met_on_date: Optional[date] = None
    recalculated_interest_component: bool = False
    is_down_payment: bool = False
    is_additional: bool = False
    installment_charges: List[LoanInstallmentCharge] = field(default_factory=list)

    def __post_init__(self):
        zero_amount = Money.zero(self.currency)
        for name in _MONEY_FIELDS:
            value = getattr(self, name)
            if value is None:
                setattr(self, name, zero_amount)
            elif value.currency != self.currency:
                raise LedgerInvariantError(
                    f"Installment {self.installment_number} field {name} must be in {self.currency.code}"
                )
        for component in Component:
            self._validate(component)

    # Component accessors

    def due(self, component: Component) -> Money:
        return getattr(self, _DUE_FIELDS[component])

    def paid(self, component: Component) -> Money:
        return getattr(self, _PAID_FIELDS[component])

    def waived(self, component: Component) -> Money:
        return getattr(self, _WAIVED_FIELDS[component])

    def written_off(self, component: Component) -> Money:
        return getattr(self, _WRITTEN_OFF_FIELDS[component])

    def outstanding(self, component: Component) -> Money:
        return self.due(component) - self.paid(component) - self.waived(component) - self.written_off(component)

    @property
    def principal_outstanding(self) -> Money:
        return self.outstanding(Component.PRINCIPAL)

    @property
    def interest_outstanding(self) -> Money:
        return self.outstanding(Component.INTEREST)

    @property
    def fee_charges_outstanding(self) -> Money:
        return self.outstanding(Component.FEE)

    @property
    def penalty_charges_outstanding(self) -> Money:
        return self.outstanding(Component.PENALTY)

    @property
    def total_outstanding(self) -> Money:
        return Money.total(self.currency, (self.outstanding(c) for c in Component))

    @property
    def total_due(self) -> Money:
        """Principal, interest, fees and penalties due on this installment"""
        return Money.total(self.currency, (self.due(c) for c in Component))

    @property
    def total_paid(self) -> Money:
        return Money.total(self.currency, (self.paid(c) for c in Component))

    def is_in_period(self, transaction_date: date, is_first_installment: bool = False) -> bool:
        """Period is (from, due]; the first installment also includes its from date"""
        if is_first_installment:
            return self.from_date <= transaction_date <= self.due_date
        return self.from_date < transaction_date <= self.due_date

    def installment_charge_for(self, charge_id: str) -> Optional[LoanInstallmentCharge]:
        for installment_charge in self.installment_charges:
            if installment_charge.charge_id == charge_id:
                return installment_charge
        return None

    # Mutations

    def pay_component(self, component: Component, transaction_date: date, amount: Money) -> Money:
        """
        Pay towards a component, bounded by its outstanding balance

        Returns:
            The amount actually applied
        """
        applied = self._bounded(self.outstanding(component), amount)
        if applied.is_zero():
            return applied
        self._change(_PAID_FIELDS[component], component, applied)
        self._check_if_obligations_met(transaction_date)
        return applied

    def waive_component(self, component: Component, transaction_date: date, amount: Money) -> Money:
        """Waive part of a component, bounded by its outstanding balance"""
        applied = self._bounded(self.outstanding(component), amount)
        if applied.is_zero():
            return applied
        self._change(_WAIVED_FIELDS[component], component, applied)
        self._check_if_obligations_met(transaction_date)
        return applied

    def write_off_component(self, component: Component, transaction_date: date) -> Money:
        """Write off the full outstanding balance of a component"""
        outstanding = self.outstanding(component)
        if not outstanding.is_greater_than_zero():
            return Money.zero(self.currency)
        self._change(_WRITTEN_OFF_FIELDS[component], component, outstanding)
        self._check_if_obligations_met(transaction_date)
        return outstanding

    def unpay_component(self, component: Component, transaction_date: date, amount: Money) -> Money:
        """Take back a payment from a component, bounded by what was paid"""
        applied = self._bounded(self.paid(component), amount)
        if applied.is_zero():
            return applied
        self._change(_PAID_FIELDS[component], component, -applied)
        self._check_if_obligations_met(transaction_date)
        return applied

    def add_credit(self, component: Component, amount: Money) -> None:
        """Increase what is due on a component through a chargeback adjustment"""
        if component not in _CREDITED_FIELDS:
            raise LedgerInvariantError(f"Component {component.value} cannot be credited")
        credited_field = _CREDITED_FIELDS[component]
        setattr(self, credited_field, getattr(self, credited_field) + amount)
        self._change(_DUE_FIELDS[component], component, amount)
        self.obligations_met = False
        self.obligations_met_on_date = None

    def update_charge_portions(self, fee_charges: Money, penalty_charges: Money) -> None:
        """Replace the fee and penalty amounts charged on this installment"""
        self._replace(_DUE_FIELDS[Component.FEE], Component.FEE, fee_charges + self.credited_fee)
        self._replace(_DUE_FIELDS[Component.PENALTY], Component.PENALTY, penalty_charges + self.credited_penalty)
        if self.total_outstanding.is_greater_than_zero():
            self.obligations_met = False
            self.obligations_met_on_date = None

    def reset_derived_components(self) -> None:
        """
        Clear everything transactions applied to this installment

        Used before replaying history; credited adjustments come from
        chargebacks and are replayed too.
        """
        zero_amount = Money.zero(self.currency)
        for component, credited_field in _CREDITED_FIELDS.items():
            due_field = _DUE_FIELDS[component]
            setattr(self, due_field, getattr(self, due_field) - getattr(self, credited_field))
            setattr(self, credited_field, zero_amount)
        for fields in (_PAID_FIELDS, _WAIVED_FIELDS, _WRITTEN_OFF_FIELDS):
            for name in fields.values():
                setattr(self, name, zero_amount)
        for installment_charge in self.installment_charges:
            installment_charge.reset_paid_amounts()
        self.obligations_met = False
        self.obligations_met_on_date = None

    def _bounded(self, limit: Money, amount: Money) -> Money:
        if not amount.is_greater_than_zero() or not limit.is_greater_than_zero():
            return Money.zero(self.currency)
        return limit.min_of(amount)

    def _change(self, field_name: str, component: Component, delta: Money) -> None:
        self._replace(field_name, component, getattr(self, field_name) + delta)

    def _replace(self, field_name: str, component: Component, value: Money) -> None:
        previous = getattr(self, field_name)
        setattr(self, field_name, value)
        try:
            self._validate(component)
        except LedgerInvariantError:
            setattr(self, field_name, previous)
            raise

    def _validate(self, component: Component) -> None:
        for name in (_DUE_FIELDS[component], _PAID_FIELDS[component],
                     _WAIVED_FIELDS[component], _WRITTEN_OFF_FIELDS[component]):
            if getattr(self, name).is_negative():
                raise LedgerInvariantError(
                    f"Installment {self.installment_number}: {name} would become negative"
                )
        if self.outstanding(component).is_negative():
            raise LedgerInvariantError(
                f"Installment {self.installment_number}: {component.value} settled amounts exceed amount due"
            )

    def _check_if_obligations_met(self, transaction_date: date) -> None:
        self.obligations_met = self.total_outstanding.is_zero()
        self.obligations_met_on_date = transaction_date if self.obligations_met else None

    def to_dict(self) -> Dict[str, object]:
        """Convert to the persisted shape; amounts rounded to the storage scale"""
        result: Dict[str, object] = {
            "installment_number": self.installment_number,
            "from_date": self.from_date.isoformat(),
            "due_date": self.due_date.isoformat(),
            "currency": self.currency.code,
            "obligations_met": self.obligations_met,
            "obligations_met_on_date": self.obligations_met_on_date.isoformat() if self.obligations_met_on_date else None,
            "recalculated_interest_component": self.recalculated_interest_component,
        }
        for name in _MONEY_FIELDS:
            result[name] = str(getattr(self, name).to_storage())
        return result


def first_normal_installment_number(installments: List[LoanInstallment]) -> Optional[int]:
    """Number of the first installment that is not a down payment or an additional one"""
    for installment in sorted(installments, key=lambda i: i.installment_number):
        if not installment.is_down_payment and not installment.is_additional:
            return installment.installment_number
    return None


def sum_component(installments: List[LoanInstallment], currency: Currency, attribute: str) -> Money:
    """Sum one Money attribute across installments"""
    return Money.total(currency, (getattr(installment, attribute) for installment in installments))
