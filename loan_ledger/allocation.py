"""
Repayment Allocation Module

Distributes a transaction's amount across the financial components of each
installment. The strategies form a closed set: each member of
RepaymentStrategy carries a record of plain hook functions, and the single
LoanRepaymentScheduleTransactionProcessor skeleton owns ordering, temporal
classification, charge bookkeeping and mapping creation.
"""

from datetime import date
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Sequence, TYPE_CHECKING
from enum import Enum

from .currency import Money, Currency
from .exceptions import StrategyNotFoundError
from .installments import Component, LoanInstallment, first_normal_installment_number
from .transactions import LoanChargePaidBy, LoanTransaction, LoanTransactionType, TransactionToInstallmentMapping
from .logging_config import get_logger, log_action

if TYPE_CHECKING:
    from .charges import LoanCharge


logger = get_logger("loan_ledger.allocation")


class PaymentTiming(Enum):
    """Position of a transaction date relative to an installment period"""
    IN_ADVANCE = "in_advance"
    ON_TIME = "on_time"
    LATE = "late"


@dataclass(frozen=True)
class PortionChanges:
    """Amounts applied to each component of one installment"""
    principal: Money
    interest: Money
    fee_charges: Money
    penalty_charges: Money

    @classmethod
    def of(cls, currency: Currency, amounts: Optional[Dict[Component, Money]] = None) -> 'PortionChanges':
        amounts = amounts or {}
        zero_amount = Money.zero(currency)
        return cls(
            principal=amounts.get(Component.PRINCIPAL, zero_amount),
            interest=amounts.get(Component.INTEREST, zero_amount),
            fee_charges=amounts.get(Component.FEE, zero_amount),
            penalty_charges=amounts.get(Component.PENALTY, zero_amount)
        )

    def get(self, component: Component) -> Money:
        return {
            Component.PRINCIPAL: self.principal,
            Component.INTEREST: self.interest,
            Component.FEE: self.fee_charges,
            Component.PENALTY: self.penalty_charges,
        }[component]

    @property
    def total(self) -> Money:
        return self.principal + self.interest + self.fee_charges + self.penalty_charges


class AllocationContext:
    """Per-transaction state shared by the hooks during one allocation run"""

    def __init__(self, transaction: LoanTransaction, charges: Sequence['LoanCharge']):
        self.transaction = transaction
        self.charges = list(charges)
        self.currency = transaction.currency
        self.is_penalty_payment = transaction.is_penalty_payment
        # A charges waiver may only waive what it recorded
        self.penalty_waiver_limit = transaction.portion("penalty_charges_portion")
        self.fee_waiver_limit = transaction.portion("fee_charges_portion")

    @property
    def transaction_date(self) -> date:
        return self.transaction.transaction_date


# Hook signature: (context, installment, remaining amount) -> changes applied
Hook = Callable[[AllocationContext, LoanInstallment, Money], PortionChanges]


@dataclass(frozen=True)
class StrategyHooks:
    """Plain functions a strategy supplies to the allocation skeleton"""
    on_time: Hook
    in_advance: Hook
    late: Hook
    refund: Hook

    def for_timing(self, timing: PaymentTiming) -> Hook:
        if timing == PaymentTiming.IN_ADVANCE:
            return self.in_advance
        if timing == PaymentTiming.LATE:
            return self.late
        return self.on_time


def _settle(context: AllocationContext, installment: LoanInstallment, remaining: Money,
            order: Sequence[Component]) -> PortionChanges:
    """Apply an amount to one installment, branching on the transaction kind first"""
    transaction = context.transaction
    transaction_date = context.transaction_date

    if transaction.is_charges_waiver:
        penalty = installment.waive_component(Component.PENALTY, transaction_date, context.penalty_waiver_limit)
        context.penalty_waiver_limit = context.penalty_waiver_limit - penalty
        fee = installment.waive_component(Component.FEE, transaction_date, context.fee_waiver_limit)
        context.fee_waiver_limit = context.fee_waiver_limit - fee
        return PortionChanges.of(context.currency, {Component.PENALTY: penalty, Component.FEE: fee})

    if transaction.is_interest_waiver:
        interest = installment.waive_component(Component.INTEREST, transaction_date, remaining)
        return PortionChanges.of(context.currency, {Component.INTEREST: interest})

    if transaction.is_charge_payment:
        component = Component.PENALTY if context.is_penalty_payment else Component.FEE
        paid = installment.pay_component(component, transaction_date, remaining)
        return PortionChanges.of(context.currency, {component: paid})

    applied: Dict[Component, Money] = {}
    for component in order:
        paid = installment.pay_component(component, transaction_date, remaining)
        applied[component] = paid
        remaining = remaining - paid
    return PortionChanges.of(context.currency, applied)


def _unwind(context: AllocationContext, installment: LoanInstallment, remaining: Money,
            order: Sequence[Component]) -> PortionChanges:
    """Take back paid amounts in the given order, bounded by what was paid"""
    applied: Dict[Component, Money] = {}
    for component in order:
        unpaid = installment.unpay_component(component, context.transaction_date, remaining)
        applied[component] = unpaid
        remaining = remaining - unpaid
    return PortionChanges.of(context.currency, applied)


def _paying(*order: Component) -> Hook:
    def hook(context: AllocationContext, installment: LoanInstallment, remaining: Money) -> PortionChanges:
        return _settle(context, installment, remaining, order)
    return hook


def _unwinding(*order: Component) -> Hook:
    def hook(context: AllocationContext, installment: LoanInstallment, remaining: Money) -> PortionChanges:
        return _unwind(context, installment, remaining, order)
    return hook


_interest_principal_penalty_fee = _paying(
    Component.INTEREST, Component.PRINCIPAL, Component.PENALTY, Component.FEE
)

_penalty_fee_interest_principal = _paying(
    Component.PENALTY, Component.FEE, Component.INTEREST, Component.PRINCIPAL
)

_principal_interest_penalty_fee = _paying(
    Component.PRINCIPAL, Component.INTEREST, Component.PENALTY, Component.FEE
)


class RepaymentStrategy(Enum):
    """Supported repayment allocation strategies"""

    # Position insensitive: advance and late payments are handled as on time
    INTEREST_PRINCIPAL_PENALTY_FEE = (
        "interest-principal-penalties-fees-order-strategy",
        "Interest, Principal, Penalties, Fees Order",
        StrategyHooks(
            on_time=_interest_principal_penalty_fee,
            in_advance=_interest_principal_penalty_fee,
            late=_interest_principal_penalty_fee,
            refund=_unwinding(Component.FEE, Component.PENALTY, Component.PRINCIPAL, Component.INTEREST)
        )
    )

    PENALTY_FEE_INTEREST_PRINCIPAL = (
        "mifos-standard-strategy",
        "Penalties, Fees, Interest, Principal Order",
        StrategyHooks(
            on_time=_penalty_fee_interest_principal,
            in_advance=_penalty_fee_interest_principal,
            late=_penalty_fee_interest_principal,
            refund=_unwinding(Component.PRINCIPAL, Component.INTEREST, Component.FEE, Component.PENALTY)
        )
    )

    # Late payments clear interest before principal
    PRINCIPAL_INTEREST_PENALTY_FEE = (
        "principal-interest-penalties-fees-order-strategy",
        "Principal, Interest, Penalties, Fees Order",
        StrategyHooks(
            on_time=_principal_interest_penalty_fee,
            in_advance=_principal_interest_penalty_fee,
            late=_interest_principal_penalty_fee,
            refund=_unwinding(Component.FEE, Component.PENALTY, Component.INTEREST, Component.PRINCIPAL)
        )
    )

    def __init__(self, code: str, display_name: str, hooks: StrategyHooks):
        self.code = code
        self.display_name = display_name
        self.hooks = hooks

    @classmethod
    def from_code(cls, code: str) -> 'RepaymentStrategy':
        for strategy in cls:
            if strategy.code == code:
                return strategy
        raise StrategyNotFoundError(f"Repayment strategy {code} not found")


def classify_timing(transaction_date: date, installment: LoanInstallment,
                    is_first_installment: bool = False) -> PaymentTiming:
    """Classify a transaction date against an installment period"""
    if transaction_date > installment.due_date:
        return PaymentTiming.LATE
    if installment.is_in_period(transaction_date, is_first_installment):
        return PaymentTiming.ON_TIME
    return PaymentTiming.IN_ADVANCE


class LoanRepaymentScheduleTransactionProcessor:
    """
    Shared allocation skeleton

    The processor never decides component order itself; that belongs to the
    strategy hooks. It sequences installments, stops once the amount is
    consumed, keeps charges in step with the installment components and
    writes the transaction portions and mappings.
    """

    def __init__(self, strategy: RepaymentStrategy):
        self.strategy = strategy

    @classmethod
    def for_code(cls, code: str) -> 'LoanRepaymentScheduleTransactionProcessor':
        return cls(RepaymentStrategy.from_code(code))

    def allocate(
        self,
        transaction: LoanTransaction,
        installments: Sequence[LoanInstallment],
        charges: Optional[Sequence['LoanCharge']] = None,
        target_installment_numbers: Optional[Iterable[int]] = None
    ) -> Money:
        """
        Allocate a transaction over the schedule

        Args:
            transaction: Transaction whose portions are written
            installments: Full repayment schedule
            charges: Charges kept in step with fee and penalty components
            target_installment_numbers: Restrict allocation to these installments;
                defaults to the installments recorded on the charge links of
                charge payments and charge waivers

        Returns:
            The part of the amount that could not be allocated
        """
        currency = transaction.currency
        if transaction.amount.is_zero() or not transaction.transaction_type.is_allocated:
            return transaction.amount

        ordered = sorted(installments, key=lambda i: (i.due_date, i.installment_number))
        context = AllocationContext(transaction, charges or [])

        if transaction.transaction_type == LoanTransactionType.WRITE_OFF:
            remainder = self._write_off(context, ordered)
        elif transaction.transaction_type == LoanTransactionType.CHARGEBACK:
            remainder = self._chargeback(context, ordered)
        elif transaction.is_refund:
            remainder = self._refund(context, ordered)
        else:
            remainder = self._forward(context, ordered, target_installment_numbers)

        log_action(
            logger, "debug",
            f"Allocated {transaction.transaction_type.value} with {self.strategy.code}",
            loan_id=transaction.loan_id,
            transaction_id=transaction.id,
            action="allocate",
            resource="transaction",
            extra={
                "amount": str(transaction.amount.amount),
                "remainder": str(remainder.amount),
                "mappings": len(transaction.mappings),
                "currency": currency.code,
            }
        )
        return remainder

    def _forward(self, context: AllocationContext, ordered: List[LoanInstallment],
                 target_installment_numbers: Optional[Iterable[int]]) -> Money:
        transaction = context.transaction
        if transaction.is_repayment_type:
            # Repayment charge links are derived from the allocation itself
            transaction.loan_charges_paid = []
        if transaction.is_charges_waiver:
            zero_amount = Money.zero(context.currency)
            transaction.fee_charges_portion = zero_amount
            transaction.penalty_charges_portion = zero_amount

        targets = self._targets(transaction, target_installment_numbers)
        first_number = first_normal_installment_number(ordered)
        remaining = transaction.amount

        for installment in ordered:
            if not remaining.is_greater_than_zero():
                break
            if targets is not None and installment.installment_number not in targets:
                continue

            timing = classify_timing(
                transaction.transaction_date, installment,
                installment.installment_number == first_number
            )
            hook = self.strategy.hooks.for_timing(timing)
            changes = hook(context, installment, remaining)
            if changes.total.is_zero():
                continue

            self._record(transaction, installment, changes)
            self._update_charges(context, installment, changes,
                                 installment.installment_number == first_number)
            remaining = remaining.minus_floor_zero(changes.total)

        return remaining

    def _refund(self, context: AllocationContext, ordered: List[LoanInstallment]) -> Money:
        transaction = context.transaction
        first_number = first_normal_installment_number(ordered)
        remaining = transaction.amount
        for installment in reversed(ordered):
            if not remaining.is_greater_than_zero():
                break
            changes = self.strategy.hooks.refund(context, installment, remaining)
            if changes.total.is_zero():
                continue
            self._record(transaction, installment, changes)
            self._unpay_charges(context, installment, changes,
                                installment.installment_number == first_number)
            remaining = remaining - changes.total
        return remaining

    def _write_off(self, context: AllocationContext, ordered: List[LoanInstallment]) -> Money:
        transaction = context.transaction
        for installment in ordered:
            written_off = {
                component: installment.write_off_component(component, transaction.transaction_date)
                for component in Component
            }
            changes = PortionChanges.of(context.currency, written_off)
            if changes.total.is_zero():
                continue
            self._record(transaction, installment, changes)
        for charge in context.charges:
            if charge.active:
                charge.write_off_outstanding()
        return transaction.amount.minus_floor_zero(transaction.portions_total)

    def _chargeback(self, context: AllocationContext, ordered: List[LoanInstallment]) -> Money:
        transaction = context.transaction
        if not ordered:
            return transaction.amount
        first_number = first_normal_installment_number(ordered)
        target = ordered[-1]
        for installment in ordered:
            if installment.is_in_period(transaction.transaction_date,
                                        installment.installment_number == first_number):
                target = installment
                break
        target.add_credit(Component.PRINCIPAL, transaction.amount)
        self._record(
            transaction, target,
            PortionChanges.of(context.currency, {Component.PRINCIPAL: transaction.amount})
        )
        return Money.zero(context.currency)

    @staticmethod
    def _targets(transaction: LoanTransaction,
                 target_installment_numbers: Optional[Iterable[int]]) -> Optional[set]:
        if target_installment_numbers is not None:
            return set(target_installment_numbers)
        if transaction.is_charge_payment or transaction.is_charges_waiver:
            if any(paid_by.installment_not_found for paid_by in transaction.loan_charges_paid):
                return set()
            numbers = {
                paid_by.installment_number for paid_by in transaction.loan_charges_paid
                if paid_by.installment_number is not None
            }
            return numbers or None
        return None

    @staticmethod
    def _record(transaction: LoanTransaction, installment: LoanInstallment, changes: PortionChanges) -> None:
        transaction.update_components(
            changes.principal, changes.interest, changes.fee_charges, changes.penalty_charges
        )
        transaction.mappings.append(TransactionToInstallmentMapping(
            transaction_id=transaction.id,
            installment_number=installment.installment_number,
            principal_portion=changes.principal,
            interest_portion=changes.interest,
            fee_charges_portion=changes.fee_charges,
            penalty_charges_portion=changes.penalty_charges
        ))

    def _update_charges(self, context: AllocationContext, installment: LoanInstallment,
                        changes: PortionChanges, is_first: bool) -> None:
        """Mirror fee and penalty amounts applied to an installment onto the charges"""
        transaction = context.transaction

        if transaction.is_charge_payment or transaction.is_charges_waiver:
            remaining = changes.fee_charges + changes.penalty_charges
            for paid_by in transaction.loan_charges_paid:
                if paid_by.charge is None or not remaining.is_greater_than_zero():
                    continue
                if transaction.is_charges_waiver:
                    applied = paid_by.charge.waive(remaining, installment.installment_number)
                else:
                    applied = paid_by.charge.pay(remaining, installment.installment_number)
                remaining = remaining - applied
            return

        if not transaction.is_repayment_type:
            return

        for is_penalty, amount in ((False, changes.fee_charges), (True, changes.penalty_charges)):
            remaining = amount
            for charge in self._charges_for(context, installment, is_penalty, is_first):
                if not remaining.is_greater_than_zero():
                    break
                applied = charge.pay(remaining, installment.installment_number)
                if applied.is_zero():
                    continue
                transaction.loan_charges_paid.append(LoanChargePaidBy(
                    transaction_id=transaction.id,
                    charge=charge,
                    amount=applied,
                    installment_number=installment.installment_number
                ))
                remaining = remaining - applied

    def _unpay_charges(self, context: AllocationContext, installment: LoanInstallment,
                       changes: PortionChanges, is_first: bool) -> None:
        for is_penalty, amount in ((False, changes.fee_charges), (True, changes.penalty_charges)):
            remaining = amount
            charges = self._charges_for(context, installment, is_penalty, is_first)
            for charge in reversed(charges):
                if not remaining.is_greater_than_zero():
                    break
                remaining = remaining - charge.unpay(remaining, installment.installment_number)

    @staticmethod
    def _charges_for(context: AllocationContext, installment: LoanInstallment,
                     is_penalty: bool, is_first: bool) -> List['LoanCharge']:
        matching = [
            charge for charge in context.charges
            if charge.active and charge.is_penalty == is_penalty
            and charge.applies_to_installment(installment, is_first)
        ]
        return sorted(matching, key=lambda c: (c.due_date or date.min, c.id))
