"""
Loan Charge Module

Fees and penalties applied to a loan and the engine that keeps their amounts,
their per-installment shares and their payments consistent with the
repayment schedule.
"""

from datetime import date, timedelta
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Sequence, Set, TYPE_CHECKING
from enum import Enum
import uuid

from .currency import Money, Currency
from .exceptions import LedgerInvariantError, LoanChargeNotFoundError, ValidationError
from .installments import LoanInstallment, LoanInstallmentCharge, first_normal_installment_number
from .transactions import LoanChargePaidBy, LoanTransaction, LoanTransactionType
from .allocation import LoanRepaymentScheduleTransactionProcessor
from .lifecycle import DefaultLoanLifecycleStateMachine, LoanEvent
from .config import get_config
from .logging_config import get_logger, log_action

if TYPE_CHECKING:
    from .loans import Loan, DisbursementDetail


logger = get_logger("loan_ledger.charges")

HUNDRED = Decimal('100')


class ChargeTimeType(Enum):
    """When a charge becomes due"""
    DISBURSEMENT = "disbursement"
    TRANCHE_DISBURSEMENT = "tranche_disbursement"
    SPECIFIED_DUE_DATE = "specified_due_date"
    INSTALMENT_FEE = "instalment_fee"
    OVERDUE_INSTALLMENT = "overdue_installment"


class ChargeCalculationType(Enum):
    """How a charge amount is derived"""
    FLAT = "flat"
    PERCENT_OF_AMOUNT = "percent_of_amount"
    PERCENT_OF_AMOUNT_AND_INTEREST = "percent_of_amount_and_interest"
    PERCENT_OF_INTEREST = "percent_of_interest"
    PERCENT_OF_DISBURSEMENT_AMOUNT = "percent_of_disbursement_amount"

    @property
    def is_percentage_based(self) -> bool:
        return self != ChargeCalculationType.FLAT


@dataclass
class LoanCharge:
    """A fee or penalty attached to a loan"""
    id: str
    name: str
    currency: Currency
    charge_time_type: ChargeTimeType
    calculation_type: ChargeCalculationType
    amount_or_percentage: Decimal
    is_penalty: bool = False
    due_date: Optional[date] = None
    percentage: Optional[Decimal] = None
    amount_percentage_applied_to: Optional[Money] = None
    amount: Optional[Money] = None
    amount_paid: Optional[Money] = None
    amount_waived: Optional[Money] = None
    amount_written_off: Optional[Money] = None
    active: bool = True
    installment_charges: List[LoanInstallmentCharge] = field(default_factory=list)
    tranche_disbursement: Optional['DisbursementDetail'] = None
    overdue_installment_number: Optional[int] = None

    def __post_init__(self):
        if not isinstance(self.amount_or_percentage, Decimal):
            self.amount_or_percentage = Decimal(str(self.amount_or_percentage))
        if self.amount_or_percentage < 0:
            raise ValidationError(f"Charge {self.name} amount or percentage cannot be negative")

        if self.calculation_type.is_percentage_based and self.percentage is None:
            self.percentage = self.amount_or_percentage

        zero_amount = Money.zero(self.currency)
        if self.amount is None:
            if self.calculation_type == ChargeCalculationType.FLAT and not self.is_instalment_fee:
                self.amount = Money(self.amount_or_percentage, self.currency)
            else:
                self.amount = zero_amount
        if self.amount_paid is None:
            self.amount_paid = zero_amount
        if self.amount_waived is None:
            self.amount_waived = zero_amount
        if self.amount_written_off is None:
            self.amount_written_off = zero_amount

    @classmethod
    def create(
        cls,
        name: str,
        currency: Currency,
        charge_time_type: ChargeTimeType,
        calculation_type: ChargeCalculationType,
        amount_or_percentage: Decimal,
        is_penalty: bool = False,
        due_date: Optional[date] = None,
        **kwargs
    ) -> 'LoanCharge':
        """Create a new charge with a fresh id"""
        return cls(
            id=str(uuid.uuid4()),
            name=name,
            currency=currency,
            charge_time_type=charge_time_type,
            calculation_type=calculation_type,
            amount_or_percentage=amount_or_percentage,
            is_penalty=is_penalty,
            due_date=due_date,
            **kwargs
        )

    @property
    def amount_outstanding(self) -> Money:
        return self.amount - self.amount_paid - self.amount_waived - self.amount_written_off

    @property
    def is_instalment_fee(self) -> bool:
        return self.charge_time_type == ChargeTimeType.INSTALMENT_FEE

    @property
    def is_disbursement_charge(self) -> bool:
        return self.charge_time_type == ChargeTimeType.DISBURSEMENT

    @property
    def is_tranche_disbursement_charge(self) -> bool:
        return self.charge_time_type == ChargeTimeType.TRANCHE_DISBURSEMENT

    @property
    def is_due_at_disbursement(self) -> bool:
        return self.is_disbursement_charge or self.is_tranche_disbursement_charge

    @property
    def is_specified_due_date(self) -> bool:
        return self.charge_time_type == ChargeTimeType.SPECIFIED_DUE_DATE

    @property
    def is_overdue_installment_charge(self) -> bool:
        return self.charge_time_type == ChargeTimeType.OVERDUE_INSTALLMENT

    @property
    def is_paid(self) -> bool:
        return self.amount_outstanding.is_zero()

    def is_due_in_period(self, from_date: date, due_date: date, is_first_installment: bool) -> bool:
        """Whether the charge falls due within (from, due], or [from, due] for the first installment"""
        if self.due_date is None:
            return False
        if is_first_installment:
            return from_date <= self.due_date <= due_date
        return from_date < self.due_date <= due_date

    def applies_to_installment(self, installment: LoanInstallment, is_first_installment: bool) -> bool:
        if self.is_instalment_fee:
            return self.installment_charge(installment.installment_number) is not None
        if self.is_due_at_disbursement:
            return False
        return self.is_due_in_period(installment.from_date, installment.due_date, is_first_installment)

    def installment_charge(self, installment_number: int) -> Optional[LoanInstallmentCharge]:
        for installment_charge in self.installment_charges:
            if installment_charge.installment_number == installment_number:
                return installment_charge
        return None

    def amount_due_on(self, installment: LoanInstallment, is_first_installment: bool) -> Money:
        """Part of the charge amount that falls on an installment"""
        if self.is_instalment_fee:
            installment_charge = self.installment_charge(installment.installment_number)
            return installment_charge.amount if installment_charge else Money.zero(self.currency)
        if self.applies_to_installment(installment, is_first_installment):
            return self.amount
        return Money.zero(self.currency)

    # Settlement

    def pay(self, amount: Money, installment_number: Optional[int] = None) -> Money:
        """Pay towards the charge; returns the amount applied"""
        row = self._row(installment_number)
        if row is not None:
            applied = row.pay(amount)
        else:
            applied = self.amount_outstanding.min_of(amount)
        self.amount_paid = self.amount_paid + applied
        return applied

    def waive(self, amount: Money, installment_number: Optional[int] = None) -> Money:
        row = self._row(installment_number)
        if row is not None:
            applied = row.waive(amount)
        else:
            applied = self.amount_outstanding.min_of(amount)
        self.amount_waived = self.amount_waived + applied
        return applied

    def unpay(self, amount: Money, installment_number: Optional[int] = None) -> Money:
        row = self._row(installment_number)
        if row is not None:
            applied = row.unpay(amount)
        else:
            applied = self.amount_paid.min_of(amount)
        self.amount_paid = self.amount_paid - applied
        return applied

    def write_off_outstanding(self) -> Money:
        outstanding = self.amount_outstanding
        for installment_charge in self.installment_charges:
            installment_charge.write_off_outstanding()
        self.amount_written_off = self.amount_written_off + outstanding
        return outstanding

    def reset_paid_amounts(self) -> None:
        zero_amount = Money.zero(self.currency)
        self.amount_paid = zero_amount
        self.amount_waived = zero_amount
        self.amount_written_off = zero_amount
        for installment_charge in self.installment_charges:
            installment_charge.reset_paid_amounts()

    def _row(self, installment_number: Optional[int]) -> Optional[LoanInstallmentCharge]:
        if not self.is_instalment_fee or installment_number is None:
            return None
        return self.installment_charge(installment_number)

    # Amount maintenance

    def update_amount(self, amount_percentage_applied_to: Money) -> None:
        """Recompute the charge amount from its calculation base"""
        if self.calculation_type == ChargeCalculationType.FLAT:
            new_amount = Money(self.amount_or_percentage, self.currency)
        else:
            self.amount_percentage_applied_to = amount_percentage_applied_to
            new_amount = percentage_of(amount_percentage_applied_to, self.percentage)
        self._set_amount(new_amount)

    def set_installment_charges(self, rows: List[LoanInstallmentCharge]) -> None:
        """Replace the per-installment shares; the charge amount becomes their sum"""
        self.installment_charges = rows
        self._set_amount(Money.total(self.currency, (row.amount for row in rows)))

    def _set_amount(self, new_amount: Money) -> None:
        settled = self.amount_paid + self.amount_waived + self.amount_written_off
        if new_amount < settled:
            raise LedgerInvariantError(
                f"Charge {self.id} amount {new_amount.to_string()} is below settled {settled.to_string()}"
            )
        self.amount = new_amount

    def deactivate(self) -> None:
        """Logically delete the charge; the row is kept"""
        self.active = False

    def to_dict(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "name": self.name,
            "currency": self.currency.code,
            "charge_time_type": self.charge_time_type.value,
            "calculation_type": self.calculation_type.value,
            "amount_or_percentage": str(self.amount_or_percentage),
            "percentage": str(self.percentage) if self.percentage is not None else None,
            "amount_percentage_applied_to": (
                str(self.amount_percentage_applied_to.to_storage())
                if self.amount_percentage_applied_to is not None else None
            ),
            "amount": str(self.amount.to_storage()),
            "amount_paid": str(self.amount_paid.to_storage()),
            "amount_waived": str(self.amount_waived.to_storage()),
            "amount_written_off": str(self.amount_written_off.to_storage()),
            "amount_outstanding": str(self.amount_outstanding.to_storage()),
            "due_date": self.due_date.isoformat() if self.due_date else None,
            "is_penalty": self.is_penalty,
            "active": self.active,
        }


def percentage_of(base: Money, percentage: Decimal) -> Money:
    """Percentage of a base amount, rounded to the currency's minor unit"""
    raw = base * percentage / HUNDRED
    return Money(raw.to_currency_precision(), base.currency)


@dataclass
class ChargePaymentResult:
    """Outcome of a charge payment plus the ids snapshot taken before it"""
    transaction: LoanTransaction
    charge: Optional[LoanCharge]
    installment_number: Optional[int]
    existing_transaction_ids: Set[str]
    existing_reversed_transaction_ids: Set[str]


ProcessorFactory = Callable[[str], LoanRepaymentScheduleTransactionProcessor]


class ChargeEngine:
    """
    Computes charge amounts and drives charge payments

    Collaborators are injected: the allocation processor factory resolves
    the loan's repayment strategy and the lifecycle state machine is told
    about charge events.
    """

    def __init__(
        self,
        lifecycle: Optional[DefaultLoanLifecycleStateMachine] = None,
        processor_factory: Optional[ProcessorFactory] = None
    ):
        self.lifecycle = lifecycle or DefaultLoanLifecycleStateMachine()
        self.processor_factory = processor_factory or LoanRepaymentScheduleTransactionProcessor.for_code

    # Charge amounts

    def recalculate_all_charges(self, loan: 'Loan', penalty_wait_period: Optional[int] = None) -> None:
        """Recalculate every active charge and refresh installment fee and penalty amounts"""
        for charge in loan.charges:
            if charge.active:
                self.recalculate_loan_charge(loan, charge, penalty_wait_period)
        self.refresh_installment_charge_amounts(loan)

    def recalculate_loan_charge(self, loan: 'Loan', charge: LoanCharge,
                                penalty_wait_period: Optional[int] = None) -> None:
        """
        Recalculate one charge from the loan's current principal and interest

        Instalment fee rows of an active charge on a loan that is not yet
        disbursed are cleared and regenerated; installments added by an
        interest recalculation keep their rows.
        """
        if penalty_wait_period is None:
            penalty_wait_period = get_config().penalty_wait_period_days

        if charge.active and loan.status.is_pre_disbursement:
            self._clear_installment_charges(loan, charge)

        if charge.is_instalment_fee:
            self._regenerate_installment_charges(loan, charge)
        else:
            base = self.amount_percentage_applied_to(loan, charge, penalty_wait_period)
            charge.update_amount(base)

        log_action(
            logger, "debug", f"Recalculated charge {charge.name}",
            loan_id=loan.id,
            action="recalculate_charge",
            resource="loan_charge",
            extra={"charge_id": charge.id, "amount": str(charge.amount.amount)}
        )

    def amount_percentage_applied_to(self, loan: 'Loan', charge: LoanCharge,
                                     penalty_wait_period: int) -> Money:
        """Base amount a percentage charge is applied to"""
        zero_amount = Money.zero(loan.currency)
        calculation_type = charge.calculation_type

        if charge.is_overdue_installment_charge:
            return self._overdue_base(loan, charge, penalty_wait_period)

        if calculation_type == ChargeCalculationType.FLAT:
            return zero_amount

        if calculation_type == ChargeCalculationType.PERCENT_OF_AMOUNT:
            if loan.is_multi_disburse:
                if charge.is_disbursement_charge:
                    return loan.approved_principal
                if charge.is_tranche_disbursement_charge and charge.tranche_disbursement is not None:
                    return charge.tranche_disbursement.principal
                if charge.is_specified_due_date and charge.due_date is not None:
                    return loan.expected_disbursed_on_or_before(charge.due_date)
            return loan.principal

        if calculation_type == ChargeCalculationType.PERCENT_OF_AMOUNT_AND_INTEREST:
            return self._tranche_or_principal(loan, charge) + loan.total_interest

        if calculation_type == ChargeCalculationType.PERCENT_OF_INTEREST:
            return loan.total_interest

        return self._tranche_or_principal(loan, charge)

    @staticmethod
    def _tranche_or_principal(loan: 'Loan', charge: LoanCharge) -> Money:
        if charge.tranche_disbursement is not None:
            return charge.tranche_disbursement.principal
        return loan.principal

    @staticmethod
    def _overdue_base(loan: 'Loan', charge: LoanCharge, penalty_wait_period: int) -> Money:
        if charge.amount_percentage_applied_to is not None:
            return charge.amount_percentage_applied_to
        zero_amount = Money.zero(loan.currency)
        if charge.overdue_installment_number is None or charge.due_date is None:
            return zero_amount

        installment = loan.fetch_installment(charge.overdue_installment_number)
        if installment.due_date + timedelta(days=penalty_wait_period) >= charge.due_date:
            return zero_amount
        if charge.calculation_type == ChargeCalculationType.PERCENT_OF_INTEREST:
            return installment.interest_outstanding
        if charge.calculation_type == ChargeCalculationType.PERCENT_OF_AMOUNT_AND_INTEREST:
            return installment.principal_outstanding + installment.interest_outstanding
        return installment.principal_outstanding

    def _installment_share(self, charge: LoanCharge, installment: LoanInstallment) -> Money:
        calculation_type = charge.calculation_type
        if calculation_type == ChargeCalculationType.FLAT:
            return Money(charge.amount_or_percentage, charge.currency)
        if calculation_type == ChargeCalculationType.PERCENT_OF_INTEREST:
            base = installment.interest_charged
        elif calculation_type == ChargeCalculationType.PERCENT_OF_AMOUNT_AND_INTEREST:
            base = installment.principal + installment.interest_charged
        else:
            base = installment.principal
        return percentage_of(base, charge.percentage)

    def _regenerate_installment_charges(self, loan: 'Loan', charge: LoanCharge) -> None:
        rows: List[LoanInstallmentCharge] = []
        for installment in loan.installments:
            if installment.recalculated_interest_component or installment.is_down_payment:
                # Placeholder rows survive clearing and stay attached
                existing = installment.installment_charge_for(charge.id)
                if existing is not None:
                    rows.append(existing)
                continue
            share = self._installment_share(charge, installment)
            existing = installment.installment_charge_for(charge.id)
            if existing is not None:
                settled = existing.amount_paid + existing.amount_waived + existing.amount_written_off
                if share < settled:
                    raise LedgerInvariantError(
                        f"Installment {installment.installment_number} share of charge {charge.id} "
                        f"is below its settled amount"
                    )
                existing.amount = share
                rows.append(existing)
                continue
            row = LoanInstallmentCharge(
                charge_id=charge.id,
                installment_number=installment.installment_number,
                amount=share
            )
            installment.installment_charges.append(row)
            rows.append(row)
        charge.set_installment_charges(rows)

    @staticmethod
    def _clear_installment_charges(loan: 'Loan', charge: LoanCharge) -> None:
        if not charge.is_instalment_fee:
            return
        charge.installment_charges = [
            row for row in charge.installment_charges
            if loan.installment_is_recalculated_placeholder(row.installment_number)
        ]
        for installment in loan.installments:
            if installment.recalculated_interest_component:
                continue
            installment.installment_charges = [
                row for row in installment.installment_charges if row.charge_id != charge.id
            ]

    def refresh_installment_charge_amounts(self, loan: 'Loan') -> None:
        """Set each installment's fee and penalty amounts from the active charges"""
        first_number = first_normal_installment_number(loan.installments)
        for installment in loan.installments:
            is_first = installment.installment_number == first_number
            fees = Money.zero(loan.currency)
            penalties = Money.zero(loan.currency)
            for charge in loan.charges:
                if not charge.active:
                    continue
                share = charge.amount_due_on(installment, is_first)
                if charge.is_penalty:
                    penalties = penalties + share
                else:
                    fees = fees + share
            installment.update_charge_portions(fees, penalties)

    # Charge maintenance

    def add_loan_charge(self, loan: 'Loan', charge: LoanCharge) -> LoanCharge:
        """Attach a new charge to the loan and compute its amount"""
        if charge.currency != loan.currency:
            raise ValidationError(
                f"Charge currency {charge.currency.code} does not match loan currency {loan.currency.code}"
            )
        self.lifecycle.transition(LoanEvent.LOAN_CHARGE_ADDED, loan)
        loan.charges.append(charge)
        self.recalculate_loan_charge(loan, charge)
        self.refresh_installment_charge_amounts(loan)
        log_action(
            logger, "info", f"Charge {charge.name} added",
            loan_id=loan.id,
            action="add_charge",
            resource="loan_charge",
            extra={"charge_id": charge.id, "charge_time_type": charge.charge_time_type.value}
        )
        return charge

    def update_loan_charges(self, loan: 'Loan', charges: Sequence[LoanCharge]) -> None:
        """
        Synchronize the loan's charges with a new set

        Charges whose id is already attached are updated in place, new ones
        are added and attached charges missing from the set are deactivated.
        """
        incoming = {charge.id: charge for charge in charges}
        for existing in loan.charges:
            if not existing.active:
                continue
            if existing.id not in incoming:
                self._clear_installment_charges(loan, existing)
                existing.deactivate()
                continue
            update = incoming.pop(existing.id)
            existing.amount_or_percentage = update.amount_or_percentage
            existing.percentage = update.percentage
            existing.due_date = update.due_date
            self.recalculate_loan_charge(loan, existing)
        for charge in incoming.values():
            loan.charges.append(charge)
            self.recalculate_loan_charge(loan, charge)
        self.refresh_installment_charge_amounts(loan)

    def fetch_loan_charge_by_id(self, loan: 'Loan', charge_id: str) -> LoanCharge:
        for charge in loan.charges:
            if charge.id == charge_id:
                return charge
        raise LoanChargeNotFoundError(f"Charge {charge_id} not found on loan {loan.id}")

    def create_charge_applied_transaction(self, loan: 'Loan', charge: LoanCharge,
                                          supplied_date: Optional[date],
                                          business_date: date) -> LoanTransaction:
        """
        Post the accrual recording that a charge was applied

        The transaction is dated at the supplied date, otherwise at the
        charge due date capped at the business date.
        """
        if supplied_date is not None:
            transaction_date = supplied_date
        elif charge.due_date is not None:
            transaction_date = min(charge.due_date, business_date)
        else:
            transaction_date = business_date

        zero_amount = Money.zero(loan.currency)
        transaction = LoanTransaction.create(
            LoanTransactionType.ACCRUAL,
            transaction_date,
            charge.amount,
            fee_charges_portion=zero_amount if charge.is_penalty else charge.amount,
            penalty_charges_portion=charge.amount if charge.is_penalty else zero_amount
        )
        transaction.loan_charges_paid.append(LoanChargePaidBy(
            transaction_id=transaction.id,
            charge=charge,
            amount=charge.amount
        ))
        loan.add_transaction(transaction)
        return transaction

    # Charge payment

    def make_charge_payment(self, loan: 'Loan', charge_id: str, payment_transaction: LoanTransaction,
                            installment_number: Optional[int], business_date: date,
                            defer_allocation: bool = False) -> ChargePaymentResult:
        """
        Pay a charge with a CHARGE_PAYMENT transaction

        With defer_allocation the payment is attached and linked to its
        installment but left unallocated; the caller replays the history.

        Raises:
            ValidationError: If the payment is dated after the business date
        """
        if payment_transaction.transaction_type != LoanTransactionType.CHARGE_PAYMENT:
            raise ValidationError("Charge payments require a charge payment transaction")
        if payment_transaction.transaction_date > business_date:
            raise ValidationError(
                f"Charge payment date {payment_transaction.transaction_date} is after business date {business_date}"
            )

        existing_ids = loan.transaction_ids()
        existing_reversed_ids = loan.reversed_transaction_ids()

        charge = self._find_active_charge(loan, charge_id)
        if charge is None:
            log_action(
                logger, "warning",
                f"No active charge {charge_id}; posting charge payment without a charge",
                loan_id=loan.id,
                transaction_id=payment_transaction.id,
                action="charge_payment",
                resource="loan_charge"
            )

        number = self.handle_charge_paid_transaction(
            loan, charge, payment_transaction, installment_number, defer_allocation=defer_allocation
        )
        return ChargePaymentResult(
            transaction=payment_transaction,
            charge=charge,
            installment_number=number,
            existing_transaction_ids=existing_ids,
            existing_reversed_transaction_ids=existing_reversed_ids
        )

    def handle_charge_paid_transaction(self, loan: 'Loan', charge: Optional[LoanCharge],
                                       transaction: LoanTransaction,
                                       installment_number: Optional[int],
                                       defer_allocation: bool = False) -> Optional[int]:
        """Attach, allocate and settle a charge payment; returns the installment paid"""
        self.lifecycle.transition(LoanEvent.LOAN_CHARGE_PAYMENT, loan)
        installment = self._charge_installment(loan, charge, installment_number)
        paid_by = LoanChargePaidBy(
            transaction_id=transaction.id,
            charge=charge,
            amount=transaction.amount,
            installment_number=installment_number
        )
        transaction.loan_charges_paid.append(paid_by)
        loan.add_transaction(transaction)

        if installment is not None:
            paid_by.installment_number = installment.installment_number
            if not defer_allocation:
                processor = self.processor_factory(loan.strategy_code)
                processor.allocate(
                    transaction,
                    loan.installments,
                    [charge] if charge is not None else [],
                    target_installment_numbers=[installment.installment_number]
                )
        else:
            # Replays of this payment allocate nothing either
            paid_by.installment_number = None
            paid_by.installment_not_found = True
            log_action(
                logger, "warning", "No installment found for charge payment",
                loan_id=loan.id,
                transaction_id=transaction.id,
                action="charge_payment",
                resource="installment"
            )

        loan.update_summary()
        self.lifecycle.determine_and_transition(loan, transaction.transaction_date)

        log_action(
            logger, "info", "Charge payment posted",
            loan_id=loan.id,
            transaction_id=transaction.id,
            action="charge_payment",
            resource="loan_charge",
            extra={
                "charge_id": charge.id if charge else None,
                "installment_number": paid_by.installment_number,
                "amount": str(transaction.amount.amount),
            }
        )
        return paid_by.installment_number

    @staticmethod
    def _find_active_charge(loan: 'Loan', charge_id: str) -> Optional[LoanCharge]:
        for charge in loan.charges:
            if charge.id == charge_id and charge.active:
                return charge
        return None

    @staticmethod
    def _charge_installment(loan: 'Loan', charge: Optional[LoanCharge],
                            installment_number: Optional[int]) -> Optional[LoanInstallment]:
        if installment_number is not None:
            return loan.fetch_installment(installment_number)
        if charge is None:
            return None

        if charge.is_instalment_fee:
            for installment in sorted(loan.installments, key=lambda i: i.installment_number):
                row = charge.installment_charge(installment.installment_number)
                if row is not None and row.amount_outstanding.is_greater_than_zero():
                    return installment
            return None

        first_number = first_normal_installment_number(loan.installments)
        for installment in sorted(loan.installments, key=lambda i: i.installment_number):
            if charge.is_due_in_period(installment.from_date, installment.due_date,
                                       installment.installment_number == first_number):
                return installment
        return None
