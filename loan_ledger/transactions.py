"""
Loan Transaction Module

Monetary transactions posted against a loan. The principal, interest, fee
and penalty portions are written only by the allocation strategy; once
committed a transaction is never edited again except for its reversed flag,
and a reversal never deletes the row.
"""

from datetime import date, datetime, timezone
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, TYPE_CHECKING
from enum import Enum
import uuid

from .currency import Money
from .exceptions import ValidationError

if TYPE_CHECKING:
    from .charges import LoanCharge


class LoanTransactionType(Enum):
    """Kinds of loan transactions"""
    DISBURSEMENT = "disbursement"
    REPAYMENT = "repayment"
    DOWN_PAYMENT = "down_payment"
    MERCHANT_ISSUED_REFUND = "merchant_issued_refund"
    PAYOUT_REFUND = "payout_refund"
    GOODWILL_CREDIT = "goodwill_credit"
    RECOVERY_REPAYMENT = "recovery_repayment"
    WAIVE_INTEREST = "waive_interest"
    WAIVE_CHARGES = "waive_charges"
    CHARGE_PAYMENT = "charge_payment"
    REFUND = "refund"
    CHARGEBACK = "chargeback"
    ACCRUAL = "accrual"
    WRITE_OFF = "write_off"
    CHARGE_ADJUSTMENT = "charge_adjustment"

    @property
    def is_repayment_type(self) -> bool:
        """Money received from the borrower or on their behalf"""
        return self in REPAYMENT_TYPES

    @property
    def is_allocated(self) -> bool:
        """Whether the allocation strategy distributes this kind over installments"""
        return self not in NON_ALLOCATED_TYPES


REPAYMENT_TYPES = frozenset({
    LoanTransactionType.REPAYMENT,
    LoanTransactionType.DOWN_PAYMENT,
    LoanTransactionType.MERCHANT_ISSUED_REFUND,
    LoanTransactionType.PAYOUT_REFUND,
    LoanTransactionType.GOODWILL_CREDIT,
    LoanTransactionType.RECOVERY_REPAYMENT,
})

NON_ALLOCATED_TYPES = frozenset({
    LoanTransactionType.DISBURSEMENT,
    LoanTransactionType.ACCRUAL,
    LoanTransactionType.CHARGE_ADJUSTMENT,
})


@dataclass
class LoanChargePaidBy:
    """Link between a transaction and the charge it paid, waived or applied"""
    transaction_id: str
    charge: Optional['LoanCharge']
    amount: Money
    installment_number: Optional[int] = None
    installment_not_found: bool = False

    @property
    def charge_id(self) -> Optional[str]:
        return self.charge.id if self.charge is not None else None


@dataclass
class TransactionToInstallmentMapping:
    """How much of a transaction landed on each component of one installment"""
    transaction_id: str
    installment_number: int
    principal_portion: Money
    interest_portion: Money
    fee_charges_portion: Money
    penalty_charges_portion: Money

    @property
    def amount(self) -> Money:
        return (self.principal_portion + self.interest_portion
                + self.fee_charges_portion + self.penalty_charges_portion)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "transaction_id": self.transaction_id,
            "installment_number": self.installment_number,
            "principal_portion": str(self.principal_portion.to_storage()),
            "interest_portion": str(self.interest_portion.to_storage()),
            "fee_charges_portion": str(self.fee_charges_portion.to_storage()),
            "penalty_charges_portion": str(self.penalty_charges_portion.to_storage()),
        }


@dataclass
class LoanTransaction:
    """A monetary transaction on a loan"""
    id: str
    transaction_type: LoanTransactionType
    transaction_date: date
    amount: Money
    loan_id: Optional[str] = None
    principal_portion: Optional[Money] = None
    interest_portion: Optional[Money] = None
    fee_charges_portion: Optional[Money] = None
    penalty_charges_portion: Optional[Money] = None
    reversed: bool = False
    reversed_on_date: Optional[date] = None
    external_id: Optional[str] = None
    created_sequence: int = 0
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    loan_charges_paid: List[LoanChargePaidBy] = field(default_factory=list)
    mappings: List[TransactionToInstallmentMapping] = field(default_factory=list)

    def __post_init__(self):
        if self.amount.is_negative():
            raise ValidationError(f"Transaction amount cannot be negative: {self.amount.to_string()}")

        # Accruals may leave their portions unset
        if self.transaction_type != LoanTransactionType.ACCRUAL:
            zero_amount = Money.zero(self.amount.currency)
            if self.principal_portion is None:
                self.principal_portion = zero_amount
            if self.interest_portion is None:
                self.interest_portion = zero_amount
            if self.fee_charges_portion is None:
                self.fee_charges_portion = zero_amount
            if self.penalty_charges_portion is None:
                self.penalty_charges_portion = zero_amount

    @classmethod
    def create(
        cls,
        transaction_type: LoanTransactionType,
        transaction_date: date,
        amount: Money,
        external_id: Optional[str] = None,
        fee_charges_portion: Optional[Money] = None,
        penalty_charges_portion: Optional[Money] = None
    ) -> 'LoanTransaction':
        """Create a new unattached transaction with a fresh id"""
        return cls(
            id=str(uuid.uuid4()),
            transaction_type=transaction_type,
            transaction_date=transaction_date,
            amount=amount,
            external_id=external_id,
            fee_charges_portion=fee_charges_portion,
            penalty_charges_portion=penalty_charges_portion
        )

    @property
    def currency(self):
        return self.amount.currency

    @property
    def is_not_reversed(self) -> bool:
        return not self.reversed

    @property
    def is_repayment_type(self) -> bool:
        return self.transaction_type.is_repayment_type

    @property
    def is_interest_waiver(self) -> bool:
        return self.transaction_type == LoanTransactionType.WAIVE_INTEREST

    @property
    def is_charges_waiver(self) -> bool:
        return self.transaction_type == LoanTransactionType.WAIVE_CHARGES

    @property
    def is_charge_payment(self) -> bool:
        return self.transaction_type == LoanTransactionType.CHARGE_PAYMENT

    @property
    def is_refund(self) -> bool:
        return self.transaction_type == LoanTransactionType.REFUND

    @property
    def is_penalty_payment(self) -> bool:
        """A charge payment settling a penalty charge"""
        return any(
            paid_by.charge is not None and paid_by.charge.is_penalty
            for paid_by in self.loan_charges_paid
        )

    def portion(self, name: str) -> Money:
        value = getattr(self, name)
        return value if value is not None else Money.zero(self.currency)

    @property
    def portions_total(self) -> Money:
        return (self.portion("principal_portion") + self.portion("interest_portion")
                + self.portion("fee_charges_portion") + self.portion("penalty_charges_portion"))

    def update_components(self, principal: Money, interest: Money, fee_charges: Money,
                          penalty_charges: Money) -> None:
        """Add allocated amounts to the transaction's portions"""
        self.principal_portion = self.portion("principal_portion") + principal
        self.interest_portion = self.portion("interest_portion") + interest
        self.fee_charges_portion = self.portion("fee_charges_portion") + fee_charges
        self.penalty_charges_portion = self.portion("penalty_charges_portion") + penalty_charges

    def reset_derived_components(self) -> None:
        """
        Zero the allocated portions before the transaction is processed again

        A charges waiver keeps its recorded fee and penalty portions because
        they bound what it may waive.
        """
        zero_amount = Money.zero(self.currency)
        self.principal_portion = zero_amount
        self.interest_portion = zero_amount
        if not self.is_charges_waiver:
            self.fee_charges_portion = zero_amount
            self.penalty_charges_portion = zero_amount
        self.mappings = []

    def has_same_portions(self, other: 'LoanTransaction') -> bool:
        return all(
            self.portion(name) == other.portion(name)
            for name in ("principal_portion", "interest_portion", "fee_charges_portion", "penalty_charges_portion")
        )

    def reverse(self, reversed_on_date: date) -> None:
        """Flag the transaction as reversed; the row itself is kept"""
        if self.reversed:
            raise ValidationError(f"Transaction {self.id} is already reversed")
        self.reversed = True
        self.reversed_on_date = reversed_on_date

    def copy_for_replay(self) -> 'LoanTransaction':
        """
        Copy identity data into a new transaction with zeroed portions

        Charge links are shared so the replayed copy targets the same charge
        and installment as the original.
        """
        copy = LoanTransaction(
            id=str(uuid.uuid4()),
            transaction_type=self.transaction_type,
            transaction_date=self.transaction_date,
            amount=self.amount,
            loan_id=self.loan_id,
            fee_charges_portion=self.fee_charges_portion if self.is_charges_waiver else None,
            penalty_charges_portion=self.penalty_charges_portion if self.is_charges_waiver else None,
            external_id=self.external_id,
            created_sequence=self.created_sequence
        )
        copy.loan_charges_paid = [
            LoanChargePaidBy(
                transaction_id=copy.id,
                charge=paid_by.charge,
                amount=paid_by.amount,
                installment_number=paid_by.installment_number,
                installment_not_found=paid_by.installment_not_found
            )
            for paid_by in self.loan_charges_paid
        ]
        return copy

    def adopt_allocation(self, other: 'LoanTransaction') -> None:
        """Take over the portions and mappings computed for a replayed copy"""
        self.principal_portion = other.principal_portion
        self.interest_portion = other.interest_portion
        self.fee_charges_portion = other.fee_charges_portion
        self.penalty_charges_portion = other.penalty_charges_portion
        self.mappings = [
            TransactionToInstallmentMapping(
                transaction_id=self.id,
                installment_number=mapping.installment_number,
                principal_portion=mapping.principal_portion,
                interest_portion=mapping.interest_portion,
                fee_charges_portion=mapping.fee_charges_portion,
                penalty_charges_portion=mapping.penalty_charges_portion
            )
            for mapping in other.mappings
        ]
        self.loan_charges_paid = [
            LoanChargePaidBy(
                transaction_id=self.id,
                charge=paid_by.charge,
                amount=paid_by.amount,
                installment_number=paid_by.installment_number,
                installment_not_found=paid_by.installment_not_found
            )
            for paid_by in other.loan_charges_paid
        ]

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the persisted shape; amounts rounded to the storage scale"""
        def storage(value: Optional[Money]) -> Optional[str]:
            return str(value.to_storage()) if value is not None else None

        return {
            "id": self.id,
            "loan_id": self.loan_id,
            "transaction_type": self.transaction_type.value,
            "transaction_date": self.transaction_date.isoformat(),
            "amount": storage(self.amount),
            "currency": self.currency.code,
            "principal_portion": storage(self.principal_portion),
            "interest_portion": storage(self.interest_portion),
            "fee_charges_portion": storage(self.fee_charges_portion),
            "penalty_charges_portion": storage(self.penalty_charges_portion),
            "reversed": self.reversed,
            "reversed_on_date": self.reversed_on_date.isoformat() if self.reversed_on_date else None,
            "external_id": self.external_id,
            "charges_paid": [
                {
                    "charge_id": paid_by.charge_id,
                    "amount": storage(paid_by.amount),
                    "installment_number": paid_by.installment_number
                }
                for paid_by in self.loan_charges_paid
            ]
        }
