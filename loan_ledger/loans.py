"""
Loan Module

The Loan aggregate owns its installments, charges, transactions and summary.
LoanManager is the service entry point: every mutating operation runs under
the loan's own lock and flows through charge refresh, allocation or replay,
summary recomputation, lifecycle transition and business events.
"""

from datetime import date
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set
from contextlib import contextmanager
import threading
import uuid

from .currency import Money, Currency
from .config import get_config
from .exceptions import (
    InstallmentNotFoundError, LoanNotFoundError, TransactionNotFoundError, ValidationError
)
from .installments import LoanInstallment, PeriodFrequencyType, sum_component
from .transactions import LoanChargePaidBy, LoanTransaction, LoanTransactionType
from .allocation import LoanRepaymentScheduleTransactionProcessor
from .charges import ChargeEngine, ChargePaymentResult, LoanCharge
from .summary import LoanSummary
from .lifecycle import DefaultLoanLifecycleStateMachine, LoanEvent, LoanStatus
from .repository import InMemoryLoanTransactionRepository, LoanTransactionRepository, chronological_key
from .events import BusinessEvent, BusinessEventNotifier, BusinessEventType
from .replay import ChangedTransactionDetail, ReplayedTransactionBusinessEventService, ReprocessingCoordinator
from .eir import EIRCalculationResult, EIRCalculator
from .logging_config import get_logger, log_action


logger = get_logger("loan_ledger.loans")


@dataclass
class DisbursementDetail:
    """One expected tranche of a multi-disbursement loan"""
    expected_disbursement_date: date
    principal: Money
    actual_disbursement_date: Optional[date] = None


@dataclass
class Loan:
    """Loan aggregate"""
    id: str
    currency: Currency
    principal: Money
    approved_principal: Optional[Money] = None
    proposed_principal: Optional[Money] = None
    status: LoanStatus = LoanStatus.SUBMITTED_AND_PENDING_APPROVAL
    strategy_code: Optional[str] = None
    installments: List[LoanInstallment] = field(default_factory=list)
    charges: List[LoanCharge] = field(default_factory=list)
    transactions: List[LoanTransaction] = field(default_factory=list)
    disbursement_details: List[DisbursementDetail] = field(default_factory=list)
    summary: Optional[LoanSummary] = None
    capitalized_income: Optional[Money] = None
    capitalized_income_adjustment: Optional[Money] = None
    total_overpaid: Optional[Money] = None
    number_of_repayments: int = 0
    term_frequency: int = 0
    term_period_frequency_type: PeriodFrequencyType = PeriodFrequencyType.MONTHS
    repayment_period_frequency_type: PeriodFrequencyType = PeriodFrequencyType.MONTHS
    disbursed_on_date: Optional[date] = None
    closed_on_date: Optional[date] = None
    _sequence: int = field(default=0, repr=False)

    def __post_init__(self):
        if self.principal.currency != self.currency:
            raise ValidationError("Loan principal must be in the loan currency")
        zero_amount = Money.zero(self.currency)
        if self.proposed_principal is None:
            self.proposed_principal = self.principal
        if self.approved_principal is None:
            self.approved_principal = self.principal
        if self.strategy_code is None:
            self.strategy_code = get_config().default_strategy_code
        if self.summary is None:
            self.summary = LoanSummary(self.currency)
        if self.capitalized_income is None:
            self.capitalized_income = zero_amount
        if self.capitalized_income_adjustment is None:
            self.capitalized_income_adjustment = zero_amount
        if self.total_overpaid is None:
            self.total_overpaid = zero_amount
        if not self.number_of_repayments:
            self.number_of_repayments = len([
                i for i in self.installments if not i.is_down_payment and not i.is_additional
            ])
        if not self.term_frequency:
            self.term_frequency = self.number_of_repayments
        self.installments.sort(key=lambda i: i.installment_number)

    # Schedule

    def replace_schedule(self, installments: Sequence[LoanInstallment]) -> None:
        """Swap in a regenerated schedule before disbursement"""
        if not self.status.is_pre_disbursement:
            raise ValidationError(f"Loan {self.id} schedule cannot be replaced after disbursement")
        self.installments = sorted(installments, key=lambda i: i.installment_number)
        self.number_of_repayments = len([
            i for i in self.installments if not i.is_down_payment and not i.is_additional
        ])

    @property
    def is_multi_disburse(self) -> bool:
        return len(self.disbursement_details) > 1

    @property
    def total_interest(self) -> Money:
        return sum_component(self.installments, self.currency, "interest_charged")

    def expected_disbursed_on_or_before(self, on_date: date) -> Money:
        return Money.total(self.currency, (
            detail.principal for detail in self.disbursement_details
            if detail.expected_disbursement_date <= on_date
        ))

    def fetch_installment(self, installment_number: int) -> LoanInstallment:
        for installment in self.installments:
            if installment.installment_number == installment_number:
                return installment
        raise InstallmentNotFoundError(f"Installment {installment_number} not found on loan {self.id}")

    def installment_is_recalculated_placeholder(self, installment_number: int) -> bool:
        for installment in self.installments:
            if installment.installment_number == installment_number:
                return installment.recalculated_interest_component
        return False

    # Charges

    @property
    def active_charges(self) -> List[LoanCharge]:
        return [charge for charge in self.charges if charge.active]

    def charges_due_at_disbursement(self) -> Money:
        return Money.total(self.currency, (
            charge.amount for charge in self.active_charges
            if charge.is_due_at_disbursement and not charge.is_penalty
        ))

    # Transactions

    def add_transaction(self, transaction: LoanTransaction, keep_sequence: bool = False) -> None:
        """Attach a transaction; a new one is stamped with the next sequence number"""
        if transaction.currency != self.currency:
            raise ValidationError(
                f"Transaction currency {transaction.currency.code} does not match loan currency {self.currency.code}"
            )
        transaction.loan_id = self.id
        if keep_sequence:
            self._sequence = max(self._sequence, transaction.created_sequence)
        else:
            self._sequence += 1
            transaction.created_sequence = self._sequence
        self.transactions.append(transaction)

    def fetch_transaction(self, transaction_id: str) -> LoanTransaction:
        for transaction in self.transactions:
            if transaction.id == transaction_id:
                return transaction
        raise TransactionNotFoundError(f"Transaction {transaction_id} not found on loan {self.id}")

    def transaction_ids(self) -> Set[str]:
        return {transaction.id for transaction in self.transactions}

    def reversed_transaction_ids(self) -> Set[str]:
        return {transaction.id for transaction in self.transactions if transaction.reversed}

    def last_allocated_transaction_date(self) -> Optional[date]:
        dates = [
            transaction.transaction_date for transaction in self.transactions
            if not transaction.reversed and transaction.transaction_type.is_allocated
        ]
        return max(dates) if dates else None

    def chronological_transactions(self) -> List[LoanTransaction]:
        return sorted(self.transactions, key=chronological_key)

    # Summary

    def update_summary(self) -> None:
        """Recompute the summary from the schedule and charges"""
        self.summary.update_total_fee_charges_due_at_disbursement(self.charges)
        self.summary.update_summary(
            self.currency,
            self.principal,
            self.installments,
            self.charges,
            self.capitalized_income,
            self.capitalized_income_adjustment
        )

    def to_dict(self) -> Dict[str, Any]:
        """Persisted shape of the aggregate"""
        return {
            "id": self.id,
            "currency": self.currency.code,
            "principal": str(self.principal.to_storage()),
            "proposed_principal": str(self.proposed_principal.to_storage()),
            "approved_principal": str(self.approved_principal.to_storage()),
            "status": self.status.value,
            "strategy_code": self.strategy_code,
            "total_overpaid": str(self.total_overpaid.to_storage()),
            "disbursed_on_date": self.disbursed_on_date.isoformat() if self.disbursed_on_date else None,
            "closed_on_date": self.closed_on_date.isoformat() if self.closed_on_date else None,
            "installments": [installment.to_dict() for installment in self.installments],
            "charges": [charge.to_dict() for charge in self.charges],
            "transactions": [transaction.to_dict() for transaction in self.chronological_transactions()],
            "summary": {name: str(value) for name, value in self.summary.to_storage_dict().items()},
        }


_LIFECYCLE_EVENTS = {
    LoanTransactionType.REFUND: LoanEvent.LOAN_REFUND,
    LoanTransactionType.CHARGEBACK: LoanEvent.LOAN_CHARGEBACK,
}


class LoanManager:
    """Loan ledger service entry points"""

    def __init__(
        self,
        repository: Optional[LoanTransactionRepository] = None,
        notifier: Optional[BusinessEventNotifier] = None,
        lifecycle: Optional[DefaultLoanLifecycleStateMachine] = None,
        charge_engine: Optional[ChargeEngine] = None,
        coordinator: Optional[ReprocessingCoordinator] = None,
        eir_calculator: Optional[EIRCalculator] = None
    ):
        self.repository = repository or InMemoryLoanTransactionRepository()
        self.notifier = notifier or BusinessEventNotifier()
        self.lifecycle = lifecycle or DefaultLoanLifecycleStateMachine()
        self.charge_engine = charge_engine or ChargeEngine(self.lifecycle)
        self.coordinator = coordinator or ReprocessingCoordinator(
            ReplayedTransactionBusinessEventService(self.notifier), self.repository
        )
        self.eir_calculator = eir_calculator or EIRCalculator()
        self._loans: Dict[str, Loan] = {}
        self._locks: Dict[str, threading.RLock] = {}
        self._registry_lock = threading.RLock()

    @contextmanager
    def _locked(self, loan_id: str):
        with self._registry_lock:
            if loan_id not in self._loans:
                raise LoanNotFoundError(f"Loan {loan_id} not found")
            lock = self._locks[loan_id]
        with lock:
            yield self._loans[loan_id]

    # Registration and queries

    def create_loan(
        self,
        currency: Currency,
        principal: Money,
        installments: Sequence[LoanInstallment],
        strategy_code: Optional[str] = None,
        charges: Iterable[LoanCharge] = (),
        disbursement_details: Iterable[DisbursementDetail] = (),
        term_frequency: int = 0,
        term_period_frequency_type: PeriodFrequencyType = PeriodFrequencyType.MONTHS,
        repayment_period_frequency_type: PeriodFrequencyType = PeriodFrequencyType.MONTHS,
        loan_id: Optional[str] = None
    ) -> Loan:
        """
        Register a loan submitted for approval

        Args:
            currency: Loan currency
            principal: Requested principal
            installments: Repayment schedule
            strategy_code: Repayment strategy code; defaults to configuration
            charges: Charges attached at submission
            disbursement_details: Expected tranches of a multi-disbursement loan
            term_frequency: Loan term, in term_period_frequency_type units
            term_period_frequency_type: Unit of the loan term
            repayment_period_frequency_type: Unit of one repayment period
            loan_id: Explicit id; generated when omitted

        Returns:
            The registered loan
        """
        if strategy_code is not None:
            LoanRepaymentScheduleTransactionProcessor.for_code(strategy_code)

        loan = Loan(
            id=loan_id or str(uuid.uuid4()),
            currency=currency,
            principal=principal,
            strategy_code=strategy_code,
            installments=list(installments),
            disbursement_details=list(disbursement_details),
            term_frequency=term_frequency,
            term_period_frequency_type=term_period_frequency_type,
            repayment_period_frequency_type=repayment_period_frequency_type
        )
        with self._registry_lock:
            if loan.id in self._loans:
                raise ValidationError(f"Loan {loan.id} already exists")
            self._loans[loan.id] = loan
            self._locks[loan.id] = threading.RLock()

        with self._locked(loan.id):
            for charge in charges:
                self.charge_engine.add_loan_charge(loan, charge)
            loan.update_summary()

        log_action(
            logger, "info", "Loan created",
            loan_id=loan.id,
            action="create",
            resource="loan",
            extra={"principal": str(principal.amount), "strategy": loan.strategy_code}
        )
        return loan

    def get_loan(self, loan_id: str) -> Loan:
        with self._registry_lock:
            if loan_id not in self._loans:
                raise LoanNotFoundError(f"Loan {loan_id} not found")
            return self._loans[loan_id]

    def get_summary(self, loan_id: str) -> LoanSummary:
        return self.get_loan(loan_id).summary

    # Lifecycle

    def approve_loan(self, loan_id: str, approved_principal: Optional[Money] = None,
                     installments: Optional[Sequence[LoanInstallment]] = None) -> Loan:
        """
        Approve a submitted loan

        The approved amount becomes the loan principal used by the summary,
        percentage charges and the effective rate; the requested amount is
        kept as proposed_principal. A schedule regenerated for the approved
        amount replaces the submitted one when given.
        """
        with self._locked(loan_id) as loan:
            if approved_principal is not None:
                if approved_principal > loan.proposed_principal:
                    raise ValidationError("Approved principal cannot exceed the requested principal")
                if not approved_principal.is_greater_than_zero():
                    raise ValidationError("Approved principal must be positive")
            self.lifecycle.transition(LoanEvent.LOAN_APPROVED, loan)
            if approved_principal is not None:
                loan.approved_principal = approved_principal
                loan.principal = approved_principal
            if installments is not None:
                loan.replace_schedule(installments)
            self.charge_engine.recalculate_all_charges(loan)
            loan.update_summary()
            log_action(
                logger, "info", "Loan approved",
                loan_id=loan.id,
                action="approve",
                resource="loan",
                extra={
                    "proposed_principal": str(loan.proposed_principal.amount),
                    "approved_principal": str(loan.approved_principal.amount),
                }
            )
            return loan

    def disburse_loan(self, loan_id: str, disbursement_date: date, business_date: date) -> LoanTransaction:
        """
        Disburse the approved principal

        Charges due at disbursement are collected from the disbursed amount.
        """
        with self._locked(loan_id) as loan:
            self._validate_not_future(disbursement_date, business_date)
            self.charge_engine.recalculate_all_charges(loan)
            self.lifecycle.transition(LoanEvent.LOAN_DISBURSED, loan)
            loan.disbursed_on_date = loan.disbursed_on_date or disbursement_date
            for detail in loan.disbursement_details:
                if detail.actual_disbursement_date is None and detail.expected_disbursement_date <= disbursement_date:
                    detail.actual_disbursement_date = disbursement_date

            collected = Money.zero(loan.currency)
            transaction = LoanTransaction.create(
                LoanTransactionType.DISBURSEMENT, disbursement_date, loan.approved_principal
            )
            for charge in loan.active_charges:
                if charge.is_due_at_disbursement and not charge.is_penalty:
                    paid = charge.pay(charge.amount_outstanding)
                    collected = collected + paid
                    transaction.loan_charges_paid.append(LoanChargePaidBy(
                        transaction_id=transaction.id, charge=charge, amount=paid
                    ))
            transaction.fee_charges_portion = collected
            loan.add_transaction(transaction)
            loan.update_summary()
            self._persist(loan)
            self._notify(BusinessEventType.LOAN_TRANSACTION_POSTED, loan, transaction)
            return transaction

    # Monetary transactions

    def make_repayment(
        self,
        loan_id: str,
        amount: Money,
        transaction_date: date,
        business_date: date,
        transaction_type: LoanTransactionType = LoanTransactionType.REPAYMENT,
        external_id: Optional[str] = None
    ) -> LoanTransaction:
        """Post a repayment-like transaction"""
        if not transaction_type.is_repayment_type:
            raise ValidationError(f"{transaction_type.value} is not a repayment type")
        transaction = LoanTransaction.create(transaction_type, transaction_date, amount, external_id=external_id)
        return self._post(loan_id, transaction, business_date)

    def waive_interest(self, loan_id: str, amount: Money, transaction_date: date,
                       business_date: date) -> LoanTransaction:
        transaction = LoanTransaction.create(LoanTransactionType.WAIVE_INTEREST, transaction_date, amount)
        return self._post(loan_id, transaction, business_date)

    def refund(self, loan_id: str, amount: Money, transaction_date: date,
               business_date: date) -> LoanTransaction:
        transaction = LoanTransaction.create(LoanTransactionType.REFUND, transaction_date, amount)
        return self._post(loan_id, transaction, business_date)

    def chargeback(self, loan_id: str, amount: Money, transaction_date: date,
                   business_date: date) -> LoanTransaction:
        transaction = LoanTransaction.create(LoanTransactionType.CHARGEBACK, transaction_date, amount)
        return self._post(loan_id, transaction, business_date)

    def waive_charge(self, loan_id: str, charge_id: str, transaction_date: date, business_date: date,
                     installment_number: Optional[int] = None,
                     amount: Optional[Money] = None) -> LoanTransaction:
        """
        Waive a charge, or one installment's share of an instalment fee

        The waiver records its fee or penalty portion up front; allocation
        never waives more than that portion.
        """
        with self._locked(loan_id) as loan:
            charge = self.charge_engine.fetch_loan_charge_by_id(loan, charge_id)
            if not charge.active:
                raise ValidationError(f"Charge {charge_id} is not active")
            if charge.is_instalment_fee and installment_number is not None:
                row = charge.installment_charge(installment_number)
                if row is None:
                    raise InstallmentNotFoundError(
                        f"Charge {charge_id} has no share on installment {installment_number}"
                    )
                outstanding = row.amount_outstanding
            else:
                outstanding = charge.amount_outstanding
            if installment_number is None and not charge.is_instalment_fee:
                installment_number = self._installment_for_charge(loan, charge)

            waived = outstanding if amount is None else amount.min_of(outstanding)
            if not waived.is_greater_than_zero():
                raise ValidationError(f"Charge {charge_id} has nothing outstanding to waive")

            zero_amount = Money.zero(loan.currency)
            transaction = LoanTransaction.create(
                LoanTransactionType.WAIVE_CHARGES, transaction_date, waived,
                fee_charges_portion=zero_amount if charge.is_penalty else waived,
                penalty_charges_portion=waived if charge.is_penalty else zero_amount
            )
            transaction.loan_charges_paid.append(LoanChargePaidBy(
                transaction_id=transaction.id,
                charge=charge,
                amount=waived,
                installment_number=installment_number
            ))
            return self._post(loan_id, transaction, business_date)

    def make_charge_payment(self, loan_id: str, charge_id: str, amount: Money, transaction_date: date,
                            business_date: date, installment_number: Optional[int] = None) -> ChargePaymentResult:
        """
        Pay a charge

        A payment dated before the latest allocated transaction is attached
        unallocated and the history is replayed from its date, the same way
        backdated repayments are posted.
        """
        with self._locked(loan_id) as loan:
            self._validate_not_before_disbursement(loan, transaction_date)
            latest = loan.last_allocated_transaction_date()
            backdated = latest is not None and transaction_date < latest

            transaction = LoanTransaction.create(LoanTransactionType.CHARGE_PAYMENT, transaction_date, amount)
            result = self.charge_engine.make_charge_payment(
                loan, charge_id, transaction, installment_number, business_date,
                defer_allocation=backdated
            )
            if backdated:
                self.coordinator.reprocess(
                    loan, from_date=transaction_date, new_transaction_ids=[transaction.id],
                    business_date=business_date
                )
                self.lifecycle.determine_and_transition(loan, transaction_date)
            self._persist(loan)
            self._notify(BusinessEventType.LOAN_CHARGE_PAYMENT, loan, transaction)
            return result

    def write_off(self, loan_id: str, transaction_date: date, business_date: date) -> LoanTransaction:
        """Write off everything outstanding and close the loan"""
        with self._locked(loan_id) as loan:
            self._validate_not_future(transaction_date, business_date)
            self._validate_not_before_disbursement(loan, transaction_date)
            if loan.status != LoanStatus.ACTIVE:
                raise ValidationError(f"Loan {loan.id} in status {loan.status.value} cannot be written off")
            outstanding = Money.total(loan.currency, (i.total_outstanding for i in loan.installments))
            transaction = LoanTransaction.create(LoanTransactionType.WRITE_OFF, transaction_date, outstanding)
            loan.add_transaction(transaction)
            processor = LoanRepaymentScheduleTransactionProcessor.for_code(loan.strategy_code)
            processor.allocate(transaction, loan.installments, loan.active_charges)
            loan.update_summary()
            self.lifecycle.transition(LoanEvent.LOAN_WRITE_OFF_OUTSTANDING, loan)
            loan.closed_on_date = transaction_date
            self._persist(loan)
            self._notify(BusinessEventType.LOAN_TRANSACTION_POSTED, loan, transaction)
            return transaction

    def add_charge(self, loan_id: str, charge: LoanCharge, business_date: date) -> LoanCharge:
        """Attach a charge; on a disbursed loan its accrual is posted and history replayed"""
        with self._locked(loan_id) as loan:
            self.charge_engine.add_loan_charge(loan, charge)
            if loan.status.is_disbursed:
                self.charge_engine.create_charge_applied_transaction(loan, charge, None, business_date)
                self.coordinator.reprocess(loan, from_date=charge.due_date, business_date=business_date)
                self.lifecycle.determine_and_transition(loan, business_date)
            loan.update_summary()
            self._persist(loan)
            self.notifier.notify_post_business_event(BusinessEvent(
                event_type=BusinessEventType.LOAN_CHARGE_ADDED,
                entity_type="loan_charge",
                entity_id=charge.id,
                data={"loan_id": loan.id, "charge": charge.to_dict()}
            ))
            return charge

    def reverse_transaction(self, loan_id: str, transaction_id: str,
                            business_date: date) -> ChangedTransactionDetail:
        """Reverse a transaction and replay the loan history after it"""
        with self._locked(loan_id) as loan:
            transaction = loan.fetch_transaction(transaction_id)
            if transaction.transaction_type == LoanTransactionType.DISBURSEMENT:
                raise ValidationError("Disbursements cannot be reversed through transaction adjustment")
            self.lifecycle.transition(LoanEvent.LOAN_TRANSACTION_REVERSED, loan)
            transaction.reverse(business_date)
            detail = self.coordinator.reprocess(
                loan, from_date=transaction.transaction_date, business_date=business_date
            )
            self.lifecycle.determine_and_transition(loan, transaction.transaction_date)
            self._persist(loan)
            self._notify(BusinessEventType.LOAN_TRANSACTION_REVERSED, loan, transaction)
            return detail

    def reprocess(self, loan_id: str, from_date: Optional[date] = None,
                  business_date: Optional[date] = None) -> ChangedTransactionDetail:
        with self._locked(loan_id) as loan:
            detail = self.coordinator.reprocess(loan, from_date=from_date, business_date=business_date)
            self._persist(loan)
            return detail

    def calculate_eir(self, loan_id: str, calculation_date: date) -> EIRCalculationResult:
        with self._locked(loan_id) as loan:
            return self.eir_calculator.calculate(loan, calculation_date)

    def accounting_bridge_transactions(self, loan_id: str,
                                       detail: ChangedTransactionDetail) -> List[LoanTransaction]:
        with self._locked(loan_id) as loan:
            return self.coordinator.accounting_bridge_transactions(loan, detail)

    # Internals

    def _post(self, loan_id: str, transaction: LoanTransaction, business_date: date) -> LoanTransaction:
        with self._locked(loan_id) as loan:
            self._validate_not_future(transaction.transaction_date, business_date)
            self._validate_not_before_disbursement(loan, transaction.transaction_date)
            self.lifecycle.transition(
                _LIFECYCLE_EVENTS.get(transaction.transaction_type, LoanEvent.LOAN_REPAYMENT_OR_WAIVER), loan
            )

            latest = loan.last_allocated_transaction_date()
            loan.add_transaction(transaction)
            if latest is not None and transaction.transaction_date < latest:
                # Backdated: later transactions may change allocation
                self.coordinator.reprocess(
                    loan, from_date=transaction.transaction_date, new_transaction_ids=[transaction.id],
                    business_date=business_date
                )
            else:
                processor = LoanRepaymentScheduleTransactionProcessor.for_code(loan.strategy_code)
                remainder = processor.allocate(transaction, loan.installments, loan.active_charges)
                if transaction.is_repayment_type:
                    loan.total_overpaid = loan.total_overpaid + remainder
                loan.update_summary()

            self.lifecycle.determine_and_transition(loan, transaction.transaction_date)
            self._persist(loan)
            self._notify(BusinessEventType.LOAN_TRANSACTION_POSTED, loan, transaction)
            return transaction

    @staticmethod
    def _installment_for_charge(loan: Loan, charge: LoanCharge) -> Optional[int]:
        first = True
        for installment in loan.installments:
            if installment.is_down_payment or installment.is_additional:
                continue
            if charge.is_due_in_period(installment.from_date, installment.due_date, first):
                return installment.installment_number
            first = False
        return None

    @staticmethod
    def _validate_not_future(transaction_date: date, business_date: date) -> None:
        if transaction_date > business_date:
            raise ValidationError(f"Transaction date {transaction_date} is after business date {business_date}")

    @staticmethod
    def _validate_not_before_disbursement(loan: Loan, transaction_date: date) -> None:
        if loan.disbursed_on_date and transaction_date < loan.disbursed_on_date:
            raise ValidationError("Transaction date cannot be before the disbursement date")

    def _persist(self, loan: Loan) -> None:
        for transaction in loan.transactions:
            self.repository.save(transaction)

    def _notify(self, event_type: BusinessEventType, loan: Loan, transaction: LoanTransaction) -> None:
        self.notifier.notify_post_business_event(BusinessEvent(
            event_type=event_type,
            entity_type="loan_transaction",
            entity_id=transaction.id,
            data={"loan_id": loan.id, "transaction": transaction.to_dict()}
        ))
        self.notifier.notify_post_business_event(BusinessEvent(
            event_type=BusinessEventType.LOAN_BALANCE_CHANGED,
            entity_type="loan",
            entity_id=loan.id,
            data={
                "status": loan.status.value,
                "total_outstanding": str(loan.summary.total_outstanding.to_storage()),
            }
        ))
