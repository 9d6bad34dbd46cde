"""
Reprocessing Module

Rebuilds a loan's paid state by replaying its non-reversed transactions
through the allocation strategy, replaces transactions whose allocation
changed and announces each change as a business event.
"""

from datetime import date
from dataclasses import dataclass, field
from typing import Collection, List, Optional, Set, Tuple, TYPE_CHECKING
from enum import Enum

from .currency import Money
from .transactions import LoanTransaction
from .allocation import LoanRepaymentScheduleTransactionProcessor
from .events import BusinessEvent, BusinessEventNotifier, BusinessEventType, recording_bracket
from .repository import LoanTransactionRepository, chronological_key
from .logging_config import get_logger, log_action

if TYPE_CHECKING:
    from .loans import Loan


logger = get_logger("loan_ledger.replay")


class ReprocessingState(Enum):
    """Phases of a reprocessing run"""
    IDLE = "idle"
    COLLECTING_EXISTING_IDS = "collecting_existing_ids"
    REAPPLYING = "reapplying"
    DIFFING = "diffing"
    EVENT_RECORDING = "event_recording"
    FAILED = "failed"


@dataclass
class TransactionChange:
    """A transaction whose allocation changed and the row that replaces it"""
    old_transaction: LoanTransaction
    new_transaction: LoanTransaction


@dataclass
class ChangedTransactionDetail:
    """Result of a reprocessing run"""
    changes: List[TransactionChange] = field(default_factory=list)
    existing_transaction_ids: Set[str] = field(default_factory=set)
    existing_reversed_transaction_ids: Set[str] = field(default_factory=set)

    @property
    def is_empty(self) -> bool:
        return not self.changes


class ReplayedTransactionBusinessEventService:
    """Announces replaced transactions inside one recording window"""

    def __init__(self, notifier: BusinessEventNotifier):
        self.notifier = notifier

    def raise_transaction_replayed_events(self, detail: Optional[ChangedTransactionDetail]) -> None:
        if detail is None or detail.is_empty:
            return
        with recording_bracket(self.notifier):
            for change in detail.changes:
                self.notifier.notify_post_business_event(BusinessEvent(
                    event_type=BusinessEventType.LOAN_ADJUST_TRANSACTION,
                    entity_type="loan_transaction",
                    entity_id=change.old_transaction.id,
                    data={
                        "loan_id": change.old_transaction.loan_id,
                        "transaction_to_adjust": change.old_transaction.to_dict(),
                        "new_transaction_detail": change.new_transaction.to_dict(),
                    }
                ))


class ReprocessingCoordinator:
    """
    Replays loan history after an edit

    The run goes through collecting the existing ids, reapplying every
    transaction against a zeroed schedule, diffing the new allocations
    against the stored ones and recording the change events. A run either
    completes or leaves the coordinator in the FAILED state.
    """

    def __init__(
        self,
        event_service: ReplayedTransactionBusinessEventService,
        repository: Optional[LoanTransactionRepository] = None,
        processor_factory=None
    ):
        self.event_service = event_service
        self.repository = repository
        self.processor_factory = processor_factory or LoanRepaymentScheduleTransactionProcessor.for_code
        self.state = ReprocessingState.IDLE

    def reprocess(self, loan: 'Loan', from_date: Optional[date] = None,
                  new_transaction_ids: Collection[str] = (),
                  business_date: Optional[date] = None) -> ChangedTransactionDetail:
        """
        Reprocess a loan's transactions

        Args:
            loan: Loan whose schedule is rebuilt
            from_date: Earliest date affected by the edit; transactions dated
                earlier are replayed to rebuild state and are expected to be unchanged
            new_transaction_ids: Transactions attached for this edit; their
                allocation is filled in rather than reported as a change
            business_date: Date recorded on the rows this run reverses; each
                row's own transaction date when omitted

        Returns:
            The change pairs and the ids snapshot taken before any mutation
        """
        try:
            self.state = ReprocessingState.COLLECTING_EXISTING_IDS
            detail = ChangedTransactionDetail(
                existing_transaction_ids=loan.transaction_ids(),
                existing_reversed_transaction_ids=loan.reversed_transaction_ids()
            )

            self.state = ReprocessingState.REAPPLYING
            replayed = self._reapply(loan)

            self.state = ReprocessingState.DIFFING
            detail.changes = self._diff(loan, replayed, from_date, set(new_transaction_ids), business_date)
            loan.update_summary()
            self._save(loan)

            log_action(
                logger, "info", f"Reprocessed {len(replayed)} transactions",
                loan_id=loan.id,
                action="reprocess",
                resource="loan",
                extra={
                    "from_date": from_date.isoformat() if from_date else None,
                    "changed": len(detail.changes),
                }
            )

            if not detail.is_empty:
                self.state = ReprocessingState.EVENT_RECORDING
                self.event_service.raise_transaction_replayed_events(detail)

            self.state = ReprocessingState.IDLE
            return detail
        except Exception:
            self.state = ReprocessingState.FAILED
            log_action(logger, "error", "Reprocessing failed", loan_id=loan.id,
                       action="reprocess", resource="loan")
            raise

    def _reapply(self, loan: 'Loan') -> List[Tuple[LoanTransaction, LoanTransaction]]:
        for installment in loan.installments:
            installment.reset_derived_components()
        for charge in loan.charges:
            if not charge.is_due_at_disbursement:
                charge.reset_paid_amounts()
        loan.total_overpaid = Money.zero(loan.currency)

        processor = self.processor_factory(loan.strategy_code)
        charges = [charge for charge in loan.charges if charge.active]
        transactions = sorted(
            (t for t in loan.transactions if not t.reversed and t.transaction_type.is_allocated),
            key=chronological_key
        )

        replayed = []
        for transaction in transactions:
            copy = transaction.copy_for_replay()
            remainder = processor.allocate(copy, loan.installments, charges)
            if copy.is_repayment_type:
                loan.total_overpaid = loan.total_overpaid + remainder
            replayed.append((transaction, copy))
        return replayed

    def _diff(self, loan: 'Loan', replayed: List[Tuple[LoanTransaction, LoanTransaction]],
              from_date: Optional[date], new_transaction_ids: Set[str],
              business_date: Optional[date]) -> List[TransactionChange]:
        changes = []
        for original, copy in replayed:
            if original.id in new_transaction_ids or original.has_same_portions(copy):
                original.adopt_allocation(copy)
                continue

            if from_date is not None and original.transaction_date < from_date:
                log_action(
                    logger, "warning", "Transaction dated before the reprocessing date changed allocation",
                    loan_id=loan.id,
                    transaction_id=original.id,
                    action="reprocess",
                    resource="transaction"
                )

            original.reverse(business_date or original.transaction_date)
            loan.add_transaction(copy, keep_sequence=True)
            changes.append(TransactionChange(old_transaction=original, new_transaction=copy))
        return changes

    def _save(self, loan: 'Loan') -> None:
        if self.repository is None:
            return
        for transaction in loan.transactions:
            self.repository.save(transaction)

    def accounting_bridge_transactions(self, loan: 'Loan',
                                       detail: ChangedTransactionDetail) -> List[LoanTransaction]:
        """Transactions created or reversed by the run, for the accounting bridge"""
        if self.repository is None:
            return []
        return self.repository.find_transactions_for_accounting_bridge(
            loan.id, detail.existing_transaction_ids, detail.existing_reversed_transaction_ids
        )
