"""
Loan Lifecycle Module

Default loan status state machine. The allocation engine only calls it on
specific events and lets it promote or demote the loan status afterwards.
"""

from datetime import date
from typing import Dict, FrozenSet, TYPE_CHECKING
from enum import Enum

from .exceptions import ValidationError
from .logging_config import get_logger, log_action

if TYPE_CHECKING:
    from .loans import Loan


logger = get_logger("loan_ledger.lifecycle")


class LoanStatus(Enum):
    """Loan lifecycle status"""
    SUBMITTED_AND_PENDING_APPROVAL = "submitted_and_pending_approval"
    APPROVED = "approved"
    ACTIVE = "active"
    OVERPAID = "overpaid"
    CLOSED_OBLIGATIONS_MET = "closed_obligations_met"
    CLOSED_WRITTEN_OFF = "closed_written_off"
    REJECTED = "rejected"
    WITHDRAWN_BY_CLIENT = "withdrawn_by_client"

    @property
    def is_disbursed(self) -> bool:
        return self in {LoanStatus.ACTIVE, LoanStatus.OVERPAID,
                        LoanStatus.CLOSED_OBLIGATIONS_MET, LoanStatus.CLOSED_WRITTEN_OFF}

    @property
    def is_pre_disbursement(self) -> bool:
        return self in {LoanStatus.SUBMITTED_AND_PENDING_APPROVAL, LoanStatus.APPROVED}


class LoanEvent(Enum):
    """Events that drive loan status transitions"""
    LOAN_APPROVED = "loan_approved"
    LOAN_REJECTED = "loan_rejected"
    LOAN_WITHDRAWN = "loan_withdrawn"
    LOAN_DISBURSED = "loan_disbursed"
    LOAN_REPAYMENT_OR_WAIVER = "loan_repayment_or_waiver"
    LOAN_CHARGE_PAYMENT = "loan_charge_payment"
    LOAN_CHARGE_ADDED = "loan_charge_added"
    LOAN_REFUND = "loan_refund"
    LOAN_CHARGEBACK = "loan_chargeback"
    LOAN_WRITE_OFF_OUTSTANDING = "loan_write_off_outstanding"
    LOAN_TRANSACTION_REVERSED = "loan_transaction_reversed"


_ALLOWED: Dict[LoanEvent, FrozenSet[LoanStatus]] = {
    LoanEvent.LOAN_APPROVED: frozenset({LoanStatus.SUBMITTED_AND_PENDING_APPROVAL}),
    LoanEvent.LOAN_REJECTED: frozenset({LoanStatus.SUBMITTED_AND_PENDING_APPROVAL}),
    LoanEvent.LOAN_WITHDRAWN: frozenset({LoanStatus.SUBMITTED_AND_PENDING_APPROVAL, LoanStatus.APPROVED}),
    LoanEvent.LOAN_DISBURSED: frozenset({LoanStatus.APPROVED, LoanStatus.ACTIVE}),
    LoanEvent.LOAN_WRITE_OFF_OUTSTANDING: frozenset({LoanStatus.ACTIVE}),
}

_TARGETS: Dict[LoanEvent, LoanStatus] = {
    LoanEvent.LOAN_APPROVED: LoanStatus.APPROVED,
    LoanEvent.LOAN_REJECTED: LoanStatus.REJECTED,
    LoanEvent.LOAN_WITHDRAWN: LoanStatus.WITHDRAWN_BY_CLIENT,
    LoanEvent.LOAN_DISBURSED: LoanStatus.ACTIVE,
    LoanEvent.LOAN_WRITE_OFF_OUTSTANDING: LoanStatus.CLOSED_WRITTEN_OFF,
}

# Monetary events that must find the loan disbursed
_MONETARY_EVENTS = frozenset({
    LoanEvent.LOAN_REPAYMENT_OR_WAIVER,
    LoanEvent.LOAN_CHARGE_PAYMENT,
    LoanEvent.LOAN_REFUND,
    LoanEvent.LOAN_CHARGEBACK,
    LoanEvent.LOAN_TRANSACTION_REVERSED,
})


class DefaultLoanLifecycleStateMachine:
    """Status transitions for a single loan"""

    def transition(self, event: LoanEvent, loan: 'Loan') -> LoanStatus:
        """
        Apply an event to the loan status

        Raises:
            ValidationError: If the event is not allowed in the current status
        """
        current = loan.status

        if event in _MONETARY_EVENTS:
            if not current.is_disbursed:
                raise ValidationError(
                    f"Loan {loan.id} in status {current.value} does not accept {event.value}"
                )
            return current

        if event == LoanEvent.LOAN_CHARGE_ADDED:
            if current in {LoanStatus.REJECTED, LoanStatus.WITHDRAWN_BY_CLIENT, LoanStatus.CLOSED_WRITTEN_OFF}:
                raise ValidationError(f"Cannot add charges to loan {loan.id} in status {current.value}")
            return current

        if current not in _ALLOWED[event]:
            raise ValidationError(
                f"Loan {loan.id} in status {current.value} does not accept {event.value}"
            )

        self._move(loan, _TARGETS[event], event.value)
        return loan.status

    def determine_and_transition(self, loan: 'Loan', transaction_date: date) -> LoanStatus:
        """Promote or demote a disbursed loan from its balances"""
        current = loan.status
        if not current.is_disbursed or current == LoanStatus.CLOSED_WRITTEN_OFF:
            return current

        if loan.total_overpaid.is_greater_than_zero():
            target = LoanStatus.OVERPAID
        elif loan.summary.total_outstanding.is_zero():
            target = LoanStatus.CLOSED_OBLIGATIONS_MET
        else:
            target = LoanStatus.ACTIVE

        if target != current:
            self._move(loan, target, "balance_change", transaction_date)
        if target == LoanStatus.CLOSED_OBLIGATIONS_MET:
            loan.closed_on_date = loan.closed_on_date or transaction_date
        else:
            loan.closed_on_date = None
        return loan.status

    @staticmethod
    def _move(loan: 'Loan', target: LoanStatus, reason: str, on_date: date = None) -> None:
        previous = loan.status
        loan.status = target
        log_action(
            logger, "info",
            f"Loan status changed from {previous.value} to {target.value}",
            loan_id=loan.id,
            action="status_transition",
            resource="loan",
            extra={"reason": reason, "on_date": on_date.isoformat() if on_date else None}
        )
