"""
Effective Interest Rate Module

Solves the internal rate of return of a disbursed loan: the periodic rate at
which the net disbursement paid out equals the present value of the
installment stream, annualized as a percentage.
"""

from datetime import date
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP, ROUND_CEILING, localcontext
from typing import List, Optional, Sequence, Tuple, TYPE_CHECKING

from .currency import Money, ledger_context
from .config import get_config
from .exceptions import EIRNotEligibleError, ValidationError
from .installments import PeriodFrequencyType
from .logging_config import get_logger, log_action

if TYPE_CHECKING:
    from .loans import Loan


logger = get_logger("loan_ledger.eir")

ONE = Decimal('1')
HUNDRED = Decimal('100')
LOWER_BOUND = Decimal('-0.99')
UPPER_BOUND = Decimal('10')

# (period offset, amount)
CashFlow = Tuple[int, Decimal]


def npv(net_disbursement: Decimal, cashflows: Sequence[CashFlow], rate: Decimal) -> Decimal:
    """Net present value with the disbursement as the negative flow at time 0"""
    base = ONE + rate
    total = -net_disbursement
    for offset, amount in cashflows:
        total += amount / base ** offset
    return total


def npv_derivative(cashflows: Sequence[CashFlow], rate: Decimal) -> Decimal:
    base = ONE + rate
    total = Decimal('0')
    for offset, amount in cashflows:
        total -= offset * amount / base ** (offset + 1)
    return total


def solve_periodic_rate(net_disbursement: Decimal, cashflows: Sequence[CashFlow],
                        max_iterations: Optional[int] = None,
                        tolerance: Optional[Decimal] = None) -> Decimal:
    """
    Find the periodic rate that zeroes the net present value

    Newton-Raphson from the configured initial guess; bisection over
    [-0.99, 10] when Newton does not converge.

    Raises:
        ValidationError: If no rate in the search interval zeroes the NPV
    """
    settings = get_config()
    max_iterations = max_iterations or settings.eir_max_iterations
    tolerance = tolerance or settings.eir_tolerance_decimal

    with localcontext(ledger_context()):
        rate = settings.eir_initial_guess_decimal
        for iteration in range(max_iterations):
            value = npv(net_disbursement, cashflows, rate)
            if abs(value) < tolerance:
                return rate

            derivative = npv_derivative(cashflows, rate)
            if abs(derivative) < tolerance:
                break

            new_rate = rate - value / derivative
            if abs(new_rate - rate) < tolerance:
                return new_rate
            rate = new_rate

            if rate < LOWER_BOUND or rate > UPPER_BOUND:
                # Restart from a fresh point inside the interval
                rate = Decimal('0.01') + iteration * Decimal('0.001')

        log_action(logger, "warning", "Newton-Raphson did not converge, falling back to bisection",
                   action="solve_eir", resource="eir")
        return _bisect(net_disbursement, cashflows, tolerance, settings.eir_bisection_iterations)


def _bisect(net_disbursement: Decimal, cashflows: Sequence[CashFlow],
            tolerance: Decimal, iterations: int) -> Decimal:
    low, high = LOWER_BOUND, UPPER_BOUND
    low_value = npv(net_disbursement, cashflows, low)
    high_value = npv(net_disbursement, cashflows, high)
    if low_value * high_value > 0:
        raise ValidationError("No effective rate zeroes the cash flow stream")

    middle = (low + high) / 2
    for _ in range(iterations):
        middle = (low + high) / 2
        value = npv(net_disbursement, cashflows, middle)
        if abs(value) < tolerance or (high - low) / 2 < tolerance:
            return middle
        if (value > 0) == (low_value > 0):
            low, low_value = middle, value
        else:
            high = middle
    return middle


def calculate_eir(net_disbursement: Decimal, cashflows: Sequence[CashFlow], periods_per_year: int,
                  adjustment: Decimal = ONE) -> Decimal:
    """
    Annualized effective rate in percent

    Args:
        net_disbursement: Cash paid out at time 0
        cashflows: (period offset, amount) received back
        periods_per_year: Repayment periods in one year
        adjustment: Factor applied to the periodic rate before annualizing

    Returns:
        Percentage rounded HALF_UP to the configured scale
    """
    if net_disbursement <= 0:
        raise ValidationError("Net disbursement must be positive")
    if not cashflows:
        raise ValidationError("Cash flow stream is empty")

    with localcontext(ledger_context()):
        periodic = solve_periodic_rate(net_disbursement, cashflows)
        annual = periodic * adjustment * periods_per_year * HUNDRED
        return annual.quantize(Decimal('0.1') ** get_config().eir_percentage_scale, rounding=ROUND_HALF_UP)


@dataclass
class EIRCalculationResult:
    """Effective interest rate of a loan and the inputs it was derived from"""
    loan_id: str
    effective_interest_rate: Decimal
    principal_amount: Money
    net_disbursement_amount: Money
    charges_due_at_disbursement: Money
    emi_amount: Money
    tenure_in_months: int
    number_of_installments: int
    calculation_date: date
    currency_code: str
    formula_used: str


class EIRCalculator:
    """Effective interest rate of a disbursed loan"""

    def is_eligible(self, loan: Optional['Loan']) -> bool:
        try:
            self.validate(loan)
        except EIRNotEligibleError:
            return False
        return True

    def validate(self, loan: Optional['Loan']) -> None:
        """
        Raises:
            EIRNotEligibleError: On the first unmet precondition
        """
        if loan is None:
            raise EIRNotEligibleError("Loan is required for EIR calculation")
        if not loan.status.is_disbursed:
            raise EIRNotEligibleError(f"Loan {loan.id} is not disbursed")
        if not self.regular_installments(loan):
            raise EIRNotEligibleError(f"Loan {loan.id} has no repayment schedule")
        if not self.calculate_net_disbursement_amount(loan).is_greater_than_zero():
            raise EIRNotEligibleError(f"Loan {loan.id} has a non-positive net disbursement amount")

    def calculate_net_disbursement_amount(self, loan: 'Loan') -> Money:
        return loan.principal - loan.charges_due_at_disbursement()

    @staticmethod
    def regular_installments(loan: 'Loan') -> List:
        return [
            installment for installment in sorted(loan.installments, key=lambda i: i.installment_number)
            if not installment.is_down_payment and not installment.is_additional
        ]

    @staticmethod
    def tenure_in_months(loan: 'Loan') -> int:
        term = loan.term_frequency
        frequency = loan.term_period_frequency_type
        if frequency == PeriodFrequencyType.MONTHS:
            return term
        if frequency == PeriodFrequencyType.YEARS:
            return term * 12
        if frequency == PeriodFrequencyType.WEEKS:
            return int((Decimal(term) * 12 / 52).to_integral_value(rounding=ROUND_CEILING))
        return int((Decimal(term) / 30).to_integral_value(rounding=ROUND_CEILING))

    def calculate(self, loan: 'Loan', calculation_date: date) -> EIRCalculationResult:
        """
        Calculate the effective interest rate of a loan

        The periodic rate is scaled by n/N, the number of regular installments
        over the tenure in months, before it is annualized.

        The result is stamped with calculation_date, the caller's business date.
        """
        self.validate(loan)

        installments = self.regular_installments(loan)
        net_disbursement = self.calculate_net_disbursement_amount(loan)
        cashflows = [(offset, installment.total_due.amount)
                     for offset, installment in enumerate(installments, start=1)]
        number_of_installments = loan.number_of_repayments or len(installments)
        tenure = self.tenure_in_months(loan)
        adjustment = ledger_context().divide(Decimal(number_of_installments), Decimal(tenure))

        rate = calculate_eir(
            net_disbursement.amount, cashflows,
            loan.repayment_period_frequency_type.periods_per_year, adjustment
        )

        result = EIRCalculationResult(
            loan_id=loan.id,
            effective_interest_rate=rate,
            principal_amount=loan.principal,
            net_disbursement_amount=net_disbursement,
            charges_due_at_disbursement=loan.charges_due_at_disbursement(),
            emi_amount=installments[0].total_due,
            tenure_in_months=tenure,
            number_of_installments=number_of_installments,
            calculation_date=calculation_date,
            currency_code=loan.currency.code,
            formula_used=(
                f"IRR = (NET DISBURSE AMOUNT : EMI INFLOW) * "
                f"{number_of_installments}/{tenure} * {loan.repayment_period_frequency_type.periods_per_year}"
            )
        )
        log_action(
            logger, "info", f"EIR calculated: {rate}%",
            loan_id=loan.id,
            action="calculate_eir",
            resource="loan",
            extra={"net_disbursement": str(net_disbursement.amount), "installments": number_of_installments}
        )
        return result
