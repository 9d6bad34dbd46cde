"""
Loan Ledger

Repayment allocation and ledger-reconciliation engine: waterfall allocation of
loan transactions over an amortization schedule, charge recalculation, summary
rollups, replay of backdated history and effective interest rate solving.
All monetary values use Decimal.
"""

__version__ = "1.0.0"
