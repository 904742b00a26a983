"""
Token Ledger

Repayment ledger engine for daily micro-loans: waterfall payment allocation,
penalty accrual, and per-actor ledger accounts kept in step with the
installment schedule.
"""

__version__ = "1.0.0"
