"""
Loan Servicing

Repayment schedule generation, interest accrual and payment waterfall
allocation for term loans, using Decimal arithmetic throughout.
"""

__version__ = "1.0.0"
