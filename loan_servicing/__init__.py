"""
Loan Servicing Core

Amortization schedules, per-period interest and insurance causation, payment
allocation, accounting period close and loan write-off, using Decimal money
math and a hash-chained audit trail.
"""

__version__ = "1.0.0"
