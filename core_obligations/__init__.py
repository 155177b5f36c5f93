"""
Core Obligations Engine

Loan amortization, recurring service billing, payment reconciliation and
live late-fee computation with Decimal money and transactional storage.
"""

__version__ = "1.0.0"
