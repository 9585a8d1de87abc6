"""Loan payment reconciliation and allocation engine."""

__version__ = "0.1.0"
