"""
Financial document ledger: numbering, payment reconciliation and report metrics.
"""

__version__ = "1.0.0"
