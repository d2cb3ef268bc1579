"""
SOA Reconciliation Engine

Matches vendor statement-of-account lines against the ledger, tracks
discrepancies and records case sign-off.
"""

__version__ = "1.0.0"
