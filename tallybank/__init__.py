"""
Tally Bank

Ledger and account-lifecycle engine for a small teaching bank: an append-only
transaction ledger, loan and GIC state machines, atomic internal transfers
and the daily settlement batch that drives them.
"""

__version__ = "1.0.0"
