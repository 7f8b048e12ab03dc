"""
simplebank Ledger Core

A banking ledger with accounts, entries, transfers and users. Money moves
between accounts only through atomic, row-locked transfer transactions.
"""

__version__ = "1.0.0"
