"""
Ledger and Loan Engine

Account balances, an append-only transaction log, account-to-account
transfers and auto-approved amortizing loans. All money is Decimal and
every balance change is serialized per account.
"""

__version__ = "1.0.0"
