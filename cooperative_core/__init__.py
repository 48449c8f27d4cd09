"""
Cooperative Society Ledger

Member accounts, an append-only transaction record, loan and withdrawal
approval workflows, bulk interest and dividend posting, and financial
reports. All money math uses Decimal and every change is audited.
"""

__version__ = "1.0.0"
