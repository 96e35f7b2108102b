"""
Credit ledger and call billing.

NOTE:
This package __init__ MUST be lightweight.
Do NOT import SQLAlchemy models here.
"""

__all__: list[str] = []
