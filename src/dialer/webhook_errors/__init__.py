"""
Durable queue of failed webhook events and their redrive schedule.

NOTE:
This package __init__ MUST be lightweight.
Do NOT import SQLAlchemy models here.
"""

__all__: list[str] = []
