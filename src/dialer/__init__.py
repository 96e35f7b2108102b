"""
Outbound call campaign dialer.

Schedules outbound calls for campaigns, processes voice provider webhooks
and bills completed calls against a per-account credit ledger.
"""

__version__ = "0.1.0"
