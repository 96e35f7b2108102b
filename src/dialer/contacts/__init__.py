"""
Contact records dialed by campaigns.
"""

__all__: list[str] = []
