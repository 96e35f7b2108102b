"""
Voice provider adapters.
"""
