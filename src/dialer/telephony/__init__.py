"""
Voice provider integration: outbound dispatch and inbound webhooks.
"""
