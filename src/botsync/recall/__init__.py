"""Recall.ai provisioning API integration.

Provides RecallClient for the calendar v2 and bot APIs plus helpers that
classify provider HTTP failures (conflict, not found, disconnection,
transient).
"""
