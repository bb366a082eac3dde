"""Bot scheduling: config builder, shared-bot deduplication, and the
per-event scheduling state machine that talks to the provisioning API.
"""
