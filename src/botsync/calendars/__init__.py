"""Calendars, events, auto-record rules, sync, and connection health."""
