"""Attendance terminal bridge: pull/push reconciliation and live fan-out."""

__version__ = "0.1.0"
