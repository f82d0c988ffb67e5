"""Notifiers package for sending block notices to external services."""

from netcurfew.notifiers.slack import SlackConfig, SlackNotifier

__all__ = ["SlackConfig", "SlackNotifier"]
