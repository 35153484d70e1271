"""Mailbox sync and contact graph service."""
