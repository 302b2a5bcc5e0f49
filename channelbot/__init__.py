"""Telegram bot that gives each chat its own AI coding-agent session."""
