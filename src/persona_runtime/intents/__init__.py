"""Heartbeat event capture and task intents."""
