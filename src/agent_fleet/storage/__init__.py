"""Durable SQLite-backed state for the agent fleet."""
