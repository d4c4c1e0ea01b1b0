"""Durable storage: SQLite queue database and file checkpoints."""
