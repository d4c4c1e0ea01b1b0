"""Supervisor that keeps a CLI agent working through usage limits."""

__version__ = "0.1.0"
