"""Switchboard: per-tenant process supervision for conversational bridges."""

__version__ = "0.1.0"

__all__ = ["__version__"]
