"""Client connections, resource subscriptions, protocol versions and origin checks for a realtime API gateway."""

__version__ = "0.1.0"

__all__ = ["errors", "version", "origin", "subscription", "connection"]