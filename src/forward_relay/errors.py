"""Shared error types for the relay."""


class RelayError(Exception):
    """Base error for the relay."""


class ConfigError(RelayError):
    """Routing file or environment is missing or malformed."""


class AuthorizationError(RelayError):
    """Interactive login did not produce an authorised session."""


class ConnectionLostError(RelayError):
    """Reconnection attempts were exhausted; the connection is gone for good."""
