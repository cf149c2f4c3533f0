"""Errors raised by the relay core."""


class RelayError(Exception):
    pass


class DuplicateIdentity(RelayError):
    """A connection with the same identity is already registered."""


class Backpressure(RelayError):
    """The recipient cannot take another message right now."""


class ClosedConnection(RelayError):
    """The connection has already been closed."""
