"""Exception taxonomy for the relay client."""


class RelayChatError(Exception):
    """Base class for all client-side failures."""
    pass


class TransportError(RelayChatError):
    """Stream-level I/O failure. Fatal to the connection, not the process."""
    pass


class SchemaError(RelayChatError):
    """A line or message that does not match the kind catalog."""
    pass


class UnhandledKind(RelayChatError):
    """A known kind with no registered handler."""
    pass


class StoreError(RelayChatError):
    """A pairing store operation reported failure."""
    pass


class ProtocolViolation(RelayChatError):
    """A pairing message arrived for a relationship that cannot accept it."""
    pass
