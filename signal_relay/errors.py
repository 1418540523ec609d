class RelayError(Exception):
    """Base class for errors the signal pipeline turns into an outcome."""


class ClientInputError(RelayError):
    """The inbound alert is malformed. Maps to a 4xx response."""


class NoMatchError(RelayError):
    """Nothing to act on: no robot, no broker symbol, no open position."""


class BrokerUnavailableError(RelayError):
    """The broker call failed or returned something we cannot use."""


class PreconditionError(RelayError):
    """The user has no usable broker account for this alert."""
