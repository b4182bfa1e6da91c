EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_INVALID_CREDENTIALS = 3
EXIT_NETWORK_UNREACHABLE = 4
EXIT_ADDRESS_UNAVAILABLE = 5
EXIT_PROTOCOL_ERROR = 6
EXIT_INTERRUPTED = 130


class NetAccessError(Exception):
    exit_code = EXIT_FAILURE


class ConfigError(NetAccessError):
    pass


class CredentialError(NetAccessError):
    """The portal rejected the username/password pair."""

    exit_code = EXIT_INVALID_CREDENTIALS


class NetworkError(NetAccessError):
    """Transient transport failure (timeout, refused connection, DNS)."""

    exit_code = EXIT_NETWORK_UNREACHABLE


class ProtocolError(NetAccessError):
    """The portal answered with a page we could not classify."""

    exit_code = EXIT_PROTOCOL_ERROR

    def __init__(self, message: str, raw: str = "") -> None:
        super().__init__(message)
        self.raw = raw


class AddressUnavailable(NetAccessError):
    exit_code = EXIT_ADDRESS_UNAVAILABLE


class SessionStateError(RuntimeError):
    """Internal state machine corruption. Never expected at runtime."""
