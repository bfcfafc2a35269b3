"""Exception hierarchy for the Arc bridge.

Everything derives from :class:`ArcBridgeError`. Protocol errors are raised by
the codec's strict parser only; the bridge itself discards them because a
noisy serial link produces garbage lines as a matter of course.
"""


class ArcBridgeError(Exception):
    """Base exception for all bridge errors."""


class ConnectionError(ArcBridgeError):  # noqa: A001 - intentional shadow of builtin
    """Raised when a device handle cannot be opened."""


class WriteError(ArcBridgeError):
    """Raised when a command cannot be written to the device."""


class MalformedLineError(ArcBridgeError):
    """Raised when an incoming line does not match the encoder pattern."""


class UnsupportedChannelError(ArcBridgeError):
    """Raised when a channel index falls outside the four encoder rings."""


class UnknownParameterError(ArcBridgeError, KeyError):
    """Raised when a parameter name has no channel mapping."""


class ConfigError(ArcBridgeError, ValueError):
    """Raised when a configuration file is invalid."""
