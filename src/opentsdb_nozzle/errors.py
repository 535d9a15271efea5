"""
Custom exceptions for the OpenTSDB firehose nozzle.

Fatal errors stop the process at startup; transient errors are logged and
the pipeline keeps running.
"""

from typing import Optional


class NozzleError(Exception):
    """Base error for the nozzle."""

    pass


class ConfigError(NozzleError):
    """Configuration file unreadable, malformed or invalid."""

    pass


class AuthError(NozzleError):
    """UAA token could not be obtained."""

    pass


class LocalIPError(NozzleError):
    """Local IP address could not be resolved."""

    pass


class StartupError(NozzleError):
    """The first firehose subscription could not be established."""

    pass


class EnvelopeDecodeError(NozzleError):
    """A firehose frame is not a valid envelope."""

    pass


class TransportError(NozzleError):
    """Connection or DNS failure while talking to OpenTSDB."""

    pass


class PostError(NozzleError):
    """OpenTSDB answered with a status outside [200, 300)."""

    def __init__(self, status: int, body: str = ""):
        super().__init__(f"opentsdb request returned HTTP response: {status}")
        self.status = status
        self.body = body


# Close codes that mean the traffic controller dropped us for lagging behind
POLICY_VIOLATION = 1008
INTERNAL_SERVER_ERROR = 1011
SLOW_CONSUMER_CLOSE_CODES = frozenset({POLICY_VIOLATION, INTERNAL_SERVER_ERROR})


class FirehoseDisconnect(NozzleError):
    """The firehose subscription ended, for any reason."""

    def __init__(self, reason: str, code: Optional[int] = None):
        message = f"websocket: close {code} {reason}".rstrip() if code is not None else reason
        super().__init__(message)
        self.code = code
        self.reason = reason

    @property
    def indicates_slow_consumer(self) -> bool:
        return self.code in SLOW_CONSUMER_CLOSE_CODES
