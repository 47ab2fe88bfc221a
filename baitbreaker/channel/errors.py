from __future__ import annotations


ERROR_CHANNEL_DEAD = "CHANNEL_DEAD"
ERROR_CHANNEL_CLOSED = "CHANNEL_CLOSED"
ERROR_REQUEST_TIMEOUT = "REQUEST_TIMEOUT"
ERROR_UNKNOWN = "UNKNOWN"


class RequestError(Exception):
    error_type = ERROR_UNKNOWN

    def __init__(self, detail: str = ""):
        super().__init__(f"{self.error_type}: {detail}" if detail else self.error_type)
        self.detail = detail


class ChannelDead(RequestError):
    """The coordinator is unreachable for the rest of this requester's life."""

    error_type = ERROR_CHANNEL_DEAD


class ChannelClosed(RequestError):
    """The channel closed before a response arrived."""

    error_type = ERROR_CHANNEL_CLOSED


class RequestTimeout(RequestError):
    error_type = ERROR_REQUEST_TIMEOUT


TRANSIENT_ERRORS = (ChannelClosed, RequestTimeout)


# Raised by the transport itself; the requester maps them onto the taxonomy above.
class TransportError(Exception):
    pass


class TransportClosed(TransportError):
    pass


class TransportDead(TransportError):
    pass
