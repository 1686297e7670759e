"""Error taxonomy for the proxy.

Only :class:`BindError` is fatal. Everything else is scoped to one exchange
(or one buffer, or one event) and is caught, logged with the exchange id and
replaced by a degraded result at the boundary where it occurs.
"""

from __future__ import annotations


class ProxyError(Exception):
    """Base class for proxy errors.

    Attributes:
        exchange_id: id of the exchange the error belongs to, if any.
    """

    def __init__(self, message: str, *, exchange_id: str | None = None) -> None:
        self.exchange_id = exchange_id
        super().__init__(message)


class BindError(ProxyError):
    """The listening socket could not be opened."""


class UpstreamUnreachable(ProxyError):
    """A connection to the upstream (or CONNECT target) could not be made."""


class DecodeFailure(ProxyError):
    """A body could not be decompressed with its declared content encoding."""


class MalformedEventPayload(ProxyError):
    """The data of a single stream event is not valid JSON."""


class UnrecognizedPayloadShape(ProxyError):
    """A body is not JSON, or not shaped like a conversation payload."""
