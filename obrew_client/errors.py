"""
Error taxonomy for obrew-client.

Transport and service errors surface to the initiating call as exceptions.
Streamed operations report protocol-level failures through their terminal
callbacks instead (see progress.py).
"""

from typing import Optional


class ObrewError(Exception):
    """Base class for every error raised by obrew-client."""
    pass


class NotConnectedError(ObrewError):
    """A call was attempted while the client is disconnected."""

    def __init__(self, message: str = "Not connected to Obrew service"):
        super().__init__(message)


class TransportError(ObrewError):
    """No usable response could be obtained from the backend."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ConnectionLostError(TransportError):
    """The backend is unreachable; the connection should be treated as dead."""
    pass


class RequestCancelled(ObrewError):
    """The request's cancellation token fired before it finished."""

    def __init__(self, message: str = "Request was cancelled"):
        super().__init__(message)


class ServiceError(ObrewError):
    """The backend answered with a `success: false` envelope."""

    def __init__(self, message: str, endpoint: Optional[str] = None):
        super().__init__(message)
        self.endpoint = endpoint


class EndpointNotFoundError(ObrewError):
    """The service catalogue has no endpoint with the requested name."""
    pass
