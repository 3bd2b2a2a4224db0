"""
Transport - opens HTTP responses as incrementally readable streams.

Every request, one-shot or streamed, goes through open(): the caller gets
a StreamHandle carrying status and content-type, and decides from those
whether to read one JSON body or hand the handle to the stream decoder.
Failing to open is raised to the caller; it is never reported through a
stream callback.
"""

import json
import logging
from typing import Any, AsyncIterator, Optional, Protocol

import httpx

from obrew_client.cancellation import CancellationToken
from obrew_client.config import DEFAULT_TIMEOUT_SECONDS, EVENT_STREAM_CONTENT_TYPE
from obrew_client.errors import ConnectionLostError, TransportError

logger = logging.getLogger(__name__)

# Lower-cased fragments of error messages that mean the backend is gone
CONNECTION_LOSS_SIGNATURES: tuple[str, ...] = (
    "connection refused",
    "connection reset",
    "connection aborted",
    "failed to fetch",
    "network error",
    "networkerror",
    "name or service not known",
    "nodename nor servname",
    "all connection attempts failed",
    "server disconnected",
    "broken pipe",
)


def is_connection_loss(error: BaseException) -> bool:
    """True if `error` means the backend cannot be reached at all."""
    if isinstance(error, (httpx.NetworkError, httpx.RemoteProtocolError)):
        return True
    message = str(error).lower()
    return any(signature in message for signature in CONNECTION_LOSS_SIGNATURES)


def wrap_http_error(error: Exception, context: str) -> TransportError:
    """Translate an httpx (or socket) error into the obrew taxonomy."""
    if is_connection_loss(error):
        return ConnectionLostError(f"Connection lost {context}: {error}")
    if isinstance(error, httpx.TimeoutException):
        return TransportError(f"Timed out {context}: {error}")
    return TransportError(f"HTTP error {context}: {error}")


def parse_error_body(body: bytes, status_code: int) -> str:
    """Extract a user-friendly error message from an error response body."""
    text = body.decode("utf-8", errors="replace")
    try:
        data = json.loads(text)
    except (json.JSONDecodeError, ValueError):
        return f"HTTP {status_code}: {text[:200]}"
    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str) and error:
            return error
        for key in ("message", "detail"):
            if data.get(key):
                return str(data[key])
    return f"HTTP {status_code}: {text[:200]}"


class StreamHandle(Protocol):
    """An open response body."""

    status_code: int
    content_type: str

    @property
    def is_event_stream(self) -> bool:
        ...

    def aiter_bytes(self) -> AsyncIterator[bytes]:
        ...

    async def json(self) -> Any:
        ...

    async def aclose(self) -> None:
        ...


class Transport(Protocol):
    """Contract the client core needs from the network layer."""

    async def open(
        self,
        url: str,
        method: str = "GET",
        headers: Optional[dict[str, str]] = None,
        body: Any = None,
        params: Optional[dict[str, Any]] = None,
        token: Optional[CancellationToken] = None,
    ) -> StreamHandle:
        ...

    async def aclose(self) -> None:
        ...


class HttpStream:
    """StreamHandle over an httpx streaming response."""

    def __init__(self, response: httpx.Response):
        self._response = response
        self._closed = False
        self.status_code = response.status_code
        self.content_type = response.headers.get("content-type", "")

    def __repr__(self) -> str:
        return f"<HttpStream {self.status_code} {self.content_type!r} {self._response.url}>"

    @property
    def is_event_stream(self) -> bool:
        return EVENT_STREAM_CONTENT_TYPE in self.content_type.lower()

    async def aiter_bytes(self) -> AsyncIterator[bytes]:
        try:
            async for chunk in self._response.aiter_bytes():
                yield chunk
        except httpx.StreamClosed:
            return
        except httpx.HTTPError as e:
            raise wrap_http_error(e, f"reading {self._response.url}") from e

    async def json(self) -> Any:
        """Read the whole body as JSON and release the response."""
        try:
            body = await self._response.aread()
        except httpx.HTTPError as e:
            raise wrap_http_error(e, f"reading {self._response.url}") from e
        finally:
            await self.aclose()
        try:
            return json.loads(body)
        except (json.JSONDecodeError, ValueError) as e:
            raise TransportError(
                f"Invalid JSON from {self._response.url}: {body[:200]!r}",
                status_code=self.status_code,
            ) from e

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._response.aclose()


class HttpTransport:
    """
    httpx implementation of Transport.

    One AsyncClient (one connection pool) is shared by every request the
    owning client makes. Reads have no timeout so that long-lived event
    streams can sit idle; connecting and writing do.
    """

    def __init__(
        self,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._timeout = httpx.Timeout(timeout_seconds, read=None)
        self._client = client
        self._owns_client = client is None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    async def open(
        self,
        url: str,
        method: str = "GET",
        headers: Optional[dict[str, str]] = None,
        body: Any = None,
        params: Optional[dict[str, Any]] = None,
        token: Optional[CancellationToken] = None,
    ) -> HttpStream:
        """
        Send a request and return its response with the body unread.

        Raises:
            RequestCancelled: token fired before the response arrived
            ConnectionLostError: backend unreachable
            TransportError: any other failure, including HTTP status >= 400
        """
        token = token or CancellationToken()
        token.raise_if_cancelled()

        request = self.client.build_request(
            method.upper(),
            url,
            headers=headers,
            json=body,
            params=params,
        )
        logger.debug(f"{request.method} {request.url}")

        try:
            response = await token.run(self.client.send(request, stream=True))
        except httpx.HTTPError as e:
            raise wrap_http_error(e, f"opening {url}") from e
        except OSError as e:
            raise wrap_http_error(e, f"opening {url}") from e

        if response.status_code >= 400:
            try:
                error_body = await response.aread()
            except httpx.HTTPError:
                error_body = b""
            finally:
                await response.aclose()
            message = parse_error_body(error_body, response.status_code)
            raise TransportError(
                f"Obrew error for {request.method} {url}: {message}",
                status_code=response.status_code,
            )

        stream = HttpStream(response)
        if stream.is_event_stream:
            logger.debug(f"Event stream opened: {url}")
        return stream

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
