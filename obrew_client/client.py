"""
ObrewClient - explicit handle for one connection to an Obrew backend.

Responsibilities:
1. Handshake with the backend and hold its service catalogue
2. Send chat requests, streamed or one-shot, and return normalized text
3. Subscribe to download progress streams
4. Track every in-flight request so any of them can be cancelled
"""

import logging
import time
from typing import Any, Callable, Optional, Union

from pydantic import BaseModel, ValidationError

from obrew_client.cancellation import CancellationToken
from obrew_client.config import (
    DEFAULT_DOWNLOAD_PROGRESS_PATH,
    DOWNLOAD_PROGRESS_ENDPOINT,
    GENERATE_ENDPOINT,
    JSON_CONTENT_TYPE,
    TEXT_INFERENCE_SERVICE,
    ConnectionConfig,
    InferenceOptions,
    Message,
    build_generate_body,
    get_ping_timeout_seconds,
)
from obrew_client.connection import ConnectionState, Endpoint, ServiceCatalog
from obrew_client.errors import (
    ConnectionLostError,
    NotConnectedError,
    ObrewError,
    RequestCancelled,
    ServiceError,
)
from obrew_client.normalize import extract_text, extract_text_from_raw
from obrew_client.progress import ProgressCallbacks, ProgressSubscription, ProgressTracker
from obrew_client.sse import StreamDecoder
from obrew_client.tracker import RequestTracker
from obrew_client.transport import HttpTransport, StreamHandle, Transport

logger = logging.getLogger(__name__)


class PingResult(BaseModel):
    """Outcome of a health check."""
    success: bool
    response_time_ms: Optional[int] = None
    error: Optional[str] = None


def check_envelope(data: Any, endpoint_name: str) -> None:
    """Raise ServiceError for a generic `{success: false}` envelope."""
    if not isinstance(data, dict):
        return
    success = data.get("success")
    if isinstance(success, bool) and not success:
        reason = data.get("message") or data.get("detail")
        raise ServiceError(
            f"An unexpected error occurred for [{endpoint_name}] endpoint: {reason}",
            endpoint=endpoint_name,
        )


class ObrewClient:
    """
    One client, one backend, one active connection at a time.

    Usage:
        async with ObrewClient(ConnectionConfig(port="8008")) as client:
            if await client.connect():
                text = await client.send_message([Message(role="user", content="Hi")])
    """

    def __init__(
        self,
        config: Optional[ConnectionConfig] = None,
        transport: Optional[Transport] = None,
    ):
        self.config = config or ConnectionConfig.from_env()
        self.state = ConnectionState()
        self.requests = RequestTracker()
        self._transport = transport or HttpTransport(self.config.timeout_seconds)
        self._progress = ProgressTracker(
            self._transport,
            self.requests,
            self._download_progress_url,
            on_connection_lost=self._connection_lost,
        )
        self._last_request_id: Optional[str] = None

    async def __aenter__(self) -> "ObrewClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    # ─────────────────────────────────────────────────────────────────
    # CONNECTION
    # ─────────────────────────────────────────────────────────────────

    def is_connected(self) -> bool:
        return self.state.connected

    def _require_connected(self) -> ServiceCatalog:
        if not self.state.connected or self.state.capabilities is None:
            raise NotConnectedError()
        return self.state.capabilities

    def _connection_lost(self, error: ConnectionLostError) -> None:
        logger.warning(f"Lost connection to Obrew: {error}")
        self.state.reset()

    async def _get_json(self, url: str, token: Optional[CancellationToken] = None) -> Any:
        stream = await self._transport.open(
            url, method="GET", headers={"Content-Type": JSON_CONTENT_TYPE}, token=token
        )
        if token is not None:
            return await token.run(stream.json())
        return await stream.json()

    async def _handshake(
        self,
        config: ConnectionConfig,
        token: Optional[CancellationToken] = None,
    ) -> ServiceCatalog:
        """GET /{version}/connect, then the service catalogue."""
        conn = await self._get_json(config.versioned_url("connect"), token)
        if not isinstance(conn, dict) or not conn.get("success"):
            message = conn.get("message") if isinstance(conn, dict) else None
            raise ServiceError(message or "Handshake rejected by backend", endpoint="connect")

        services = await self._get_json(config.versioned_url("services/api"), token)
        if not isinstance(services, dict) or not services.get("success"):
            raise ServiceError("No api returned.", endpoint="services/api")
        catalog = ServiceCatalog.from_response(services.get("data") or [])
        if not catalog:
            raise ServiceError("No api returned.", endpoint="services/api")
        return catalog

    async def connect(
        self,
        config: Optional[ConnectionConfig] = None,
        token: Optional[CancellationToken] = None,
    ) -> bool:
        """
        Handshake with the backend and load its service catalogue.

        Returns False (and logs why) on any failure, or if a connection is
        already active.
        """
        if self.state.connected:
            logger.info("Connection is already active")
            return False

        config = config or self.config
        try:
            catalog = await self._handshake(config, token)
        except (ObrewError, ValidationError) as e:
            logger.error(f"Failed to connect to Obrew at {config.origin}: {e}")
            self.state.reset()
            return False

        self.config = config
        self.state.enable(catalog)
        logger.info(f"Connected to Obrew API at {config.origin}")
        return True

    async def ping(self, timeout: Optional[float] = None) -> PingResult:
        """
        Check that the backend answers the handshake within `timeout` seconds.

        Never raises; does not change the connection state.
        """
        if timeout is None:
            timeout = get_ping_timeout_seconds()
        token = CancellationToken.with_timeout(timeout)
        start = time.perf_counter()
        try:
            conn = await self._get_json(self.config.versioned_url("connect"), token)
            if not isinstance(conn, dict) or not conn.get("success"):
                message = conn.get("message") if isinstance(conn, dict) else None
                raise ServiceError(message or "Connection failed", endpoint="connect")
            elapsed_ms = round((time.perf_counter() - start) * 1000)
            return PingResult(success=True, response_time_ms=elapsed_ms)
        except ObrewError as e:
            return PingResult(success=False, error=str(e) or "Connection failed")
        finally:
            token.dispose()

    def disconnect(self) -> None:
        """Cancel everything in flight and drop the connection."""
        self.cancel_all("Client disconnected")
        self.state.reset()
        logger.info("Disconnected from Obrew API")

    async def aclose(self) -> None:
        """Disconnect and close the underlying HTTP connection pool."""
        self.disconnect()
        await self._transport.aclose()

    # ─────────────────────────────────────────────────────────────────
    # REQUESTS
    # ─────────────────────────────────────────────────────────────────

    def _begin(self, request_id: Optional[str]) -> tuple[str, CancellationToken]:
        request_id, token = self.requests.begin(request_id)
        self._last_request_id = request_id
        return request_id, token

    async def _open(
        self,
        endpoint: Endpoint,
        token: CancellationToken,
        body: Any = None,
        params: Optional[dict[str, Any]] = None,
    ) -> StreamHandle:
        method = endpoint.method.upper()
        headers = {"Content-Type": JSON_CONTENT_TYPE} if method == "POST" else None
        return await self._transport.open(
            self.config.url(endpoint.url_path),
            method=method,
            headers=headers,
            body=body,
            params=params,
            token=token,
        )

    async def _read_text(
        self,
        stream: StreamHandle,
        token: CancellationToken,
        endpoint_name: str,
        on_text: Optional[Callable[[str], None]] = None,
    ) -> str:
        """Normalized text from either an event stream or a JSON body."""
        if stream.is_event_stream:
            def on_data(payload: str) -> None:
                if on_text is not None:
                    on_text(extract_text_from_raw(payload))

            result = await StreamDecoder(stream, token).decode(
                on_data=on_data, accumulate_text=True
            )
            if result.aborted:
                token.raise_if_cancelled()
                raise RequestCancelled()
            return result.text

        data = await token.run(stream.json())
        if isinstance(data, str):
            return data
        check_envelope(data, endpoint_name)
        return extract_text(data)

    async def send_message(
        self,
        messages: list[Union[Message, dict]],
        options: Optional[Union[InferenceOptions, dict]] = None,
        request_id: Optional[str] = None,
        on_text: Optional[Callable[[str], None]] = None,
    ) -> str:
        """
        Send a chat request and return the full response text.

        Streams when the backend answers with an event stream (on_text then
        receives each text delta as it arrives), otherwise reads one JSON
        body.

        Raises:
            NotConnectedError: client is not connected
            RequestCancelled: cancel()/cancel_all() fired for this request
            ConnectionLostError: backend unreachable (client disconnects)
            TransportError / ServiceError: backend failure
        """
        catalog = self._require_connected()
        endpoint = catalog.endpoint(TEXT_INFERENCE_SERVICE, GENERATE_ENDPOINT)
        body = build_generate_body(
            [m if isinstance(m, Message) else Message.model_validate(m) for m in messages],
            options,
        )

        request_id, token = self._begin(request_id)
        try:
            stream = await self._open(endpoint, token, body=body)
            return await self._read_text(stream, token, endpoint.name, on_text=on_text)
        except ConnectionLostError as e:
            self._connection_lost(e)
            raise
        finally:
            self.requests.end(request_id, token)

    async def call(
        self,
        service: str,
        endpoint_name: str,
        body: Any = None,
        query_params: Optional[dict[str, Any]] = None,
        request_id: Optional[str] = None,
    ) -> Any:
        """
        Call any catalogue endpoint and return its parsed JSON.

        Event-stream answers are decoded and returned as normalized text.
        """
        catalog = self._require_connected()
        endpoint = catalog.endpoint(service, endpoint_name)

        request_id, token = self._begin(request_id)
        try:
            stream = await self._open(endpoint, token, body=body, params=query_params)
            if stream.is_event_stream:
                return await self._read_text(stream, token, endpoint.name)
            data = await token.run(stream.json())
            check_envelope(data, endpoint.name)
            return data
        except ConnectionLostError as e:
            self._connection_lost(e)
            raise
        finally:
            self.requests.end(request_id, token)

    # ─────────────────────────────────────────────────────────────────
    # DOWNLOAD PROGRESS
    # ─────────────────────────────────────────────────────────────────

    def _download_progress_url(self) -> str:
        catalog = self.state.capabilities
        if catalog and catalog.has_endpoint(TEXT_INFERENCE_SERVICE, DOWNLOAD_PROGRESS_ENDPOINT):
            endpoint = catalog.endpoint(TEXT_INFERENCE_SERVICE, DOWNLOAD_PROGRESS_ENDPOINT)
            return self.config.url(endpoint.url_path)
        return self.config.versioned_url(DEFAULT_DOWNLOAD_PROGRESS_PATH)

    async def subscribe_to_progress(
        self,
        task_id: str,
        callbacks: Optional[ProgressCallbacks] = None,
        subscription_id: Optional[str] = None,
    ) -> ProgressSubscription:
        """
        Follow a download until it completes, fails, or is cancelled.

        Raises if the progress stream cannot be opened; afterwards every
        outcome arrives through exactly one terminal callback.
        """
        self._require_connected()
        try:
            subscription = await self._progress.subscribe(task_id, callbacks, subscription_id)
        except ConnectionLostError as e:
            self._connection_lost(e)
            raise
        self._last_request_id = subscription.id
        return subscription

    # ─────────────────────────────────────────────────────────────────
    # CANCELLATION
    # ─────────────────────────────────────────────────────────────────

    def cancel(self, request_id: Optional[str] = None) -> bool:
        """
        Cancel one request. Without an id, cancels the most recently started one.

        Returns False if there was nothing to cancel.
        """
        request_id = request_id or self._last_request_id
        if request_id is None:
            return False
        return self.requests.cancel(request_id)

    def cancel_all(self, reason: Optional[str] = None) -> int:
        """Cancel every in-flight request and progress subscription."""
        return self.requests.cancel_all(reason)
