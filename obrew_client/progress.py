"""
Download progress tracking over an event stream.

The backend publishes one JSON record per data frame while a model
download runs:

    {"task_id": "...", "secondary_task_id": "...", "status": "downloading",
     "primary_progress": {"downloaded_bytes": ..., "total_bytes": ...,
                          "percent": ..., "speed_mbps": ..., "eta_seconds": ...,
                          "status": "..."},
     "secondary_progress": {...}, "error": "...", "file_path": "..."}

Each record fully replaces the previous one. A subscription ends with
exactly one of on_complete / on_error / on_cancel; nothing fires after it.
"""

import asyncio
import inspect
import json
import logging
from contextlib import aclosing
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional, Union

from pydantic import BaseModel, ValidationError, model_validator

from obrew_client.cancellation import CancellationToken
from obrew_client.config import EVENT_STREAM_CONTENT_TYPE
from obrew_client.errors import ConnectionLostError, RequestCancelled, TransportError
from obrew_client.sse import DataFrame, StreamDecoder
from obrew_client.tracker import RequestTracker, new_request_id
from obrew_client.transport import StreamHandle, Transport

logger = logging.getLogger(__name__)

STREAM_CLOSED_MESSAGE = "Progress stream closed before download finished"
DEFAULT_ERROR_MESSAGE = "Download failed"


# ─────────────────────────────────────────────────────────────────────
# RECORDS
# ─────────────────────────────────────────────────────────────────────

class ProgressStatus(str, Enum):
    PENDING = "pending"
    DOWNLOADING = "downloading"
    COMPLETED = "completed"
    ERROR = "error"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (ProgressStatus.COMPLETED, ProgressStatus.ERROR, ProgressStatus.CANCELLED)


class FileProgress(BaseModel):
    """Transfer progress of one file."""
    downloaded_bytes: int = 0
    total_bytes: int = 0
    percent: float = 0.0
    speed_mbps: float = 0.0
    eta_seconds: Optional[float] = None
    # Free-form per-file stage; only ProgressRecord.status is interpreted
    status: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _derive_percent(cls, data: Any) -> Any:
        if isinstance(data, dict) and data.get("percent") is None:
            total = data.get("total_bytes") or 0
            done = data.get("downloaded_bytes") or 0
            if total:
                data = {**data, "percent": round(done * 100.0 / total, 2)}
        return data


class ProgressRecord(BaseModel):
    """One normalized progress snapshot."""
    primary_task_id: str
    secondary_task_id: Optional[str] = None
    status: ProgressStatus
    primary_progress: FileProgress
    secondary_progress: Optional[FileProgress] = None
    error: Optional[str] = None
    file_path: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: dict) -> "ProgressRecord":
        """Map the backend's field names onto the record."""
        status = payload.get("status")
        primary = payload.get("primary_progress") or {"status": status}
        return cls(
            primary_task_id=payload["task_id"],
            secondary_task_id=payload.get("secondary_task_id"),
            status=status,
            primary_progress=primary,
            secondary_progress=payload.get("secondary_progress"),
            error=payload.get("error"),
            file_path=payload.get("file_path"),
        )


def parse_progress(raw: Union[str, dict]) -> Optional[ProgressRecord]:
    """Parse one data payload. Returns None for anything that is not a progress record."""
    try:
        payload = json.loads(raw) if isinstance(raw, str) else raw
        if not isinstance(payload, dict):
            return None
        return ProgressRecord.from_payload(payload)
    except (json.JSONDecodeError, ValueError, KeyError, TypeError, ValidationError) as e:
        logger.debug(f"Skipping unparseable progress frame: {e}")
        return None


# ─────────────────────────────────────────────────────────────────────
# SUBSCRIPTIONS
# ─────────────────────────────────────────────────────────────────────

@dataclass
class ProgressCallbacks:
    """Callbacks may be plain functions or coroutine functions."""
    on_progress: Optional[Callable[[ProgressRecord], Any]] = None
    on_complete: Optional[Callable[[Optional[str]], Any]] = None
    on_error: Optional[Callable[[str], Any]] = None
    on_cancel: Optional[Callable[[], Any]] = None


async def _invoke(callback: Optional[Callable], *args: Any) -> None:
    if callback is None:
        return
    try:
        result = callback(*args)
        if inspect.isawaitable(result):
            await result
    except Exception as e:
        logger.warning(f"Progress callback {getattr(callback, '__name__', callback)!r} failed: {e}")


class ProgressSubscription:
    """Handle for one progress stream."""

    def __init__(
        self,
        subscription_id: str,
        task_id: str,
        token: CancellationToken,
        tracker: "ProgressTracker",
    ):
        self.id = subscription_id
        self.task_id = task_id
        self.outcome: Optional[ProgressStatus] = None
        self.last_record: Optional[ProgressRecord] = None
        self._token = token
        self._tracker = tracker
        self._task: Optional[asyncio.Task] = None

    def __repr__(self) -> str:
        state = self.outcome.value if self.outcome else "active"
        return f"<ProgressSubscription {self.id} task={self.task_id} {state}>"

    @property
    def done(self) -> bool:
        return self.outcome is not None

    def cancel(self) -> bool:
        return self._tracker.cancel(self)

    async def wait(self) -> Optional[ProgressStatus]:
        """Wait for the terminal callback to have fired; return the outcome."""
        if self._task is not None:
            await asyncio.shield(self._task)
        return self.outcome

    async def _settle(self, outcome: ProgressStatus, callback: Optional[Callable], *args: Any) -> bool:
        if self.outcome is not None:
            return False
        self.outcome = outcome
        logger.debug(f"Subscription {self.id} finished: {outcome.value}")
        await _invoke(callback, *args)
        return True


class ProgressTracker:
    """
    Subscribe to / cancel download progress streams.

    Usage:
        tracker = ProgressTracker(transport, requests, progress_url)
        sub = await tracker.subscribe("task-1", ProgressCallbacks(on_progress=print))
        ...
        tracker.cancel(sub)
    """

    def __init__(
        self,
        transport: Transport,
        requests: RequestTracker,
        url: Union[str, Callable[[], str]],
        on_connection_lost: Optional[Callable[[ConnectionLostError], Any]] = None,
    ):
        self._transport = transport
        self._requests = requests
        self._url = url
        self._on_connection_lost = on_connection_lost

    def _progress_url(self) -> str:
        return self._url() if callable(self._url) else self._url

    async def subscribe(
        self,
        task_id: str,
        callbacks: Optional[ProgressCallbacks] = None,
        subscription_id: Optional[str] = None,
    ) -> ProgressSubscription:
        """
        Open the progress stream for `task_id` and start consuming it.

        Failure to open the stream is raised here, not reported through
        on_error.
        """
        callbacks = callbacks or ProgressCallbacks()
        subscription_id, token = self._requests.begin(
            subscription_id or f"progress:{task_id}:{new_request_id()[:8]}"
        )
        try:
            stream = await self._transport.open(
                self._progress_url(),
                method="GET",
                headers={"Accept": EVENT_STREAM_CONTENT_TYPE},
                params={"task_id": task_id},
                token=token,
            )
        except BaseException:
            self._requests.end(subscription_id, token)
            raise

        subscription = ProgressSubscription(subscription_id, task_id, token, self)
        subscription._task = asyncio.create_task(
            self._consume(subscription, stream, callbacks),
            name=f"obrew-{subscription_id}",
        )
        logger.info(f"Subscribed to download progress of {task_id} ({subscription_id})")
        return subscription

    def cancel(self, subscription: ProgressSubscription) -> bool:
        return self._requests.cancel(subscription.id)

    async def _handle(
        self,
        subscription: ProgressSubscription,
        record: ProgressRecord,
        callbacks: ProgressCallbacks,
    ) -> bool:
        """Dispatch one record. Returns True once the subscription is terminal."""
        subscription.last_record = record
        if record.status is ProgressStatus.COMPLETED:
            await subscription._settle(ProgressStatus.COMPLETED, callbacks.on_complete, record.file_path)
        elif record.status is ProgressStatus.ERROR:
            await subscription._settle(
                ProgressStatus.ERROR, callbacks.on_error, record.error or DEFAULT_ERROR_MESSAGE
            )
        elif record.status is ProgressStatus.CANCELLED:
            await subscription._settle(ProgressStatus.CANCELLED, callbacks.on_cancel)
        else:
            await _invoke(callbacks.on_progress, record)
        return subscription.done

    async def _consume(
        self,
        subscription: ProgressSubscription,
        stream: StreamHandle,
        callbacks: ProgressCallbacks,
    ) -> None:
        token = subscription._token
        try:
            if stream.is_event_stream:
                decoder = StreamDecoder(stream, token)
                async with aclosing(decoder.frames()) as frames:
                    async for frame in frames:
                        if not isinstance(frame, DataFrame):
                            continue
                        record = parse_progress(frame.payload)
                        if record is None:
                            continue
                        if await self._handle(subscription, record, callbacks):
                            break
            else:
                record = parse_progress(await token.run(stream.json()))
                if record is not None:
                    await self._handle(subscription, record, callbacks)
        except RequestCancelled:
            await subscription._settle(ProgressStatus.CANCELLED, callbacks.on_cancel)
        except TransportError as e:
            if isinstance(e, ConnectionLostError) and self._on_connection_lost:
                self._on_connection_lost(e)
            if token.cancelled:
                await subscription._settle(ProgressStatus.CANCELLED, callbacks.on_cancel)
            else:
                logger.warning(f"Progress stream for {subscription.task_id} failed: {e}")
                await subscription._settle(ProgressStatus.ERROR, callbacks.on_error, str(e))
        except asyncio.CancelledError:
            await subscription._settle(ProgressStatus.CANCELLED, callbacks.on_cancel)
            raise
        finally:
            self._requests.end(subscription.id, token)

        if not subscription.done:
            if token.cancelled:
                await subscription._settle(ProgressStatus.CANCELLED, callbacks.on_cancel)
            else:
                await subscription._settle(ProgressStatus.ERROR, callbacks.on_error, STREAM_CLOSED_MESSAGE)
