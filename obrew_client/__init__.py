"""
Client engine for the Obrew inference and model-management service.

Decodes Server-Sent-Event streams for chat generation and download
progress, and tracks every in-flight request so that one, several, or all
of them can be cancelled independently.
"""

from obrew_client.cancellation import CancellationToken
from obrew_client.client import ObrewClient, PingResult
from obrew_client.config import ConnectionConfig, InferenceOptions, Message
from obrew_client.connection import ConnectionState, ServiceCatalog
from obrew_client.errors import (
    ConnectionLostError,
    EndpointNotFoundError,
    NotConnectedError,
    ObrewError,
    RequestCancelled,
    ServiceError,
    TransportError,
)
from obrew_client.normalize import extract_text
from obrew_client.progress import (
    ProgressCallbacks,
    ProgressRecord,
    ProgressStatus,
    ProgressSubscription,
    ProgressTracker,
)
from obrew_client.sse import CommentFrame, DataFrame, EventFrame, StreamDecoder
from obrew_client.tracker import RequestTracker

__all__ = [
    "CancellationToken",
    "ObrewClient",
    "PingResult",
    "ConnectionConfig",
    "InferenceOptions",
    "Message",
    "ConnectionState",
    "ServiceCatalog",
    "ConnectionLostError",
    "EndpointNotFoundError",
    "NotConnectedError",
    "ObrewError",
    "RequestCancelled",
    "ServiceError",
    "TransportError",
    "extract_text",
    "ProgressCallbacks",
    "ProgressRecord",
    "ProgressStatus",
    "ProgressSubscription",
    "ProgressTracker",
    "CommentFrame",
    "DataFrame",
    "EventFrame",
    "StreamDecoder",
    "RequestTracker",
]
