"""
Configuration constants and Pydantic models for obrew-client.
"""

import os
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


# ─────────────────────────────────────────────────────────────────────
# DEFAULTS - Overridable via environment
# ─────────────────────────────────────────────────────────────────────

DEFAULT_DOMAIN: str = "http://localhost"
DEFAULT_PORT: str = "8008"
DEFAULT_API_VERSION: str = "v1"
DEFAULT_TIMEOUT_SECONDS: float = 60.0
DEFAULT_PING_TIMEOUT_SECONDS: float = 5.0

DEFAULT_TEMPERATURE: float = 0.7
DEFAULT_MAX_TOKENS: int = 2048
DEFAULT_RESPONSE_MODE: str = "chat"


# ─────────────────────────────────────────────────────────────────────
# INTERNAL CONSTANTS
# ─────────────────────────────────────────────────────────────────────

# Backends bound to all interfaces report this host; it is not dialable
UNSPECIFIED_HOST: str = "0.0.0.0"

EVENT_STREAM_CONTENT_TYPE: str = "text/event-stream"
JSON_CONTENT_TYPE: str = "application/json"

TEXT_INFERENCE_SERVICE: str = "textInference"
GENERATE_ENDPOINT: str = "generate"
DOWNLOAD_PROGRESS_ENDPOINT: str = "downloadProgress"
DEFAULT_DOWNLOAD_PROGRESS_PATH: str = "/text-inference/models/download/progress"


# ─────────────────────────────────────────────────────────────────────
# ENVIRONMENT LOADING
# ─────────────────────────────────────────────────────────────────────

def get_domain() -> str:
    """
    Get backend domain from environment or default.

    Set OBREW_DOMAIN in .env (default: http://localhost).
    """
    return os.environ.get("OBREW_DOMAIN", "").strip() or DEFAULT_DOMAIN


def get_port() -> str:
    """
    Get backend port from environment or default.

    Set OBREW_PORT in .env (default: 8008). Non-numeric values are ignored.
    """
    port = os.environ.get("OBREW_PORT", DEFAULT_PORT).strip()
    try:
        int(port)
    except ValueError:
        return DEFAULT_PORT
    return port


def get_api_version() -> str:
    """Get API version path segment. Set OBREW_API_VERSION (default: v1)."""
    return os.environ.get("OBREW_API_VERSION", "").strip() or DEFAULT_API_VERSION


def get_timeout_seconds() -> float:
    """
    Get request timeout in seconds.

    Set OBREW_TIMEOUT_SECONDS in .env (default: 60).
    """
    try:
        return float(os.environ.get("OBREW_TIMEOUT_SECONDS", DEFAULT_TIMEOUT_SECONDS))
    except ValueError:
        return DEFAULT_TIMEOUT_SECONDS


def get_ping_timeout_seconds() -> float:
    """
    Get health-check timeout in seconds.

    Set OBREW_PING_TIMEOUT_SECONDS in .env (default: 5).
    """
    try:
        return float(
            os.environ.get("OBREW_PING_TIMEOUT_SECONDS", DEFAULT_PING_TIMEOUT_SECONDS)
        )
    except ValueError:
        return DEFAULT_PING_TIMEOUT_SECONDS


# ─────────────────────────────────────────────────────────────────────
# DATA MODELS
# ─────────────────────────────────────────────────────────────────────

class ConnectionConfig(BaseModel):
    """Where the backend lives and how long to wait for it."""
    domain: str = DEFAULT_DOMAIN
    port: str = DEFAULT_PORT
    version: str = DEFAULT_API_VERSION
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS

    @classmethod
    def from_env(cls) -> "ConnectionConfig":
        return cls(
            domain=get_domain(),
            port=get_port(),
            version=get_api_version(),
            timeout_seconds=get_timeout_seconds(),
        )

    @property
    def origin(self) -> str:
        """Fully qualified origin, e.g. "http://localhost:8008"."""
        domain = self.domain.strip().rstrip("/")
        if not domain or domain == UNSPECIFIED_HOST:
            domain = DEFAULT_DOMAIN
        elif "://" not in domain:
            domain = f"http://{domain}"
        port = self.port.strip() or DEFAULT_PORT
        return f"{domain}:{port}"

    def url(self, path: str) -> str:
        """Join an absolute endpoint path onto the origin."""
        if not path.startswith("/"):
            path = f"/{path}"
        return f"{self.origin}{path}"

    def versioned_url(self, path: str) -> str:
        """Join a path under the API version prefix, e.g. /v1/connect."""
        return self.url(f"/{self.version}/{path.lstrip('/')}")


class Message(BaseModel):
    """A single chat message."""
    role: str  # "system", "user", or "assistant"
    content: str
    id: Optional[str] = None


class InferenceOptions(BaseModel):
    """
    Generation options sent with a text inference request.

    Unknown keys are passed through to the backend untouched so newer
    server-side knobs do not need a client release.
    """
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    response_mode: str = Field(default=DEFAULT_RESPONSE_MODE, alias="responseMode")
    temperature: float = DEFAULT_TEMPERATURE
    max_tokens: int = DEFAULT_MAX_TOKENS
    stream: bool = False
    top_p: Optional[float] = None
    top_k: Optional[int] = None
    min_p: Optional[float] = None
    repeat_penalty: Optional[float] = None
    stop: Optional[str] = None
    seed: Optional[int] = None
    system_message: Optional[str] = Field(default=None, alias="systemMessage")
    tool_use_mode: Optional[str] = Field(default=None, alias="toolUseMode")
    tool_response_mode: Optional[str] = Field(default=None, alias="toolResponseMode")
    tools: Optional[list[str]] = None

    def to_payload(self) -> dict[str, Any]:
        """Wire representation: backend aliases, unset optionals omitted."""
        return self.model_dump(by_alias=True, exclude_none=True)


def build_generate_body(
    messages: list[Message],
    options: Optional[InferenceOptions | dict] = None,
) -> dict[str, Any]:
    """
    Build the body for a text inference generate call.

    Options given as a dict are validated through InferenceOptions so
    either snake_case or the backend's camelCase keys work.
    """
    if options is None:
        options = InferenceOptions()
    elif isinstance(options, dict):
        options = InferenceOptions.model_validate(options)
    body = {"messages": [m.model_dump(exclude_none=True) for m in messages]}
    body.update(options.to_payload())
    return body
