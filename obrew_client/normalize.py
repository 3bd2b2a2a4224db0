"""
Response normalization - one canonical text value from any known envelope.

The backend has answered with several JSON shapes over time. Each shape
is an explicit envelope variant; classify() picks the first variant that
matches, in this fixed priority order:

    1. TextEnvelope      {"text": "..."}              (playground output)
    2. ResponseEnvelope  {"response": "..."}          (chatbot output)
    3. DataEnvelope      {"data": "..."}              (generic API envelope)
    4. ChoicesEnvelope   {"choices": [{...}, ...]}    (raw OpenAI-style)
    5. RawEnvelope       anything else, stringified

The order decides which field wins when a payload carries several of them,
so it must not change.
"""

import json
from dataclasses import dataclass
from typing import Any, Union


@dataclass(frozen=True)
class TextEnvelope:
    text: str


@dataclass(frozen=True)
class ResponseEnvelope:
    response: str

    @property
    def text(self) -> str:
        return self.response


@dataclass(frozen=True)
class DataEnvelope:
    data: str

    @property
    def text(self) -> str:
        return self.data


@dataclass(frozen=True)
class ChoicesEnvelope:
    choices: list

    @property
    def text(self) -> str:
        """First choice's text, else message.content, else delta.content, else ""."""
        if not self.choices:
            return ""
        first = self.choices[0]
        if not isinstance(first, dict):
            return ""
        if first.get("text"):
            return _as_text(first["text"])
        message = first.get("message")
        if isinstance(message, dict) and message.get("content"):
            return _as_text(message["content"])
        delta = first.get("delta")
        if isinstance(delta, dict) and delta.get("content"):
            return _as_text(delta["content"])
        return ""


@dataclass(frozen=True)
class RawEnvelope:
    value: Any

    @property
    def text(self) -> str:
        return _as_text(self.value)


Envelope = Union[TextEnvelope, ResponseEnvelope, DataEnvelope, ChoicesEnvelope, RawEnvelope]


def _as_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    try:
        return json.dumps(value)
    except (TypeError, ValueError):
        return str(value)


def classify(payload: Any) -> Envelope:
    """Decode a parsed JSON payload into its envelope variant."""
    if not isinstance(payload, dict):
        return RawEnvelope(payload)
    if payload.get("text"):
        return TextEnvelope(_as_text(payload["text"]))
    if payload.get("response"):
        return ResponseEnvelope(_as_text(payload["response"]))
    if isinstance(payload.get("data"), str) and payload["data"]:
        return DataEnvelope(payload["data"])
    if isinstance(payload.get("choices"), list):
        return ChoicesEnvelope(payload["choices"])
    return RawEnvelope(payload)


def extract_text(payload: Any) -> str:
    """Canonical text for a parsed JSON payload."""
    return classify(payload).text


def extract_text_from_raw(raw: str) -> str:
    """
    Canonical text for an unparsed payload string.

    A payload that is not valid JSON is itself the text; data is never
    dropped.
    """
    try:
        payload = json.loads(raw)
    except (json.JSONDecodeError, ValueError):
        return raw
    return extract_text(payload)
