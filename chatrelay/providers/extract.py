"""
Answer extraction for completed backend jobs.

The status endpoint is not self-describing: different agents put the
answer in different places. EXTRACTORS is tried in order and the first
non-empty string wins, so the order below is the contract.
"""

from __future__ import annotations

import re
from typing import Callable

_TAG_RE = re.compile(r"<[^>]*>")

# Status phrases the backend puts in `message` that are not answers.
GENERIC_MESSAGES = frozenset({
    "Response generated",
    "Message received, processing started",
    "Request completed",
})

ALIAS_FIELDS = ("answer", "reply", "output", "text", "assistant_response", "ai_response")

PLACEHOLDER_REPLY = (
    "I processed your message successfully, but the response format from the "
    "backend needs adjustment. Check the server logs for the actual response structure."
)


def _text(value) -> str | None:
    if isinstance(value, str) and value:
        return value
    return None


def _first_field(obj, *keys) -> str | None:
    if not isinstance(obj, dict):
        return None
    for key in keys:
        found = _text(obj.get(key))
        if found:
            return found
    return None


def from_response_message(payload: dict) -> str | None:
    """{"response": {"message": "..."}}"""
    return _first_field(payload.get("response"), "message")


def from_response_string(payload: dict) -> str | None:
    """{"response": "..."}"""
    return _text(payload.get("response"))


def from_data(payload: dict) -> str | None:
    """{"data": {"message"|"response"|"content": "..."}} or {"data": "..."}"""
    data = payload.get("data")
    return _first_field(data, "message", "response", "content") or _text(data)


def from_content(payload: dict) -> str | None:
    return _text(payload.get("content"))


def from_result(payload: dict) -> str | None:
    """{"result": {"message"|"content": "..."}} or {"result": "..."}"""
    result = payload.get("result")
    return _first_field(result, "message", "content") or _text(result)


def from_html(payload: dict) -> str | None:
    """{"html": "<p>...</p>"} with tags stripped."""
    html = _text(payload.get("html"))
    if not html:
        return None
    return _text(_TAG_RE.sub("", html).strip())


def from_message(payload: dict) -> str | None:
    message = _text(payload.get("message"))
    if message and message not in GENERIC_MESSAGES:
        return message
    return None


def from_aliases(payload: dict) -> str | None:
    return _first_field(payload, *ALIAS_FIELDS)


EXTRACTORS: list[Callable[[dict], str | None]] = [
    from_response_message,
    from_response_string,
    from_data,
    from_content,
    from_result,
    from_html,
    from_message,
    from_aliases,
]


def extract_answer(payload: dict) -> tuple[str | None, str]:
    """
    Run the extractors in order.
    Returns (answer, extractor_name); answer is None when nothing matched.
    """
    for extractor in EXTRACTORS:
        found = extractor(payload)
        if found:
            return found, extractor.__name__
    return None, ""
