from __future__ import annotations

import re
from html.parser import HTMLParser
from typing import Any


# Display helpers for structured alert payloads. Alerts are stored as the
# provider returned them; rendering to text happens only at the edges
# (exports, API summaries), never inside compliance checks.

_CAMEL_BOUNDARY = re.compile(r"([A-Z])")
_ENCODED_VALUE = re.compile(r"^[A-Za-z0-9+/=_-]+$")
# Keys that carry opaque identifiers rather than anything an operator can read.
SKIP_ALERT_KEYS = frozenset({"alertDetails", "query", "requestId", "customerId", "nextPageToken", "messageId"})


class _TextExtractor(HTMLParser):
    def __init__(self) -> None:
        super().__init__(convert_charrefs=True)
        self._parts: list[str] = []

    def handle_data(self, data: str) -> None:
        self._parts.append(data)

    def text(self) -> str:
        return "".join(self._parts).strip()


def strip_html(value: str) -> str:
    parser = _TextExtractor()
    parser.feed(value)
    parser.close()
    return parser.text()


def humanize_key(key: str) -> str:
    # "customerPrimaryDomain" -> "customer Primary Domain"
    return _CAMEL_BOUNDARY.sub(r" \1", key).strip()


def flatten_description(value: Any) -> str:
    """Render a structured alert description as a single readable line.

    Strings containing markup are reduced to their text, sequences are joined
    with "; ", single-entry mappings unwrap to their value and other mappings
    render as "Key Words: value" pairs. Missing values render as "-".
    """
    if value is None:
        return "-"
    if isinstance(value, str):
        if "<" in value and ">" in value:
            return strip_html(value)
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, tuple)):
        return "; ".join(flatten_description(item) for item in value)
    if isinstance(value, dict):
        entries = [(key, item) for key, item in value.items() if key != "@type"]
        if len(entries) == 1:
            return flatten_description(entries[0][1])
        return ", ".join(f"{humanize_key(key)}: {flatten_description(item)}" for key, item in entries)
    return str(value)


def is_useful_field(key: str, value: Any) -> bool:
    if key in SKIP_ALERT_KEYS:
        return False
    text = flatten_description(value) or "-"
    if text == "-":
        return False
    # Long unbroken base64-like tokens are encoded ids, not content.
    if len(text) > 30 and " " not in text and _ENCODED_VALUE.match(text):
        return False
    return True


def summarize_alert(description: Any) -> list[tuple[str, str]]:
    """Return (label, text) pairs for the readable top-level fields of an alert payload."""
    if not isinstance(description, dict):
        text = flatten_description(description)
        return [] if text == "-" else [("description", text)]
    summary: list[tuple[str, str]] = []
    for key, value in description.items():
        if key == "@type" or not is_useful_field(key, value):
            continue
        summary.append((humanize_key(key), flatten_description(value)))
    return summary
