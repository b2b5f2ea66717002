"""Block-entry classifier: tells generated placeholders apart from real events.

Placeholders written by this service carry an explicit private extended
property. Entries without it (created by older deployments, or copied by
hand) are recognised by the title/description heuristic instead.
"""
from typing import Any, Optional

from calmirror.config import settings

BLOCK_MARKER_KEY = "calmirrorBlock"
BLOCK_SOURCE_KEY = "calmirrorSourceCalendar"


def block_description(product_tag: str) -> str:
    return f"Private block event created by {product_tag}"


def marker_properties(source_calendar_id: str) -> dict[str, dict[str, str]]:
    """Extended properties stamped on every placeholder at creation time."""
    return {
        "private": {
            BLOCK_MARKER_KEY: "true",
            BLOCK_SOURCE_KEY: source_calendar_id,
        }
    }


def has_block_marker(event: dict[str, Any]) -> bool:
    private = (event.get("extendedProperties") or {}).get("private") or {}
    return private.get(BLOCK_MARKER_KEY) == "true"


def is_block_entry(
    event: Optional[dict[str, Any]],
    source_alias: Optional[str],
    product_tag: Optional[str] = None,
) -> bool:
    """Return True if ``event`` is a placeholder and must not be propagated.

    Pure: no I/O. Events without a title or description are genuine.
    """
    if not event:
        return False
    if has_block_marker(event):
        return True

    tag = product_tag or settings.PRODUCT_TAG
    summary = (event.get("summary") or "").lower()
    if summary and "block" in summary:
        tokens = ["calendar", tag.lower()]
        if source_alias:
            tokens.append(source_alias.lower())
        if any(token in summary for token in tokens):
            return True

    description = event.get("description") or ""
    return tag in description
