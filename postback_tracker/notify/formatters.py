"""Message formatting for postback notifications."""

import json
from typing import Any

from postback_tracker.queue.payload import QueuePayload


def _format_number(value: float) -> str:
    """Render 5.0 as '5' and 1234.5678 as '1234.5678'."""
    if float(value).is_integer():
        return str(int(value))
    return repr(float(value))


def format_telegram_message(event: QueuePayload) -> str:
    """
    Format a processed postback as a plain-text chat message.

    Args:
        event: Processed postback

    Returns:
        Message text
    """
    lines = [
        "🔔 New Postback Processed",
        "",
        f"Partner: {event.partner_id}",
        f"Time: {event.timestamp}",
    ]

    if event.click_id:
        lines.append(f"Click ID: {event.click_id}")
    if event.sum:
        lines.append(f"Conversion Value: {_format_number(event.sum)}")
    if event.sum_mapping:
        lines.append(f"Mapped Value: {_format_number(event.sum_mapping)}")

    lines.append(f"IP: {event.client_ip}")
    return "\n".join(lines)


def format_sheet_row(event: QueuePayload) -> list[Any]:
    """One spreadsheet row per processed postback."""
    return [
        event.timestamp,
        event.partner_id,
        event.click_id or "",
        event.sum if event.sum is not None else "",
        event.sum_mapping,
        event.client_ip,
        event.url,
        json.dumps(event.extra_params, ensure_ascii=False, sort_keys=True),
    ]


def serialize_event(event: QueuePayload) -> str:
    """Serialized form used for keyword whitelist matching."""
    return json.dumps(event.model_dump(), ensure_ascii=False)
