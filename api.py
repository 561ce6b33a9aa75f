"""
api.py — Webhook notifications for pipe_record
"""

import asyncio
import datetime as dt
import logging
from typing import Dict, Optional

import aiohttp

logger = logging.getLogger("pipe_record")

EVENT_COLOURS = {"start": 0x2ECC71, "stop": 0x95A5A6, "failed": 0xE74C3C}


def build_embed(event: str, name: str, description: str, fields: Optional[Dict[str, str]] = None) -> dict:
    """Build a Discord-style embed for a session event."""
    now = dt.datetime.now()
    embed = {
        "title": f"{name}: recording {event}",
        "description": description,
        "fields": [{"name": "Date", "value": now.strftime("%Y-%m-%d %H:%M:%S"), "inline": True}],
        "timestamp": now.isoformat(),
    }
    for key, value in (fields or {}).items():
        embed["fields"].append({"name": key, "value": value, "inline": True})
    if event in EVENT_COLOURS:
        embed["color"] = EVENT_COLOURS[event]
    return embed


async def send_webhook_notification(
    webhook_url: str,
    event: str,
    name: str,
    description: str,
    fields: Optional[Dict[str, str]] = None,
    timeout: float = 5.0,
) -> bool:
    """Post a session event to a webhook.

    Failures are logged and never raised; a notification must not affect
    the recording.

    Args:
        webhook_url: Target URL; nothing is sent when empty
        event: ``start``, ``stop`` or ``failed``
        name: Session name
        description: Free text shown in the embed
        fields: Extra inline fields
        timeout: Total seconds allowed for the request

    Returns:
        bool: True if the webhook accepted the notification
    """
    if not webhook_url:
        logger.debug("Webhook URL not set, skipping notification.")
        return False

    payload = {"embeds": [build_embed(event, name, description, fields)]}

    try:
        async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=timeout)) as session:
            async with session.post(webhook_url, json=payload) as response:
                if 200 <= response.status < 300:
                    logger.debug(f"Webhook notification sent for {name} ({event})")
                    return True
                logger.warning(
                    f"Failed to send webhook notification for {name}: {response.status} {await response.text()}"
                )
    except (aiohttp.ClientError, asyncio.TimeoutError) as e:
        logger.error(f"Error sending webhook notification for {name}: {e}")
    return False
