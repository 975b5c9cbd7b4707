"""External sinks for finished artifacts.

This module handles output beyond the real-time connection:
- Markdown copies of research newsletters saved to disk
- Webhook POST notifications for newsletters and alerts
- JSONL alerts file

All notification methods are async and fail gracefully (errors are logged
but don't affect other notifications or the pipeline). Delivery to connected
clients goes through the DeliveryBroker, never through here.

Output Formats:
    Markdown: Newsletter body with a metadata header
    Webhook: JSON payload {"type": ..., "timestamp": ..., "stream_id": ..., "data": {...}}
    JSONL: One JSON object per line for log aggregation
"""

import asyncio
import json
import logging
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import aiohttp

from config import Config
from models.artifacts import NewsAlert, Newsletter

logger = logging.getLogger(__name__)


def _sanitize_filename(title: str, max_length: int = 50) -> str:
    """Sanitize a title for use as a filename, truncating at a word boundary."""
    s = re.sub(r'[<>:"/\\|?*\n\r\t]', " ", title)
    s = re.sub(r"\s+", " ", s).strip()

    if len(s) > max_length:
        s = s[:max_length]
        last_space = s.rfind(" ")
        if last_space > max_length // 2:
            s = s[:last_space]

    return s.strip()


async def save_newsletter_markdown(
    newsletter: Newsletter,
    stream_title: str,
    reports_dir: Path,
) -> Path | None:
    """Save a markdown copy of a newsletter."""
    try:
        reports_dir.mkdir(parents=True, exist_ok=True)

        timestamp = newsletter.generated_at.strftime("%Y%m%d_%H%M%S")
        filename = f"{timestamp}_{_sanitize_filename(stream_title)}_{newsletter.report_number:03d}.md"
        filepath = reports_dir / filename

        lines = [
            f"<!-- stream: {newsletter.stream_id} -->",
            f"<!-- report: {newsletter.report_number} confidence: {newsletter.confidence:.2f} -->",
            "",
            newsletter.body,
        ]
        filepath.write_text("\n".join(lines), encoding="utf-8")
        logger.info("Newsletter saved | file=%s", filepath.name)
        return filepath

    except Exception as e:
        logger.error("Newsletter save failed: %s", e, exc_info=True)
        return None


async def send_webhook(event_type: str, stream_id: str, data: dict[str, Any], url: str) -> bool:
    """POST an event to the configured webhook."""
    if not url:
        return True

    payload = {
        "type": event_type,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "stream_id": stream_id,
        "data": data,
    }

    try:
        async with aiohttp.ClientSession() as session:
            async with session.post(
                url, json=payload, timeout=aiohttp.ClientTimeout(total=10)
            ) as resp:
                if resp.status < 300:
                    logger.debug("Webhook sent | type=%s stream=%s", event_type, stream_id)
                    return True
                logger.warning("Webhook failed | status=%d type=%s", resp.status, event_type)
                return False
    except asyncio.TimeoutError:
        logger.warning("Webhook timeout | url=%s type=%s", url[:50], event_type)
        return False
    except Exception as e:
        logger.error("Webhook error: %s (%s)", e, type(e).__name__, exc_info=True)
        return False


async def append_alerts_file(alert: NewsAlert, filepath: str) -> bool:
    """Append an alert to the JSONL file."""
    if not filepath:
        return True

    try:
        path = Path(filepath)
        path.parent.mkdir(parents=True, exist_ok=True)

        # Warn if file is getting large (> 100MB)
        if path.exists():
            size_mb = path.stat().st_size / (1024 * 1024)
            if size_mb > 100:
                logger.warning("Alerts file large | size=%.1fMB path=%s", size_mb, filepath)

        with open(path, "a", encoding="utf-8") as f:
            f.write(json.dumps(alert.to_wire(), ensure_ascii=False) + "\n")
        return True
    except Exception as e:
        logger.error("Alerts file error: %s (%s)", e, type(e).__name__, exc_info=True)
        return False


async def notify_newsletter(newsletter: Newsletter, stream_title: str, config: Config) -> bool:
    """Send all configured notifications for a newsletter."""
    path = await save_newsletter_markdown(newsletter, stream_title, config.reports_dir)
    webhook_ok = await send_webhook("newsletter", newsletter.stream_id, newsletter.to_wire(), config.webhook_url)
    return path is not None and webhook_ok


async def notify_alerts(alerts: list[NewsAlert], config: Config) -> tuple[int, int]:
    """Send all configured notifications for admitted alerts.

    Returns:
        (successful, failed) counts
    """

    async def one(alert: NewsAlert) -> bool:
        webhook_ok = await send_webhook("alert", alert.stream_id, alert.to_wire(), config.webhook_url)
        file_ok = await append_alerts_file(alert, config.alerts_file)
        return webhook_ok and file_ok

    results = await asyncio.gather(*(one(alert) for alert in alerts), return_exceptions=True)
    ok = sum(1 for r in results if r is True)
    return ok, len(results) - ok
