"""
Webhook alerts for scheduler invocations (Slack, Discord or Telegram).

The scheduler loop calls `alert_invocation_failures` after an invocation
that reported failed items or errors, and `alert_invocation_crashed` when an
entry point raised. Without ALERT_WEBHOOK_URL every alert is a logged no-op.

Configuration via env vars:
    ALERT_WEBHOOK_URL=https://hooks.slack.com/services/...
    ALERT_CHANNEL=slack  (or 'discord', 'telegram'; for telegram the URL is the bot token)
    TELEGRAM_CHAT_ID=...
"""

import asyncio
import logging
import time
from typing import Callable, Dict, Tuple

import aiohttp

import config
from database import utcnow
from delivery.batch import SchedulerResult

logger = logging.getLogger("mailscheduler.alerts")

# Error lines included in one alert message
MAX_ALERT_ERRORS = 10

WEBHOOK_TIMEOUT_SECONDS = 10
TELEGRAM_API_URL = "https://api.telegram.org/bot{token}/sendMessage"


class AlertLevel:
    CRITICAL = "critical"
    WARNING = "warning"
    INFO = "info"


LEVEL_COLORS: Dict[str, int] = {
    AlertLevel.CRITICAL: 0xD7263D,
    AlertLevel.WARNING: 0xF49D37,
    AlertLevel.INFO: 0x2E86AB,
}
DEFAULT_COLOR = 0x808080


def _build_slack_payload(title: str, message: str, level: str) -> dict:
    return {
        "attachments": [{
            "color": f"#{LEVEL_COLORS.get(level, DEFAULT_COLOR):06X}",
            "title": title,
            "text": message,
            "footer": "mailscheduler",
            "ts": int(time.time()),
        }]
    }


def _build_discord_payload(title: str, message: str, level: str) -> dict:
    return {
        "embeds": [{
            "title": title,
            "description": message,
            "color": LEVEL_COLORS.get(level, DEFAULT_COLOR),
            "timestamp": utcnow().isoformat(),
        }]
    }


def _build_telegram_payload(title: str, message: str, level: str = None) -> dict:
    return {
        "chat_id": config.TELEGRAM_CHAT_ID,
        "text": f"*{title}*\n\n{message}",
        "parse_mode": "Markdown",
    }


PAYLOAD_BUILDERS: Dict[str, Callable[[str, str, str], dict]] = {
    "slack": _build_slack_payload,
    "discord": _build_discord_payload,
    "telegram": _build_telegram_payload,
}


def _webhook_request(title: str, message: str, level: str) -> Tuple[str, dict]:
    """(url, json payload) for the configured channel; unknown channels post Slack-style."""
    channel = config.ALERT_CHANNEL
    build = PAYLOAD_BUILDERS.get(channel, _build_slack_payload)
    url = config.ALERT_WEBHOOK_URL
    if channel == "telegram":
        url = TELEGRAM_API_URL.format(token=config.ALERT_WEBHOOK_URL)
    return url, build(title, message, level)


async def send_alert(message: str, level: str = AlertLevel.INFO, title: str = None) -> bool:
    """Post one alert. Returns True when the webhook accepted it."""
    if not config.ALERT_WEBHOOK_URL:
        logger.debug(f"alert_skipped_no_webhook: [{level}] {message[:80]}")
        return False

    url, payload = _webhook_request(title or f"Email Scheduler: {level.upper()}", message, level)
    timeout = aiohttp.ClientTimeout(total=WEBHOOK_TIMEOUT_SECONDS)
    try:
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.post(url, json=payload) as resp:
                if resp.status not in (200, 204):
                    body = await resp.text()
                    logger.error(f"alert_rejected: HTTP {resp.status}: {body[:200]}")
                    return False
    except (aiohttp.ClientError, asyncio.TimeoutError) as e:
        logger.error(f"alert_failed: {e}")
        return False

    logger.info("alert_sent", extra={"level": level, "title": title or message[:60]})
    return True


# ── Pre-built alert functions ────────────────────────────────────────


async def alert_invocation_failures(name: str, result: SchedulerResult) -> bool:
    """Report an invocation that finished with failed items or errors."""
    if not result.has_failures:
        return False

    lines = [
        f"processed={result.processed} sent={result.sent} "
        f"failed={result.failed} skipped={result.skipped}",
        "",
    ]
    lines.extend(f"• {error}" for error in result.errors[:MAX_ALERT_ERRORS])
    if len(result.errors) > MAX_ALERT_ERRORS:
        lines.append(f"… and {len(result.errors) - MAX_ALERT_ERRORS} more")

    # Nothing processed and only errors: the due list itself could not be read
    level = AlertLevel.CRITICAL if result.processed == 0 and result.errors else AlertLevel.WARNING
    return await send_alert("\n".join(lines), level, f"{name} scheduler reported failures")


async def alert_invocation_crashed(name: str, error: BaseException) -> bool:
    return await send_alert(
        f"{name} scheduler invocation raised:\n```{str(error)[:300]}```",
        AlertLevel.CRITICAL,
        f"{name} scheduler crashed",
    )
