"""
Alerting Module — Sends notifications via webhook (Slack, Discord, Telegram).

Raised when a job exhausts its attempts. A dead job leaves its lead in a
"started" status forever, so the campaign never completes on its own;
this alert is the signal for an operator to step in.

Configuration via env vars:
    ALERT_WEBHOOK_URL=https://hooks.slack.com/services/...
    ALERT_CHANNEL=slack  (or 'discord', 'telegram')
"""

import logging
import os
from datetime import datetime
from typing import Dict

import aiohttp

logger = logging.getLogger("outreach.alerts")

# ── Config ───────────────────────────────────────────────────────────

ALERT_WEBHOOK_URL = os.getenv("ALERT_WEBHOOK_URL", "")
ALERT_CHANNEL = os.getenv("ALERT_CHANNEL", "slack").lower()
TELEGRAM_CHAT_ID = os.getenv("TELEGRAM_CHAT_ID", "")


class AlertLevel:
    CRITICAL = "critical"
    WARNING = "warning"
    INFO = "info"


async def send_alert(
    message: str,
    level: str = AlertLevel.INFO,
    title: str = None,
) -> bool:
    """
    Send an alert via the configured webhook.

    Returns:
        True if sent successfully, False otherwise (never raises)
    """
    if not ALERT_WEBHOOK_URL:
        logger.debug(f"Alert skipped (no webhook): [{level}] {message[:80]}")
        return False

    heading = title or f"Outreach campaigns — {level.upper()}"

    if ALERT_CHANNEL == "discord":
        payload = _build_discord_payload(heading, message, level)
    elif ALERT_CHANNEL == "telegram":
        payload = _build_telegram_payload(heading, message)
    else:
        payload = _build_slack_payload(heading, message, level)

    url = ALERT_WEBHOOK_URL
    if ALERT_CHANNEL == "telegram":
        url = f"https://api.telegram.org/bot{ALERT_WEBHOOK_URL}/sendMessage"

    try:
        async with aiohttp.ClientSession() as session:
            async with session.post(url, json=payload, timeout=aiohttp.ClientTimeout(total=10)) as resp:
                if resp.status in (200, 204):
                    logger.info(f"Alert sent: [{level}] {(title or message)[:60]}")
                    return True
                body = await resp.text()
                logger.error(f"Alert webhook returned {resp.status}: {body[:200]}")
                return False
    except (aiohttp.ClientError, TimeoutError) as e:
        logger.error(f"Failed to send alert: {e}")
        return False


def _build_slack_payload(title: str, message: str, level: str) -> dict:
    color = {
        "critical": "#FF0000",
        "warning": "#FFA500",
        "info": "#36A64F",
    }.get(level, "#808080")

    return {
        "attachments": [
            {
                "color": color,
                "title": title,
                "text": message,
                "footer": "Outreach campaigns",
                "ts": int(datetime.utcnow().timestamp()),
            }
        ]
    }


def _build_discord_payload(title: str, message: str, level: str) -> dict:
    color = {
        "critical": 0xFF0000,
        "warning": 0xFFA500,
        "info": 0x36A64F,
    }.get(level, 0x808080)

    return {
        "embeds": [
            {
                "title": title,
                "description": message,
                "color": color,
                "timestamp": datetime.utcnow().isoformat(),
            }
        ]
    }


def _build_telegram_payload(title: str, message: str) -> dict:
    return {
        "chat_id": TELEGRAM_CHAT_ID,
        "text": f"*{title}*\n\n{message}",
        "parse_mode": "Markdown",
    }


# ── Pre-built alert functions ────────────────────────────────────────


async def alert_dead_job(job: Dict, error: str) -> bool:
    payload = job.get("payload") or {}
    return await send_alert(
        message=(
            f"Job `{job.get('name')}` on `{job.get('queue')}` gave up after "
            f"{job.get('attempts_made')} attempts.\n"
            f"Campaign: {payload.get('campaign_id')}  Lead: {payload.get('lead_id')}\n"
            f"Last error: {error[:300]}\n"
            "The lead stays in its started status until the phase is re-triggered."
        ),
        level=AlertLevel.CRITICAL,
        title="Dead campaign job",
    )
