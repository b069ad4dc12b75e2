"""
Alerting: webhook notifications (Slack, Discord, Telegram).

Used for:
- Configuration errors (missing tenant account, unknown sequence version)
- Platform restrictions flagged on a tenant account
- Daily execution summary

Configuration via env vars:
    ALERT_WEBHOOK_URL=https://hooks.slack.com/services/...
    ALERT_CHANNEL=slack  (or 'discord', 'telegram')
    DAILY_SUMMARY_ENABLED=true
"""

import logging
from datetime import datetime
from typing import Dict

import aiohttp
import pytz

import config

logger = logging.getLogger("sequencer.alerts")


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
        True if sent successfully, False otherwise (alerts never raise)
    """
    if not config.ALERT_WEBHOOK_URL:
        logger.debug(f"Alert skipped (no webhook): [{level}] {message[:80]}")
        return False

    heading = title or f"Outreach Sequencer: {level.upper()}"
    channel = config.ALERT_CHANNEL

    if channel == "discord":
        payload = _build_discord_payload(heading, message, level)
    elif channel == "telegram":
        payload = _build_telegram_payload(heading, message)
    else:
        payload = _build_slack_payload(heading, message, level)

    url = config.ALERT_WEBHOOK_URL
    if channel == "telegram":
        # For Telegram the "webhook URL" is the bot token
        url = f"https://api.telegram.org/bot{config.ALERT_WEBHOOK_URL}/sendMessage"

    try:
        async with aiohttp.ClientSession() as session:
            async with session.post(url, json=payload, timeout=aiohttp.ClientTimeout(total=10)) as resp:
                if resp.status in (200, 204):
                    logger.info(f"Alert sent: [{level}] {(title or message)[:60]}")
                    return True
                body = await resp.text()
                logger.error(f"Alert webhook returned {resp.status}: {body[:200]}")
                return False
    except Exception as e:
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
                "footer": "Outreach Sequencer",
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
        "chat_id": config.TELEGRAM_CHAT_ID,
        "text": f"*{title}*\n\n{message}",
        "parse_mode": "Markdown",
    }


# ── Pre-built alert functions ────────────────────────────────────────


async def alert_configuration_error(tenant_id: str, execution_id: str, error: str) -> bool:
    return await send_alert(
        message=(
            f"Tenant `{tenant_id}` execution `{execution_id}` failed on a setup problem:\n"
            f"{error}\n"
            f"Fix the tenant configuration; affected executions will not retry."
        ),
        level=AlertLevel.CRITICAL,
        title="Configuration Error",
    )


async def alert_account_restricted(tenant_id: str, platform: str, error: str) -> bool:
    return await send_alert(
        message=(
            f"Tenant `{tenant_id}` {platform} account was restricted by the platform.\n"
            f"Reason: {error}\n"
            f"Future budgets for this account are reduced automatically."
        ),
        level=AlertLevel.WARNING,
        title="Account Restricted",
    )


async def send_daily_summary(stats: Dict) -> bool:
    """
    Post a summary of the last day's execution activity.

    stats: {"totals": {stat: n}, "tenants": {tenant_id: {stat: n}}}
    """
    if not config.DAILY_SUMMARY_ENABLED:
        logger.debug("daily_summary_disabled")
        return False

    logger.info("daily_summary_generating")
    tz = pytz.timezone(config.TARGET_TIMEZONE)
    now = datetime.now(tz)
    totals = stats.get("totals", {})

    lines = [
        f"Date: {now.strftime('%A, %B %d, %Y')}",
        "",
        "**Execution Summary**",
        f"• Steps dispatched: {totals.get('dispatched', 0)}",
        f"• Messages sent: {totals.get('sent', 0)}",
        f"• Rate limited: {totals.get('rate_limited', 0)}",
        f"• Retries scheduled: {totals.get('retried', 0)}",
        f"• Executions completed: {totals.get('completed', 0)}",
        f"• Executions failed: {totals.get('failed', 0)}",
        "",
        "**Per-Tenant Breakdown**",
    ]

    tenants = stats.get("tenants", {})
    for tenant_id, tenant_stats in sorted(tenants.items()):
        lines.append(
            f"• {tenant_id}: {tenant_stats.get('sent', 0)} sent, "
            f"{tenant_stats.get('failed', 0)} failed"
        )
    if not tenants:
        lines.append("• No activity today")

    return await send_alert("\n".join(lines), AlertLevel.INFO, "Daily Sequencer Summary")
