from __future__ import annotations

import html
import logging
import smtplib
import ssl
from datetime import datetime, timezone
from email.message import EmailMessage
from typing import Optional

import certifi
import requests

from competitor_alert.config import AppConfig
from competitor_alert.errors import NotificationError
from competitor_alert.models.schemas import Alert

logger = logging.getLogger(__name__)

USER_AGENT = "CompetitorAlert/1.0"

CHANNEL_EMAIL = "email"
CHANNEL_WEBHOOK = "webhook"


def dispatch_notifications(
    alert: Alert,
    new_presences: int,
    config: AppConfig,
    now: Optional[datetime] = None,
) -> set[str]:
    """Send email and webhook notices for new presences; return the channels that succeeded."""
    if new_presences <= 0:
        return set()

    now = now or datetime.now(timezone.utc)
    logger.info(
        "Sending notifications for alert %s: %d new presences",
        alert.name,
        new_presences,
    )

    sent: set[str] = set()
    if alert.email_notifications and alert.email:
        try:
            if send_email_notification(alert, new_presences, config, now):
                sent.add(CHANNEL_EMAIL)
        except NotificationError as exc:
            logger.error("Email notification failed: %s", exc)
        except Exception:  # noqa: BLE001 - a channel failure never fails the run
            logger.exception("Email notification to %s failed", alert.email)

    if alert.webhook_url:
        try:
            send_webhook_notification(alert, new_presences, config, now)
            sent.add(CHANNEL_WEBHOOK)
        except NotificationError as exc:
            logger.error("Webhook notification failed: %s", exc)
        except Exception:  # noqa: BLE001 - a channel failure never fails the run
            logger.exception("Webhook notification to %s failed", alert.webhook_url)

    return sent


def webhook_payload(alert: Alert, new_presences: int, now: datetime) -> dict:
    return {
        "alertId": alert.alert_id,
        "alertName": alert.name,
        "newPresencesFound": new_presences,
        "timestamp": now.isoformat(),
    }


def send_webhook_notification(
    alert: Alert,
    new_presences: int,
    config: AppConfig,
    now: datetime,
) -> None:
    try:
        response = requests.post(
            alert.webhook_url,
            json=webhook_payload(alert, new_presences, now),
            headers={"User-Agent": USER_AGENT},
            timeout=config.webhook_timeout_seconds,
        )
    except requests.RequestException as exc:
        raise NotificationError(f"webhook request failed: {exc}") from exc

    if not 200 <= response.status_code < 300:
        raise NotificationError(f"webhook returned status {response.status_code}")

    logger.info("Webhook notification sent to %s", alert.webhook_url)


def render_email_html(
    alert: Alert,
    new_presences: int,
    app_url: str,
    now: datetime,
) -> str:
    name = html.escape(alert.name)
    platforms = html.escape(", ".join(alert.platforms))
    link = html.escape(app_url, quote=True)
    return (
        '<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">'
        f"<h2>Competitor Alert: {name}</h2>"
        f"<p>We've detected <strong>{new_presences} new competitor mentions</strong> "
        "across your monitored platforms.</p>"
        "<ul>"
        f"<li><strong>Alert Name:</strong> {name}</li>"
        f"<li><strong>Platforms:</strong> {platforms}</li>"
        f"<li><strong>New Mentions:</strong> {new_presences}</li>"
        f"<li><strong>Time:</strong> {now.strftime('%Y-%m-%d %H:%M UTC')}</li>"
        "</ul>"
        f'<p><a href="{link}">View Full Dashboard</a></p>'
        "</div>"
    )


def send_email_notification(
    alert: Alert,
    new_presences: int,
    config: AppConfig,
    now: datetime,
) -> bool:
    """Send the summary email. Returns False when SMTP is not configured."""
    if not config.smtp_configured:
        logger.info(
            "SMTP not configured. Would send email to %s: %d new competitor mentions found",
            alert.email,
            new_presences,
        )
        return False

    message = EmailMessage()
    try:
        message["Subject"] = f"{new_presences} New Competitor Mentions - {alert.name}"
        message["From"] = config.sender_address
        message["To"] = alert.email
    except ValueError as exc:
        raise NotificationError(f"invalid email headers for {alert.email!r}: {exc}") from exc
    message.set_content(
        f"{new_presences} new competitor mentions found for {alert.name}. "
        f"View them at {config.app_url}"
    )
    message.add_alternative(
        render_email_html(alert, new_presences, config.app_url, now),
        subtype="html",
    )

    context = ssl.create_default_context(cafile=certifi.where())
    try:
        with smtplib.SMTP(config.smtp_host, config.smtp_port, timeout=30) as smtp:
            smtp.starttls(context=context)
            smtp.login(config.smtp_user, config.smtp_pass)
            smtp.send_message(message)
    except (smtplib.SMTPException, OSError) as exc:
        raise NotificationError(f"SMTP send to {alert.email} failed: {exc}") from exc

    logger.info("Email sent successfully to %s", alert.email)
    return True
