"""Balance notification events (Redis/RQ) and the worker-side delivery job."""

from __future__ import annotations

import logging
import smtplib
from datetime import date
from email.mime.text import MIMEText
from email.utils import formataddr
from typing import Any, Dict, Optional

from redis import Redis
from rq import Queue, Retry
from rq.job import Job
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.user import User


logger = logging.getLogger(__name__)

SENDER_NAME = "Gas Agency Bookings"


def get_redis_connection() -> Redis:
    """Build Redis connection used by RQ."""
    return Redis.from_url(settings.REDIS_URL)


def get_notification_queue() -> Queue:
    return Queue(
        name=settings.NOTIFICATION_QUEUE_NAME,
        connection=get_redis_connection(),
        default_timeout=120,
    )


def build_balance_event(
    customer_id: str,
    booking_id: Optional[str],
    new_balance: int,
    expiry: date,
) -> Dict[str, Any]:
    return {
        "customer_id": customer_id,
        "booking_id": booking_id,
        "new_balance": int(new_balance),
        "expiry": expiry.isoformat(),
    }


def enqueue_notification(event: Dict[str, Any], recipient: Optional[str]) -> Optional[Job]:
    """Push an event onto the notification queue. Never raises."""
    if not settings.NOTIFICATIONS_ENABLED:
        logger.debug("Notifications disabled; dropping event %s", event)
        return None
    try:
        queue = get_notification_queue()
        return queue.enqueue(
            "services.notifications.deliver_notification_job",
            event,
            recipient,
            retry=Retry(max=3, interval=[10, 60, 300]),
            job_timeout=120,
            result_ttl=86400,
            failure_ttl=86400,
        )
    except Exception as exc:
        logger.warning(
            "Notification enqueue failed for customer=%s booking=%s: %s",
            event.get("customer_id"),
            event.get("booking_id"),
            exc,
        )
        return None


async def emit_balance_notification(
    db: AsyncSession,
    *,
    customer_id: str,
    booking_id: Optional[str],
    new_balance: int,
    expiry: date,
) -> Dict[str, Any]:
    """Emit ``{customer_id, booking_id, new_balance, expiry}`` after a balance change."""
    event = build_balance_event(customer_id, booking_id, new_balance, expiry)
    result = await db.execute(select(User.email).where(User.id == customer_id))
    recipient = result.scalar_one_or_none()
    enqueue_notification(event, recipient)
    return event


def _render_plain_text(event: Dict[str, Any]) -> str:
    lines = [f"Your cylinder balance is now {event['new_balance']}."]
    if event.get("booking_id"):
        lines.append(f"Booking reference: {event['booking_id']}")
    lines.append(f"Your annual entitlement renews on {event['expiry']}.")
    return "\n".join(lines)


def deliver_notification_job(event: Dict[str, Any], recipient: Optional[str]) -> bool:
    """RQ job: send the balance update to the customer by email when SMTP is configured."""
    if not recipient:
        logger.info("Notification for customer %s has no recipient; skipping", event.get("customer_id"))
        return False
    if not settings.SMTP_HOST:
        logger.info("SMTP not configured; notification for %s logged only: %s", recipient, event)
        return False

    msg = MIMEText(_render_plain_text(event), "plain", "utf-8")
    msg["Subject"] = "Cylinder balance update"
    msg["From"] = formataddr((SENDER_NAME, settings.SMTP_SENDER))
    msg["To"] = recipient

    with smtplib.SMTP(settings.SMTP_HOST, settings.SMTP_PORT, timeout=30) as smtp:
        smtp.starttls()
        if settings.SMTP_USER:
            smtp.login(settings.SMTP_USER, settings.SMTP_PASSWORD)
        smtp.sendmail(settings.SMTP_SENDER, [recipient], msg.as_string())
    logger.info("Balance notification sent to %s", recipient)
    return True
