import logging
import os
import smtplib
from email.message import EmailMessage
from typing import Any, Iterable
from uuid import UUID

from sqlalchemy.orm import Session

from . import models

logger = logging.getLogger(__name__)

EMAIL_OUTBOX: list[tuple[str, str, str]] = []

DEFAULT_DISPLAY_NAME = "A user"


def send_email(to_email: str, subject: str, message: str):
    if os.getenv("TESTING") == "1":
        EMAIL_OUTBOX.append((to_email, subject, message))
        return
    server = os.getenv("SMTP_SERVER")
    if not server:
        return
    from_addr = os.getenv("EMAIL_FROM", "noreply@example.com")
    msg = EmailMessage()
    msg["Subject"] = subject
    msg["From"] = from_addr
    msg["To"] = to_email
    msg.set_content(message)
    with smtplib.SMTP(server) as s:
        s.send_message(msg)


def display_name(db: Session, user_id: str | UUID | None) -> str:
    """Best-effort human name for notification text; never used for authorization."""
    if user_id is None:
        return DEFAULT_DISPLAY_NAME
    try:
        user = db.get(models.User, UUID(str(user_id)))
    except Exception:
        logger.exception("Display name lookup failed for %s", user_id)
        return DEFAULT_DISPLAY_NAME
    if not user:
        return DEFAULT_DISPLAY_NAME
    return user.full_name or user.email or DEFAULT_DISPLAY_NAME


def send_notification(db: Session, recipient_id: str | UUID, payload: dict[str, Any]) -> models.Notification | None:
    """Store an in-app notification and mirror it by email."""
    user = db.get(models.User, UUID(str(recipient_id)))
    if not user:
        logger.warning("Skipping notification for unknown user %s", recipient_id)
        return None
    meta = {key: value for key, value in payload.items() if key not in {"type", "message", "link"}}
    notif = models.Notification(
        user_id=user.id,
        type=payload["type"],
        message=payload["message"],
        link=payload.get("link"),
        meta=meta,
    )
    db.add(notif)
    if user.email:
        send_email(user.email, "OpenBench notification", payload["message"])
    return notif


def notify_users(recipient_ids: Iterable[str | UUID], payload: dict[str, Any]) -> None:
    """Fire-and-forget delivery to several recipients."""
    from .tasks import dispatch_notifications

    recipients = [str(uid) for uid in recipient_ids]
    if not recipients:
        return
    dispatch_notifications(recipients, payload)
