import os
from typing import Any

from celery import Celery
from celery.utils.log import get_task_logger

from .database import SessionLocal
from . import ledger, notify

# purpose: run notification and ledger side effects off the request path
# status: active

CELERY_BROKER_URL = os.getenv("CELERY_BROKER_URL", "memory://")
celery_app = Celery("openbench", broker=CELERY_BROKER_URL)
celery_app.conf.task_always_eager = (
    CELERY_BROKER_URL == "memory://" or os.getenv("TESTING") == "1"
)
celery_app.conf.task_serializer = "json"

_logger = get_task_logger(__name__)


@celery_app.task(name="openbench.tasks.deliver_notifications")
def deliver_notifications(recipient_ids: list[str], payload: dict[str, Any]):
    db = SessionLocal()
    try:
        for recipient_id in recipient_ids:
            notify.send_notification(db, recipient_id, payload)
        db.commit()
    except Exception:
        db.rollback()
        _logger.exception("Notification %s delivery failed", payload.get("type"))
    finally:
        db.close()


@celery_app.task(name="openbench.tasks.record_ledger_events")
def record_ledger_events(user_ids: list[str], event_type: str, context: dict[str, Any]):
    db = SessionLocal()
    try:
        ledger.append_entries(db, user_ids, event_type, context)
        db.commit()
    except Exception:
        db.rollback()
        _logger.exception("Ledger %s write failed", event_type)
    finally:
        db.close()


def dispatch_notifications(recipient_ids: list[str], payload: dict[str, Any]) -> None:
    try:
        if celery_app.conf.task_always_eager:
            deliver_notifications(recipient_ids, payload)
        else:
            deliver_notifications.delay(recipient_ids, payload)
    except Exception:
        _logger.exception("Could not enqueue %s notification", payload.get("type"))


def dispatch_ledger_events(user_ids: list[str], event_type: str, context: dict[str, Any]) -> None:
    try:
        if celery_app.conf.task_always_eager:
            record_ledger_events(user_ids, event_type, context)
        else:
            record_ledger_events.delay(user_ids, event_type, context)
    except Exception:
        _logger.exception("Could not enqueue %s ledger event", event_type)
