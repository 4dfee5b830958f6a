from __future__ import annotations

import logging
import os
from datetime import datetime
from functools import lru_cache
from typing import Any, Dict

from celery import shared_task

from .channels import ChannelDispatcher, senders_from_env
from .config import RoutingConfig
from .models import RelatedEntity
from .service import NotificationService
from .store import SqlStore
from .templates import create_notification

LOGGER = logging.getLogger(__name__)

DEFAULT_DATABASE_URL = "sqlite:///notifications.db"


@lru_cache(maxsize=1)
def get_service() -> NotificationService:
    config = RoutingConfig.from_env()
    store = SqlStore(os.getenv("DATABASE_URL") or DEFAULT_DATABASE_URL)
    dispatcher = ChannelDispatcher(senders_from_env(), timeout=config.channel_timeout)
    return NotificationService(store, dispatcher, config=config)


def notification_from_payload(payload: Dict[str, Any]):
    related = payload.get("related_entity")
    deadline = payload.get("deadline")
    return create_notification(
        payload["recipient_id"],
        payload["type"],
        payload.get("data") or {},
        title=payload.get("title"),
        body=payload.get("body"),
        priority=payload.get("priority"),
        related_entity=RelatedEntity(related["kind"], str(related["id"])) if related else None,
        deep_link=payload.get("deep_link"),
        deadline=datetime.fromisoformat(deadline) if deadline else None,
        metadata=payload.get("metadata"),
    )


@shared_task(name="notification_engine.tasks.submit_notification")
def submit_notification(payload: Dict[str, Any]) -> str:
    notification = get_service().submit(notification_from_payload(payload))
    return notification.id


@shared_task(name="notification_engine.tasks.cancel_notification")
def cancel_notification(notification_id: str) -> bool:
    return get_service().cancel(notification_id) is not None


@shared_task(name="notification_engine.tasks.process_due_batches")
def process_due_batches() -> str:
    try:
        result = get_service().tick()
    except Exception:
        LOGGER.exception("Notification tick aborted")
        raise
    LOGGER.info("Sent %d notifications in %d batches", result.sent, result.batches)
    return str(result.sent)


@shared_task(name="notification_engine.tasks.check_escalations")
def check_escalations() -> str:
    try:
        fired = get_service().run_escalations()
    except Exception:
        LOGGER.exception("Escalation sweep aborted")
        raise
    LOGGER.info("Fired %d escalations", len(fired))
    return str(len(fired))
