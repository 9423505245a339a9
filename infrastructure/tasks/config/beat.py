"""Celery beat schedule configuration.

Webhook events that were claimed but whose handling failed stay unprocessed;
the periodic re-drive picks them up.
"""
from __future__ import annotations

from core.config import settings

CELERY_BEAT_SCHEDULE = {
    "payments-redrive-webhooks": {
        "task": "payments.redrive_webhooks",
        "schedule": float(settings.celery.redrive_interval_seconds),
        "kwargs": {"limit": settings.celery.redrive_batch_size},
    },
}
