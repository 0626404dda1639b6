"""Celery beat schedule for the payment background jobs."""
from __future__ import annotations

CELERY_BEAT_SCHEDULE = {
    "payments-relay-outbox": {
        "task": "payments.relay_outbox",
        "schedule": 10.0,
    },
    "payments-reconcile": {
        "task": "payments.reconcile",
        "schedule": 300.0,
    },
}
