# backend/classbook/tasks/beat_schedule.py
"""
Celery Beat schedule for the class booking engine.

Every sweep is idempotent, so overlapping or repeated runs are harmless.
"""

from datetime import timedelta
from typing import Any, Dict

from celery.schedules import crontab

CELERYBEAT_SCHEDULE: Dict[str, Dict[str, Any]] = {
    # Unconfirmed waitlist promotions past their window
    "expire-waitlist-promotions": {
        "task": "classbook.sweeps.expire_promotions",
        "schedule": timedelta(minutes=5),
        "options": {"queue": "maintenance", "priority": 5},
    },
    # Booking reminders inside the lead window
    "send-booking-reminders": {
        "task": "classbook.sweeps.send_reminders",
        "schedule": timedelta(minutes=5),
        "options": {"queue": "maintenance", "priority": 4},
    },
    # scheduled -> in_progress -> completed
    "advance-instance-states": {
        "task": "classbook.sweeps.advance_instance_states",
        "schedule": crontab(minute="*/5"),
        "options": {"queue": "maintenance", "priority": 3},
    },
    # Zero credits on expired packages
    "expire-stale-packages": {
        "task": "classbook.sweeps.expire_stale_packages",
        "schedule": crontab(hour=3, minute=15),
        "options": {"queue": "maintenance", "priority": 2},
    },
}


def get_beat_schedule(environment: str) -> Dict[str, Dict[str, Any]]:
    """Return the schedule for an environment; development sweeps run every minute."""
    schedule = {name: dict(entry) for name, entry in CELERYBEAT_SCHEDULE.items()}
    if environment in {"development", "local"}:
        for name in ("expire-waitlist-promotions", "send-booking-reminders"):
            schedule[name]["schedule"] = timedelta(minutes=1)
    return schedule
