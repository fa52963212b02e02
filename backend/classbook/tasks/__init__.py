"""Celery app and the periodic sweeps that drive expiry, reminders and instance states."""
