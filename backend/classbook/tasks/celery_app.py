# backend/classbook/tasks/celery_app.py
"""
Celery application configuration for the class booking engine.

This module sets up the Celery app with Redis as the broker, configures
task serialization, and attaches the periodic sweep schedule.
"""

from typing import Any

from celery import Celery
from celery.signals import setup_logging

from classbook.core.config import settings


def create_celery_app() -> Celery:
    """
    Create and configure the Celery application.

    Returns:
        Celery: Configured Celery application instance
    """
    broker_url = settings.broker_url

    celery_app = Celery("classbook", broker=broker_url)

    celery_app.conf.update(
        {
            # Task settings
            "task_serializer": "json",
            "accept_content": ["json"],
            "result_serializer": "json",
            "timezone": "UTC",
            "enable_utc": True,
            # Sweeps return counts only; nothing reads results
            "task_ignore_result": True,
            # Worker settings
            "worker_prefetch_multiplier": 1,
            "worker_max_tasks_per_child": 1000,
            "worker_hijack_root_logger": False,
            # Task execution settings
            "task_soft_time_limit": 120,
            "task_time_limit": 300,
            "task_acks_late": True,
            "task_reject_on_worker_lost": True,
            "task_default_retry_delay": 30,
            "beat_schedule_filename": "celerybeat-schedule",
        }
    )

    celery_app.conf.imports = ("classbook.tasks.sweeps",)
    celery_app.conf.task_routes = {"classbook.sweeps.*": {"queue": "maintenance"}}

    from classbook.tasks.beat_schedule import get_beat_schedule

    celery_app.conf.beat_schedule = get_beat_schedule(settings.environment)

    return celery_app


# Disable Celery's default logging configuration
@setup_logging.connect  # type: ignore[misc]
def config_loggers(*args: Any, **kwargs: Any) -> None:
    """Configure logging to integrate with the application's logging setup."""
    import logging

    logging.basicConfig(
        level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )


# Create the Celery app instance
celery_app = create_celery_app()
