"""
Celery application used to hand order events to the notification worker.
"""

from functools import lru_cache

from celery import Celery

from src.core.config import get_settings


@lru_cache
def get_celery_app() -> Celery:
    """
    Build the Celery app from settings.

    Tasks are referenced by name so the producer does not import the worker.
    """
    settings = get_settings()

    app = Celery("delivery_marketplace", broker=settings.celery_broker_url)
    app.conf.update(
        task_serializer="json",
        accept_content=["json"],
        timezone="UTC",
        enable_utc=True,
        task_acks_late=True,
        task_default_queue="notifications",
    )
    app.autodiscover_tasks(["src.services.notifications"])
    return app
