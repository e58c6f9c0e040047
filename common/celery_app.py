"""Celery application for background liquidation runs."""

from celery import Celery

from common.config import get_settings

settings = get_settings()

celery_app = Celery(
    "claims_audit",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=["services.claims.tasks"],
)

celery_app.conf.update(
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    task_acks_late=True,
    worker_prefetch_multiplier=1,
)
