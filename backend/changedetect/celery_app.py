"""
Celery application for hash sync and delivery runs.
"""

from datetime import datetime, timedelta

from celery import Celery
from celery.schedules import crontab
from celery.signals import setup_logging, worker_ready, worker_shutdown, task_failure

from changedetect.core.config import settings
from changedetect.core.logging_config import get_logger, setup_logging as configure_logging
from changedetect.services.registry import load_configured_modules

logger = get_logger(__name__)

# ======================== CREATE CELERY APP ========================

def create_celery_app() -> Celery:
    """Create and configure the Celery application."""

    app = Celery(
        'changedetect',
        include=[
            'changedetect.tasks.publish_tasks',
            'changedetect.tasks.maintenance_tasks',
        ]
    )

    app.config_from_object(settings.celery.get_celery_config())

    app.conf.update(
        task_track_started=True,
        worker_send_task_events=True,
        worker_hijack_root_logger=False,
        task_eager_propagates=True,
        broker_pool_limit=10,
    )

    app.conf.beat_schedule = {
        'sync-hashes': {
            'task': 'changedetect.tasks.maintenance_tasks.sync_hashes_task',
            'schedule': crontab(minute=f'*/{settings.celery.sync_interval_minutes}'),
            'options': {'queue': 'maintenance'},
        },
        'process-deliveries': {
            'task': 'changedetect.tasks.publish_tasks.process_deliveries_task',
            'schedule': crontab(minute=f'*/{settings.celery.publish_interval_minutes}'),
            'options': {'queue': 'publishing'},
        },
        'purge-deleted-hashes': {
            'task': 'changedetect.tasks.maintenance_tasks.purge_deleted_hashes_task',
            'schedule': timedelta(hours=settings.celery.purge_interval_hours),
            'kwargs': {'older_than_days': settings.hashing.purge_after_days},
            'options': {'queue': 'maintenance'},
        },
    }

    return app

app = create_celery_app()

# ======================== SIGNAL HANDLERS ========================

@setup_logging.connect
def on_setup_logging(**kwargs):
    """Use our logging config in workers and load the entity registries."""
    configure_logging()
    load_configured_modules()

@worker_ready.connect
def worker_ready_handler(sender=None, **kwargs):
    logger.info(
        "Celery worker ready",
        extra={
            "hostname": sender.hostname if sender else "unknown",
            "timestamp": datetime.utcnow().isoformat(),
            "config": settings.to_dict()
        }
    )

@worker_shutdown.connect
def worker_shutdown_handler(sender=None, **kwargs):
    logger.info(
        "Celery worker shutting down",
        extra={
            "hostname": sender.hostname if sender else "unknown",
            "timestamp": datetime.utcnow().isoformat()
        }
    )

@task_failure.connect
def task_failure_handler(sender=None, task_id=None, exception=None, **kwargs):
    logger.error(
        f"Task failed: {task_id}",
        extra={
            "task_id": task_id,
            "exception": str(exception),
            "task_name": sender.name if sender else "unknown"
        }
    )

__all__ = ['app', 'create_celery_app']
