from celery import Celery

from app.logging import configure_logging
from app.services.scheduler_config import build_beat_schedule, get_celery_config
from app.telemetry import setup_otel

configure_logging()
setup_otel()

celery_app = Celery("crm_imports", include=["app.tasks.crm_imports"])
celery_app.conf.update(get_celery_config())
celery_app.conf.beat_schedule = build_beat_schedule()
