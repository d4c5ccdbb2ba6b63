from celery import Celery

from harbor_billing.scheduler_config import build_beat_schedule, get_celery_config

celery_app = Celery("harbor_billing", include=["harbor_billing.tasks"])
celery_app.conf.update(get_celery_config())
celery_app.conf.beat_schedule = build_beat_schedule()
