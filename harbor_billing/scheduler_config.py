import os
from datetime import timedelta

from harbor_billing.config import settings

RENEWALS_TASK = "harbor_billing.tasks.process_renewals"
RETRIES_TASK = "harbor_billing.tasks.process_payment_retries"


def _env_value(name: str) -> str | None:
    value = os.getenv(name)
    if value is None or value == "":
        return None
    return value


def _env_int(name: str, default: int) -> int:
    raw = _env_value(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def get_celery_config() -> dict:
    broker = _env_value("CELERY_BROKER_URL") or settings.redis_url
    backend = _env_value("CELERY_RESULT_BACKEND") or settings.redis_url
    config = {
        "broker_url": broker,
        "result_backend": backend,
        "timezone": _env_value("CELERY_TIMEZONE") or "UTC",
        "enable_utc": True,
        "task_acks_late": True,
        "worker_prefetch_multiplier": 1,
    }
    config["beat_max_loop_interval"] = _env_int("CELERY_BEAT_MAX_LOOP_INTERVAL", 5)
    return config


def build_beat_schedule() -> dict:
    interval = timedelta(seconds=max(settings.sweep_interval_seconds, 1))
    return {
        "billing-renewals": {"task": RENEWALS_TASK, "schedule": interval},
        "billing-payment-retries": {"task": RETRIES_TASK, "schedule": interval},
    }
