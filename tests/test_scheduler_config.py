from __future__ import annotations

from datetime import UTC, datetime, timedelta
from unittest.mock import MagicMock, patch

import pytest

from harbor_billing import scheduler_config, tasks
from harbor_billing.models.billing import PaymentFailureReason
from harbor_billing.services.billing import PaymentFailureHandler


@pytest.fixture
def clear_scheduler_env(monkeypatch: pytest.MonkeyPatch) -> None:
    keys = (
        "CELERY_BROKER_URL",
        "CELERY_RESULT_BACKEND",
        "CELERY_TIMEZONE",
        "CELERY_BEAT_MAX_LOOP_INTERVAL",
    )
    for key in keys:
        monkeypatch.delenv(key, raising=False)


@pytest.fixture
def shared_session(db_session):
    """Hand the test session to the tasks and keep it open after they finish."""
    with patch.object(db_session, "close"):
        with patch.object(tasks, "SessionLocal", return_value=db_session):
            yield db_session


def test_get_celery_config_defaults_to_redis(clear_scheduler_env: None) -> None:
    config = scheduler_config.get_celery_config()
    assert config["broker_url"] == "redis://localhost:6379/0"
    assert config["result_backend"] == "redis://localhost:6379/0"
    assert config["timezone"] == "UTC"
    assert config["task_acks_late"] is True
    assert config["worker_prefetch_multiplier"] == 1
    assert config["beat_max_loop_interval"] == 5


def test_get_celery_config_env_overrides(
    clear_scheduler_env: None, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("CELERY_BROKER_URL", "redis://broker.example:6379/1")
    monkeypatch.setenv("CELERY_TIMEZONE", "America/New_York")
    monkeypatch.setenv("CELERY_BEAT_MAX_LOOP_INTERVAL", "not-a-number")

    config = scheduler_config.get_celery_config()

    assert config["broker_url"] == "redis://broker.example:6379/1"
    assert config["result_backend"] == "redis://localhost:6379/0"
    assert config["timezone"] == "America/New_York"
    assert config["beat_max_loop_interval"] == 5


def test_build_beat_schedule_runs_both_sweeps() -> None:
    schedule = scheduler_config.build_beat_schedule()
    assert schedule == {
        "billing-renewals": {
            "task": "harbor_billing.tasks.process_renewals",
            "schedule": timedelta(seconds=300),
        },
        "billing-payment-retries": {
            "task": "harbor_billing.tasks.process_payment_retries",
            "schedule": timedelta(seconds=300),
        },
    }


def test_beat_schedule_names_registered_tasks() -> None:
    registered = set(tasks.celery_app.tasks)
    for entry in tasks.celery_app.conf.beat_schedule.values():
        assert entry["task"] in registered


def test_process_renewals_task(shared_session, processor, user, make_subscribed_account) -> None:
    make_subscribed_account(user, next_billing_date=datetime.now(UTC) - timedelta(hours=1))
    with patch.object(tasks, "configured_processors", return_value=[processor]):
        summary = tasks.process_renewals.run()
    assert summary["processed"] == 1
    assert summary["renewed"] == 1


def test_process_payment_retries_task(
    shared_session, store, processor, subscribed_account
) -> None:
    failure = PaymentFailureHandler(store, processor).open_failure(
        subscribed_account, "txn_task", PaymentFailureReason.card_declined
    )
    failure.next_retry_at = datetime.now(UTC) - timedelta(minutes=1)
    store.commit()

    with patch.object(tasks, "configured_processors", return_value=[processor]):
        summary = tasks.process_payment_retries.run()

    assert summary["processed"] == 1
    assert summary["recovered"] == 1


def test_tasks_merge_summaries_across_processors() -> None:
    session = MagicMock(name="task_session")
    first, second = MagicMock(), MagicMock()
    with (
        patch.object(tasks, "SessionLocal", return_value=session),
        patch.object(tasks, "configured_processors", return_value=[first, second]),
        patch.object(tasks, "SubscriptionManager") as manager_cls,
    ):
        manager_cls.return_value.process_automatic_renewals.side_effect = [
            {"processed": 2, "renewed": 1, "errors": 1},
            {"processed": 1, "renewed": 1, "errors": 0},
        ]
        summary = tasks.process_renewals.run()

    assert summary == {"processed": 3, "renewed": 2, "errors": 1}
    session.close.assert_called_once()


def test_tasks_close_the_session_on_error() -> None:
    session = MagicMock(name="task_session")
    with (
        patch.object(tasks, "SessionLocal", return_value=session),
        patch.object(tasks, "configured_processors", side_effect=RuntimeError("boom")),
    ):
        with pytest.raises(RuntimeError):
            tasks.process_payment_retries.run()
    session.close.assert_called_once()
