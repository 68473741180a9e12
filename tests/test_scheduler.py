from datetime import date, timedelta

from apscheduler.schedulers.background import BackgroundScheduler
from itsdangerous import URLSafeTimedSerializer

from batch_token import generate_batch_token, validate_batch_token
from config import get_settings
from errors import StorageError
from models import Frequency, TransactionType
from recurrence import RecurringMaterializer
from scheduler import SchedulerManager
from schemas import RecurringRuleIn
from services import RecurringRuleService


def _daily_rule(store, user_id):
    anchor = date.today() - timedelta(days=3)
    return RecurringRuleService(store, user_id).create(
        RecurringRuleIn(
            name="Coffee",
            type=TransactionType.expense,
            amount_cents=250,
            frequency=Frequency.daily,
            anchor_date=anchor,
            end_date=anchor + timedelta(days=1),
        )
    )


def test_run_job_materializes_all_users(store, user_id):
    _daily_rule(store, user_id)
    manager = SchedulerManager(store)

    assert manager._run_job("manual") == 2
    assert manager._run_job("manual") == 0


def test_run_job_survives_storage_failure(store, user_id, monkeypatch):
    def down(self, scope, today=None):
        raise StorageError("Ledger storage is unavailable")

    monkeypatch.setattr(RecurringMaterializer, "materialize_due", down)

    assert SchedulerManager(store)._run_job("daily") == 0


def test_start_registers_daily_and_hourly_jobs(store, user_id):
    manager = SchedulerManager(store, scheduler=BackgroundScheduler(timezone="UTC"))
    manager.start()
    try:
        assert manager.scheduler.get_job("recurring_daily") is not None
        assert manager.scheduler.get_job("recurring_hourly_safety") is not None
    finally:
        manager.stop()
    assert not manager.scheduler.running


def test_batch_token_round_trip():
    token = generate_batch_token()
    assert validate_batch_token(token)
    assert not validate_batch_token(token + "x")
    assert not validate_batch_token("")


def test_batch_token_payload_relies_on_signed_timestamp():
    serializer = URLSafeTimedSerializer(
        get_settings().batch_secret, salt="batch-trigger"
    )

    payload, signed_at = serializer.loads(
        generate_batch_token("cron"), max_age=60, return_timestamp=True
    )

    assert payload == {"scope": "all", "iss": "cron"}
    assert signed_at is not None
