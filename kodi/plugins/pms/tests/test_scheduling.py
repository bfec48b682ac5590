import pytest

from kodi.core import scheduler_decorators
from kodi.core.scheduler_decorators import run_cron


@pytest.fixture
def registry(monkeypatch):
    tasks = []
    monkeypatch.setattr(scheduler_decorators, "SCHEDULED_TASKS", tasks)
    return tasks


class TestRunCron:
    def test_registers_month_start_job(self, registry):
        @run_cron("1 0 1 * *", timezone="Africa/Nairobi")
        def job():
            return "ran"

        assert job() == "ran"
        assert registry == [{
            "func": job,
            "trigger": "cron",
            "trigger_args": {
                "minute": "1", "hour": "0", "day": "1", "month": "*", "day_of_week": "*",
                "timezone": "Africa/Nairobi",
            },
        }]

    def test_defaults_to_configured_timezone(self, registry, monkeypatch):
        monkeypatch.setattr(scheduler_decorators.settings, "TIMEZONE", "UTC")
        run_cron("0 * * * *")(lambda: None)
        assert registry[0]["trigger_args"]["timezone"] == "UTC"

    def test_rejects_bad_expression(self):
        with pytest.raises(ValueError):
            run_cron("0 0 1 *")
