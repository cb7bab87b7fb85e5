import json
from datetime import timedelta

import pytest
from apscheduler.triggers.interval import IntervalTrigger

import main as main_module
from helpers import make_times
from main import PREFERENCES_JOB_ID, REFRESH_JOB_ID, PrayerNotificationApp
from notifier import LogDelivery
from prayer_times import LocationInfo
from resolver import SourceUnavailable


@pytest.fixture
def config_path(tmp_path):
    config = {
        "auto_location": False,
        "location": {
            "city": "Singapore",
            "country": "SG",
            "latitude": 1.3521,
            "longitude": 103.8198,
            "timezone": "Asia/Singapore",
        },
        "official_timetable": {"data_dir": "data"},
        "notifications": {"reminder_minutes": 10, "muted_prayers": [], "alert_sound": "adhan"},
        "storage_path": "state.json",
    }
    path = tmp_path / "config.json"
    path.write_text(json.dumps(config), encoding="utf-8")
    return path


@pytest.fixture
def app(config_path, monkeypatch):
    app = PrayerNotificationApp(config_path, platform="win32")
    app.calls = []
    monkeypatch.setattr(app.resolver, "resolve", lambda day, location=None: make_times(day))
    monkeypatch.setattr(app.scheduler, "run", lambda *args: app.calls.append(("run", args)))
    monkeypatch.setattr(app.scheduler, "reschedule", lambda *args: app.calls.append(("reschedule", args)))
    return app


def test_app_is_composed_from_config(app, config_path):
    assert isinstance(app.notifier._delivery, LogDelivery)
    assert app.now().tzinfo.zone == "Asia/Singapore"
    assert app.scheduler.settings.coverage_threshold == 3


def test_refresh_runs_scheduler_and_plans_next_refresh(app, config_path):
    app.refresh()

    assert [name for name, _ in app.calls] == ["run"]
    today_times, reminder, muted, sound, location = app.calls[0][1]
    assert today_times.date == app.now().date()
    assert (reminder, muted, sound) == (10, frozenset(), "adhan")
    assert location.city == "Singapore"

    job = app.notifier.scheduler.get_job(REFRESH_JOB_ID)
    assert job is not None
    assert (job.trigger.run_date.hour, job.trigger.run_date.minute) == (0, 5)
    assert job.trigger.run_date.date() > app.now().date()
    assert (config_path.parent / "state.json").exists()


def test_changed_preferences_trigger_reschedule(app, config_path):
    app.refresh()
    config = json.loads(config_path.read_text(encoding="utf-8"))
    config["notifications"]["muted_prayers"] = ["Sunrise"]
    config_path.write_text(json.dumps(config), encoding="utf-8")

    app.refresh()
    app.refresh()

    assert [name for name, _ in app.calls] == ["run", "reschedule", "run"]
    assert app.calls[1][1][2] == frozenset({"Sunrise"})


def test_unresolvable_today_still_plans_refresh(app, monkeypatch):
    def unavailable(day, location=None):
        raise SourceUnavailable(day)

    monkeypatch.setattr(app.resolver, "resolve", unavailable)

    app.refresh()

    assert app.calls == []
    assert app.notifier.scheduler.get_job(REFRESH_JOB_ID) is not None


def _update_notifications(config_path, **changes):
    config = json.loads(config_path.read_text(encoding="utf-8"))
    config["notifications"].update(changes)
    config_path.write_text(json.dumps(config), encoding="utf-8")


def test_preference_check_reschedules_without_waiting_for_daily_refresh(app, config_path):
    app.refresh()
    _update_notifications(config_path, reminder_minutes=15)

    app.check_preferences()
    app.check_preferences()

    assert [name for name, _ in app.calls] == ["run", "reschedule"]
    assert app.calls[1][1][1] == 15


def test_start_registers_preference_check(app, monkeypatch):
    monkeypatch.setattr(app.notifier, "start", lambda: None)

    app.start()

    job = app.notifier.scheduler.get_job(PREFERENCES_JOB_ID)
    assert isinstance(job.trigger, IntervalTrigger)
    assert job.trigger.interval == timedelta(seconds=60)


def test_failed_config_save_does_not_stop_refresh(app, config_path, monkeypatch):
    config = json.loads(config_path.read_text(encoding="utf-8"))
    config["auto_location"] = True
    config_path.write_text(json.dumps(config), encoding="utf-8")
    detected = LocationInfo("Johor Bahru", "MY", 1.4927, 103.7414, "Asia/Kuala_Lumpur")
    monkeypatch.setattr(main_module, "detect_location_from_ip", lambda: detected)

    def read_only(path, payload):
        raise OSError("read-only file system")

    monkeypatch.setattr(PrayerNotificationApp, "_save_json", staticmethod(read_only))

    app.refresh()

    assert [name for name, _ in app.calls] == ["run"]
    assert app.calls[0][1][4] == detected
    assert app.notifier.scheduler.get_job(REFRESH_JOB_ID) is not None


def test_invalid_preferences_still_plan_next_refresh(app, config_path):
    _update_notifications(config_path, reminder_minutes="soon")

    app.refresh()
    app.check_preferences()

    assert app.calls == []
    assert app.notifier.scheduler.get_job(REFRESH_JOB_ID) is not None
