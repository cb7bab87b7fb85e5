import json
from datetime import date, time

import pytest
import responses

from official_times import OfficialTimetable, official_date_key

REMOTE_URL = "https://timetable.example.org/prayerTimes{year}.json"


def record(day: str, **overrides) -> dict:
    entry = {
        "date": day,
        "subuh": "5:45",
        "syuruk": "7:07",
        "zohor": "13:06",
        "asar": "16:29",
        "maghrib": "19:03",
        "isyak": "20:18",
    }
    entry.update(overrides)
    return entry


@pytest.fixture
def data_dir(tmp_path):
    records = [
        record("22/12/2025"),
        record("02/01/2025"),
        record("23/12/2025", isyak=""),
    ]
    (tmp_path / "prayer_times_2025.json").write_text(json.dumps(records), encoding="utf-8")
    return tmp_path


def test_lookup_maps_localized_names(data_dir):
    timetable = OfficialTimetable(data_dir=data_dir)

    day = timetable.lookup(date(2025, 12, 22))

    assert day.source == "official"
    assert day.names() == ("Fajr", "Sunrise", "Dhuhr", "Asr", "Maghrib", "Isha")
    assert day.time_of("Fajr") == time(5, 45)
    assert day.time_of("Dhuhr") == time(13, 6)
    assert day.time_of("Isha") == time(20, 18)


def test_zero_padded_dates_are_indexed(data_dir):
    timetable = OfficialTimetable(data_dir=data_dir)

    assert timetable.lookup(date(2025, 1, 2)) is not None


def test_unpublished_dates_return_none(data_dir):
    timetable = OfficialTimetable(data_dir=data_dir)

    assert timetable.lookup(date(2025, 12, 31)) is None
    assert timetable.lookup(date(2026, 1, 1)) is None


def test_incomplete_record_is_rejected(data_dir):
    timetable = OfficialTimetable(data_dir=data_dir)

    with pytest.raises(ValueError, match="Isha"):
        timetable.lookup(date(2025, 12, 23))


def test_without_any_source_nothing_is_found():
    assert OfficialTimetable().lookup(date(2025, 12, 22)) is None


def test_remote_timetable_is_preferred_and_cached(data_dir):
    timetable = OfficialTimetable(data_dir=data_dir, remote_url=REMOTE_URL)
    remote = {"data": [record("22/12/2025", subuh="5:50")]}

    with responses.RequestsMock() as mock:
        mock.add(responses.GET, REMOTE_URL.format(year=2025), json=remote, status=200)
        first = timetable.lookup(date(2025, 12, 22))
        second = timetable.lookup(date(2025, 12, 24))
        call_count = len(mock.calls)

    assert call_count == 1
    assert first.time_of("Fajr") == time(5, 50)
    assert second is None


def test_remote_failure_falls_back_to_bundled_file(data_dir):
    timetable = OfficialTimetable(data_dir=data_dir, remote_url=REMOTE_URL)

    with responses.RequestsMock() as mock:
        mock.add(responses.GET, REMOTE_URL.format(year=2025), status=500)
        day = timetable.lookup(date(2025, 12, 22))

    assert day.time_of("Fajr") == time(5, 45)


def test_refresh_reloads_tables(data_dir):
    timetable = OfficialTimetable(data_dir=data_dir)
    assert timetable.lookup(date(2025, 12, 24)) is None

    path = data_dir / "prayer_times_2025.json"
    records = json.loads(path.read_text(encoding="utf-8"))
    records.append(record("24/12/2025"))
    path.write_text(json.dumps(records), encoding="utf-8")
    timetable.refresh(2025)

    assert timetable.lookup(date(2025, 12, 24)) is not None


def test_official_date_key():
    assert official_date_key(date(2025, 1, 2)) == "2/1/2025"
