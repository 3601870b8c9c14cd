from datetime import datetime

import pytest

from casebook.cron import Scheduler, parse_spec


def test_every_minute_matches_any_minute():
    spec = parse_spec("*/1 * * * *")
    assert all(spec.matches(datetime(2024, 5, 7, 13, m)) for m in range(60))


def test_every_two_minutes_matches_even_minutes_only():
    spec = parse_spec("*/2 * * * *")
    matched = [m for m in range(60) if spec.matches(datetime(2024, 5, 7, 13, m))]
    assert matched == list(range(0, 60, 2))


def test_lists_and_ranges():
    spec = parse_spec("5,10-12 3 * * *")
    matched = [m for m in range(60) if spec.matches(datetime(2024, 5, 7, 3, m))]
    assert matched == [5, 10, 11, 12]
    assert not spec.matches(datetime(2024, 5, 7, 4, 5))


def test_descriptor_equals_expanded_form():
    assert parse_spec("@hourly") == parse_spec("0 * * * *")
    assert parse_spec("@daily") == parse_spec("0 0 * * *")


def test_weekday_seven_is_sunday_and_names_work():
    assert parse_spec("0 0 * * 7") == parse_spec("0 0 * * 0")
    assert parse_spec("0 0 * JAN SUN") == parse_spec("0 0 * 1 0")


def test_restricted_day_fields_match_either():
    spec = parse_spec("0 0 1 * 1")
    # 2024-01-01 is a Monday, 2024-01-08 a Monday, 2024-02-01 a Thursday.
    assert spec.matches(datetime(2024, 1, 8, 0, 0))
    assert spec.matches(datetime(2024, 2, 1, 0, 0))
    assert not spec.matches(datetime(2024, 1, 9, 0, 0))


@pytest.mark.parametrize(
    "spec",
    ["", "* * * *", "* * * * * *", "60 * * * *", "*/0 * * * *", "5-3 * * * *", "x * * * *", "@sometimes"],
)
def test_invalid_specs_raise(spec):
    with pytest.raises(ValueError):
        parse_spec(spec)


def test_due_jobs_selects_matching_jobs():
    scheduler = Scheduler()
    every, even = object(), object()
    scheduler.add_job("*/1 * * * *", every)
    scheduler.add_job("*/2 * * * *", even)
    assert scheduler.due_jobs(datetime(2024, 5, 7, 13, 2)) == [every, even]
    assert scheduler.due_jobs(datetime(2024, 5, 7, 13, 3)) == [every]


def test_add_job_rejects_bad_spec():
    scheduler = Scheduler()
    with pytest.raises(ValueError):
        scheduler.add_job("bad", object())
    assert scheduler.due_jobs(datetime(2024, 5, 7, 13, 2)) == []


def test_start_twice_raises_and_stop_allows_restart():
    scheduler = Scheduler()
    scheduler.start()
    try:
        with pytest.raises(RuntimeError):
            scheduler.start()
    finally:
        scheduler.stop()
    scheduler.start()
    scheduler.stop()
    with pytest.raises(RuntimeError):
        with scheduler:
            scheduler.start()