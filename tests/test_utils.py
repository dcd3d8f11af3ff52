from __future__ import annotations

from datetime import date, time

from civiccal.utils import add_years, format_event_date, format_event_time, new_id, utcnow


def test_add_years_clamps_leap_day():
    assert add_years(date(2024, 2, 29), 2) == date(2026, 2, 28)
    assert add_years(date(2024, 2, 29), 4) == date(2028, 2, 29)
    assert add_years(date(2030, 3, 15), 2) == date(2032, 3, 15)


def test_formatters():
    assert format_event_date(date(2030, 4, 1)) == "2030-04-01"
    assert format_event_time(time(7, 5)) == "07:05"
    assert format_event_date(None) == ""
    assert format_event_time(None) == ""


def test_utcnow_is_naive_and_ids_are_unique():
    assert utcnow().tzinfo is None
    assert new_id() != new_id()
    assert len(new_id()) == 36
