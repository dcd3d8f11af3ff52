from __future__ import annotations

from datetime import date, time

from civiccal.validation import (
    parse_event_date,
    parse_event_time,
    validate_email,
    validate_event,
    validate_url,
)

TODAY = date(2030, 3, 15)


def _candidate(**overrides):
    candidate = {"title": "Town Hall", "date": "2030-04-01", "time": "18:00"}
    candidate.update(overrides)
    return candidate


def test_valid_candidate_has_no_errors():
    assert validate_event(_candidate(), today=TODAY) == []


def test_missing_required_fields_accumulate():
    errors = validate_event({}, today=TODAY)
    assert errors == ["Title is required", "Date is required", "Time is required"]


def test_whitespace_title_counts_as_missing():
    assert validate_event(_candidate(title="   "), today=TODAY) == ["Title is required"]


def test_length_limits():
    errors = validate_event(
        _candidate(title="x" * 101, description="d" * 1001, location="l" * 201),
        today=TODAY,
    )
    assert "Title must be at most 100 characters" in errors
    assert "Description must be at most 1000 characters" in errors
    assert "Location must be at most 200 characters" in errors


def test_length_limits_are_inclusive():
    candidate = _candidate(title="x" * 100, description="d" * 1000, location="l" * 200)
    assert validate_event(candidate, today=TODAY) == []


def test_past_date_rejected_and_today_accepted():
    assert validate_event(_candidate(date="2030-03-14"), today=TODAY) == [
        "Event date cannot be in the past"
    ]
    assert validate_event(_candidate(date="2030-03-15"), today=TODAY) == []


def test_future_limit_is_two_years_inclusive():
    assert validate_event(_candidate(date="2032-03-15"), today=TODAY) == []
    assert validate_event(_candidate(date="2032-03-16"), today=TODAY) == [
        "Event date cannot be more than 2 years in the future"
    ]


def test_future_limit_from_leap_day_clamps_to_february_28():
    leap_day = date(2028, 2, 29)
    assert validate_event(_candidate(date="2030-02-28"), today=leap_day) == []
    assert validate_event(_candidate(date="2030-03-01"), today=leap_day) != []


def test_malformed_and_impossible_dates():
    assert validate_event(_candidate(date="04/01/2030"), today=TODAY) == [
        "Date must be in YYYY-MM-DD format"
    ]
    assert validate_event(_candidate(date="2030-02-30"), today=TODAY) == [
        "Date must be a valid calendar date"
    ]


def test_time_format():
    assert validate_event(_candidate(time="9:05"), today=TODAY) == []
    for bad in ("24:00", "12:60", "noon", "12-30"):
        assert validate_event(_candidate(time=bad), today=TODAY) == [
            "Time must be in HH:MM format (24-hour)"
        ]


def test_category_and_link():
    errors = validate_event(
        _candidate(category="Nightlife", link="javascript:alert(1)"), today=TODAY
    )
    assert errors == [
        "Invalid category selected",
        "Link must be a valid http or https URL",
    ]
    assert validate_event(
        _candidate(category="Arts", link="https://city.example"), today=TODAY
    ) == []


def test_non_string_fields_are_treated_as_missing():
    errors = validate_event({"title": 5, "date": None, "time": ["18:00"]}, today=TODAY)
    assert errors == ["Title is required", "Date is required", "Time is required"]


def test_parse_helpers():
    assert parse_event_date("2030-04-01") == date(2030, 4, 1)
    assert parse_event_date("2030-4-1") is None
    assert parse_event_time("07:45") == time(7, 45)
    assert parse_event_time("7:45") == time(7, 45)
    assert parse_event_time("7:5") is None


def test_validate_email_and_url():
    assert validate_email("someone@example.org")
    assert not validate_email("not-an-email")
    assert not validate_email("a" * 250 + "@ex.com")
    assert validate_url("http://example.com/path")
    assert not validate_url("ftp://example.com")
    assert not validate_url("https://")


def test_only_ascii_digits_without_trailing_text():
    assert validate_event(_candidate(time="10:00\n"), today=TODAY) == [
        "Time must be in HH:MM format (24-hour)"
    ]
    assert validate_event(_candidate(date="2030-04-01\n"), today=TODAY) == [
        "Date must be in YYYY-MM-DD format"
    ]
    assert validate_event(_candidate(date="٢٠٣٠-٠٤-٠١"), today=TODAY) == [
        "Date must be in YYYY-MM-DD format"
    ]
    assert parse_event_time("١٠:٠٠") is None
    assert not validate_email("someone@example.org\n")
