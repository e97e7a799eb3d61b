from datetime import date, datetime, timezone

import pytest

from storefront.time_utils import normalize_datetime, parse_iso_datetime, to_utc_z


def test_parse_z_and_offset():
    assert parse_iso_datetime("2024-03-01T10:00:00Z") == datetime(2024, 3, 1, 10, 0)
    assert parse_iso_datetime("2024-03-01T15:30:00+05:30") == datetime(2024, 3, 1, 10, 0)
    assert parse_iso_datetime("  ") is None


@pytest.mark.parametrize(
    "value",
    [
        1709287200,
        1709287200000,
        "1709287200",
        {"seconds": 1709287200, "nanoseconds": 0},
        {"_seconds": 1709287200, "_nanoseconds": 0},
        datetime(2024, 3, 1, 10, 0, tzinfo=timezone.utc),
    ],
)
def test_normalize_stored_shapes(value):
    assert normalize_datetime(value) == datetime(2024, 3, 1, 10, 0)


def test_normalize_date_is_midnight():
    assert normalize_datetime(date(2024, 3, 1)) == datetime(2024, 3, 1)


@pytest.mark.parametrize("value", [True, "yesterday", {"nanoseconds": 5}, [1, 2]])
def test_normalize_rejects_garbage(value):
    with pytest.raises(ValueError):
        normalize_datetime(value)


def test_to_utc_z():
    assert to_utc_z(datetime(2024, 3, 1, 10, 0, 0, 123456)) == "2024-03-01T10:00:00Z"
    assert to_utc_z(None) is None
