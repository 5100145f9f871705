from datetime import datetime

import pytest

from errors import ValidationFailed
from schedule import format_weekdays, parse_datetime, parse_weekdays


def test_parse_weekdays_mixed_labels():
    assert parse_weekdays("Mon, thursday") == [0, 3]
    assert parse_weekdays(["الجمعة", "sun", "friday"]) == [4, 6]
    assert parse_weekdays(None) == []


def test_parse_weekdays_unknown():
    with pytest.raises(ValidationFailed):
        parse_weekdays("mon,funday")


def test_format_weekdays():
    assert format_weekdays([3, 0, 3]) == "monday,thursday"
    assert format_weekdays([]) is None


@pytest.mark.parametrize("raw, expected", [
    ("2030-01-07T08:30:00", datetime(2030, 1, 7, 8, 30)),
    ("2030-01-07T08:30:00Z", datetime(2030, 1, 7, 8, 30)),
    ("2030-01-07T10:30:00+02:00", datetime(2030, 1, 7, 8, 30)),
    ("07/01/2030 08:30", datetime(2030, 1, 7, 8, 30)),
])
def test_parse_datetime(raw, expected):
    assert parse_datetime(raw) == expected


def test_parse_datetime_rejects_garbage():
    with pytest.raises(ValidationFailed):
        parse_datetime("next tuesday-ish")

