from datetime import datetime, timezone
from typing import Iterable, List, Optional

from errors import ValidationFailed

# Monday == 0, matching datetime.weekday()
WEEKDAY_LABELS = {
    "monday": 0, "mon": 0, "الاثنين": 0,
    "tuesday": 1, "tue": 1, "الثلاثاء": 1,
    "wednesday": 2, "wed": 2, "الأربعاء": 2,
    "thursday": 3, "thu": 3, "الخميس": 3,
    "friday": 4, "fri": 4, "الجمعة": 4,
    "saturday": 5, "sat": 5, "السبت": 5,
    "sunday": 6, "sun": 6, "الأحد": 6,
}
WEEKDAY_NAMES = ["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]


def parse_weekdays(labels) -> List[int]:
    """Accepts a comma-separated string or an iterable of labels; returns sorted weekday numbers."""
    if not labels:
        return []
    if isinstance(labels, str):
        labels = labels.split(",")
    days = set()
    for label in labels:
        key = str(label).strip().lower()
        if not key:
            continue
        if key not in WEEKDAY_LABELS:
            raise ValidationFailed(f"Unknown weekday: {label}")
        days.add(WEEKDAY_LABELS[key])
    return sorted(days)


def format_weekdays(days: Iterable[int]) -> Optional[str]:
    days = sorted(set(days))
    if not days:
        return None
    return ",".join(WEEKDAY_NAMES[d] for d in days)


def parse_datetime(value) -> datetime:
    """Parse ISO 8601 or the app's ``DD/MM/YYYY HH:mm`` form into naive UTC.

    Naive input is taken to already be UTC.
    """
    if isinstance(value, datetime):
        parsed = value
    else:
        raw = str(value).strip()
        try:
            parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        except ValueError:
            try:
                parsed = datetime.strptime(raw, "%d/%m/%Y %H:%M")
            except ValueError:
                raise ValidationFailed(f"Invalid date-time: {value}")
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed

