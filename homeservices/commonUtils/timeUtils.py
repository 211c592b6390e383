import random
import string
import time
from datetime import datetime, timezone, date, time as dt_time
from typing import Callable

# MongoDB hands datetimes back naive (UTC), so everything in the core stays naive UTC.
Clock = Callable[[], datetime]

_CODE_ALPHABET = string.ascii_uppercase + string.digits


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def combine_schedule(scheduled_date: date, start: str) -> datetime:
    """Build the scheduled start from the booking date and an "HH:MM" start time."""
    day = scheduled_date.date() if isinstance(scheduled_date, datetime) else scheduled_date
    hours, minutes = (int(part) for part in start.split(":"))
    return datetime.combine(day, dt_time(hour=hours, minute=minutes))


def generate_code(prefix: str, rng: random.Random = None) -> str:
    """
    Human-facing reference: prefix + epoch millis + 5 random base-36 characters.
    Uniqueness is enforced by the store's unique index, not here.
    """
    rng = rng or random
    suffix = "".join(rng.choice(_CODE_ALPHABET) for _ in range(5))
    return f"{prefix}{int(time.time() * 1000)}{suffix}"
