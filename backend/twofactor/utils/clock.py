"""
Clock helpers.

Services take a clock callable returning unix seconds so tests can move time
deterministically. Timestamps persisted to the database are naive UTC, like
every other DateTime column in the models.
"""
import time
from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], float]

system_clock: Clock = time.time


def to_utc_naive(unix_time: float) -> datetime:
    """Convert unix seconds to a naive UTC datetime"""
    return datetime.fromtimestamp(unix_time, tz=timezone.utc).replace(tzinfo=None)
