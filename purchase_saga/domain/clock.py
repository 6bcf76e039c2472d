"""Time helpers shared by the domain and the stores."""
from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Current UTC time as a naive datetime (all persisted timestamps are naive UTC)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
