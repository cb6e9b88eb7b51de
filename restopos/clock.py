from datetime import datetime
from typing import Optional
from zoneinfo import ZoneInfo

LOCAL_FORMAT = "%Y-%m-%d %H:%M:%S"


class LocalClock:
    """Wall clock in the restaurant's civil time.

    Stamps are naive datetimes in the configured zone, truncated to whole
    seconds, so they compare and sort the same way the stored columns do.
    """

    def __init__(self, timezone_name: str) -> None:
        self.tz = ZoneInfo(timezone_name)

    def now(self) -> datetime:
        return datetime.now(self.tz).replace(tzinfo=None, microsecond=0)


def format_local(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.strftime(LOCAL_FORMAT)
