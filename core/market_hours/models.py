"""
Market calendar configuration.
"""

from datetime import datetime, date
from typing import List, Optional
from pydantic import BaseModel, Field
import pytz


class MarketHoursConfig(BaseModel):
    """
    Configuration for the US equity trading calendar.

    Trading days are Monday to Friday in America/New_York, excluding the
    exchange holidays listed in `holidays`.
    """

    holidays: List[date] = Field(
        default_factory=list,
        description="Exchange holidays (no trading session)"
    )

    timezone: str = Field(
        default="America/New_York",
        description="Market timezone"
    )

    @property
    def tz(self) -> pytz.BaseTzInfo:
        """Get market timezone object."""
        return pytz.timezone(self.timezone)

    def localize(self, check_time: Optional[datetime] = None) -> datetime:
        """Convert (or default) a timestamp into market-local time."""
        if check_time is None:
            return datetime.now(self.tz)
        if check_time.tzinfo is None:
            return self.tz.localize(check_time)
        return check_time.astimezone(self.tz)
