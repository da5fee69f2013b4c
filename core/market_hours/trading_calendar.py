"""
Trading-day calendar used for rolling compliance windows.

All computations are performed on calendar dates: weekends and configured
holidays are skipped, wall-clock time only matters when mapping a timestamp
onto its session date in the market timezone.
"""

from datetime import date, datetime, timedelta
from typing import Optional

from .models import MarketHoursConfig


class TradingCalendar:
    """Answers trading-day questions for a single market"""

    def __init__(self, config: Optional[MarketHoursConfig] = None):
        self.config = config or MarketHoursConfig()
        self._holidays = frozenset(self.config.holidays)

    def session_date(self, at: Optional[datetime] = None) -> date:
        """Market-local date a timestamp belongs to."""
        return self.config.localize(at).date()

    def is_trading_day(self, day: date) -> bool:
        return day.weekday() < 5 and day not in self._holidays

    def previous_trading_day(self, day: date) -> date:
        day -= timedelta(days=1)
        while not self.is_trading_day(day):
            day -= timedelta(days=1)
        return day

    def next_trading_day(self, day: date) -> date:
        day += timedelta(days=1)
        while not self.is_trading_day(day):
            day += timedelta(days=1)
        return day

    def add_trading_days(self, day: date, count: int) -> date:
        """Move `count` trading days forward (or backward when negative)."""
        step = self.next_trading_day if count >= 0 else self.previous_trading_day
        for _ in range(abs(count)):
            day = step(day)
        return day

    def window_start(self, day: date, lookback: int) -> date:
        """
        First trading day of the rolling window of `lookback` trading days
        that ends on `day` (or on the last trading day before it, when `day`
        is not itself a trading day).
        """
        if not self.is_trading_day(day):
            day = self.previous_trading_day(day)
        return self.add_trading_days(day, -(lookback - 1))

    def window_reset_at(self, oldest_trade_day: date, lookback: int) -> date:
        """Trading day on which a trade made on `oldest_trade_day` drops out of the window."""
        return self.add_trading_days(oldest_trade_day, lookback)
