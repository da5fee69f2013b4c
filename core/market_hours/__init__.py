"""
Trading-day calendar for US equity markets.
"""

from .models import MarketHoursConfig
from .trading_calendar import TradingCalendar

__all__ = [
    "MarketHoursConfig",
    "TradingCalendar",
]
