from datetime import date, datetime, timezone
from typing import Callable, Dict, List, Optional

from core.config.settings import PDTSettings
from core.logging import get_audit_logger_safe, get_trading_logger_safe
from core.market_hours import MarketHoursConfig, TradingCalendar
from core.utils.exceptions import ComplianceViolation
from .models import (
    DayTradeRecord,
    OpenLot,
    PDTCheckResult,
    PDTStatus,
    RecentDayTrade,
    WarningLevel,
)

logger = get_trading_logger_safe("pdt_compliance")
audit_logger = get_audit_logger_safe("pdt_compliance_audit")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PDTComplianceTracker:
    """
    Pattern Day Trader rule tracking for one brokerage account.

    Accounts with equity below the threshold may not exceed the day trade
    limit within a rolling window of trading days. The window is computed
    on the trading calendar (weekends and holidays excluded), never from
    elapsed wall-clock time.

    Checks (`check_day_trade`, `ensure_day_trade_allowed`) never mutate
    state; `record_open` and `record_day_trade` are only called by the
    engine once a trade has been accepted.
    """

    def __init__(self, settings: PDTSettings, calendar: Optional[TradingCalendar] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        self.settings = settings
        self.calendar = calendar or TradingCalendar(
            MarketHoursConfig(holidays=settings.holidays, timezone=settings.timezone)
        )
        self._clock = clock or _utcnow
        self._enabled = settings.enabled
        self._equity: Optional[float] = None
        self._day_trades: List[DayTradeRecord] = []
        self._open_lots: Dict[str, List[OpenLot]] = {}
        self._reset_on: Optional[date] = None

    # Configuration
    @property
    def enabled(self) -> bool:
        return self._enabled

    def enable_pdt_protection(self) -> None:
        self._enabled = True
        audit_logger.info("PDT protection enabled")

    def disable_pdt_protection(self) -> None:
        self._enabled = False
        audit_logger.warning("PDT protection disabled - day trades will not be blocked")

    def update_equity(self, equity: Optional[float]) -> None:
        if equity is not None and equity < 0:
            raise ValueError("Account equity cannot be negative")
        self._equity = equity

    def is_account_exempt(self, equity: Optional[float] = None) -> bool:
        equity = self._equity if equity is None else equity
        return equity is not None and equity >= self.settings.equity_threshold

    def is_protected(self, equity: Optional[float] = None) -> bool:
        return self._enabled and not self.is_account_exempt(equity)

    # Window arithmetic
    def _today(self) -> date:
        return self.calendar.session_date(self._clock())

    def _window_start(self, today: date) -> date:
        start = self.calendar.window_start(today, self.settings.lookback_days)
        if self._reset_on is not None and self._reset_on > start:
            return self._reset_on
        return start

    def _trades_in_window(self, today: Optional[date] = None) -> List[DayTradeRecord]:
        today = today or self._today()
        start = self._window_start(today)
        return [t for t in self._day_trades if start <= t.session_date <= today]

    def day_trade_count(self) -> int:
        return len(self._trades_in_window())

    # Classification
    def is_day_trade(self, symbol: str, side: str, at: Optional[datetime] = None) -> bool:
        """A sell is a day trade when it closes a buy of the same symbol from the same session."""
        if side != "sell":
            return False
        session = self.calendar.session_date(at or self._clock())
        return any(lot.session_date == session for lot in self._open_lots.get(symbol, []))

    # Gate
    def check_day_trade(self, equity: Optional[float] = None) -> PDTCheckResult:
        """Would one more day trade be allowed right now? Pure read."""
        equity = self._equity if equity is None else equity
        count = self.day_trade_count()
        limit = self.settings.day_trade_limit

        if self.is_account_exempt(equity):
            return PDTCheckResult(allowed=True, day_trade_count=count,
                                  warning="Account is PDT-exempt (equity at or above threshold)")

        if not self._enabled:
            return PDTCheckResult(
                allowed=True,
                day_trade_count=count,
                warning="PDT protection disabled - risk of PDT violation" if count >= limit else None,
            )

        if count >= limit:
            return PDTCheckResult(
                allowed=False,
                day_trade_count=count,
                day_trade_limit=limit,
                reason=(
                    f"PDT protection: already used {count}/{limit} day trades in the last "
                    f"{self.settings.lookback_days} trading days"
                ),
            )

        warning = None
        if count >= self.settings.warning_threshold:
            warning = f"Approaching PDT limit: {count}/{limit} day trades used"
        return PDTCheckResult(allowed=True, day_trade_count=count, day_trade_limit=limit, warning=warning)

    def ensure_day_trade_allowed(self, equity: Optional[float] = None) -> PDTCheckResult:
        result = self.check_day_trade(equity)
        if not result.allowed:
            logger.warning("Day trade blocked by PDT protection", day_trade_count=result.day_trade_count,
                           day_trade_limit=result.day_trade_limit, equity=equity)
            raise ComplianceViolation(
                result.reason,
                day_trade_count=result.day_trade_count,
                day_trade_limit=result.day_trade_limit or self.settings.day_trade_limit,
                equity=self._equity if equity is None else equity,
                reason=result.reason,
            )
        if result.warning:
            logger.warning(result.warning, day_trade_count=result.day_trade_count)
        return result

    # Recording (called by the engine inside its accept step)
    def record_open(self, symbol: str, trade_id: str, at: Optional[datetime] = None) -> None:
        at = at or self._clock()
        session = self.calendar.session_date(at)
        lots = [lot for lot in self._open_lots.get(symbol, []) if lot.session_date == session]
        lots.append(OpenLot(symbol=symbol, trade_id=trade_id, bought_at=at, session_date=session))
        self._open_lots[symbol] = lots

    def record_day_trade(self, symbol: str, sell_trade_id: str, at: Optional[datetime] = None) -> DayTradeRecord:
        at = at or self._clock()
        session = self.calendar.session_date(at)
        lots = self._open_lots.get(symbol, [])
        index = next((i for i, lot in enumerate(lots) if lot.session_date == session), None)
        if index is None:
            raise ValueError(f"No same-session buy of {symbol} to close into a day trade")
        lot = lots.pop(index)

        record = DayTradeRecord(
            symbol=symbol,
            buy_trade_id=lot.trade_id,
            sell_trade_id=sell_trade_id,
            bought_at=lot.bought_at,
            sold_at=at,
            session_date=session,
        )
        self._day_trades.append(record)
        self._prune(session)

        audit_logger.info("Day trade recorded", symbol=symbol, sell_trade_id=sell_trade_id,
                          hours_held=round(record.hours_held, 2),
                          day_trade_count=self.day_trade_count())
        return record

    def _prune(self, today: date) -> None:
        """Drop day trades that can no longer fall inside any future window."""
        start = self.calendar.window_start(today, self.settings.lookback_days)
        self._day_trades = [t for t in self._day_trades if t.session_date >= start]

    # Administration
    def reset_day_trade_count(self) -> None:
        self._day_trades = []
        self._open_lots = {}
        self._reset_on = self._today()
        audit_logger.warning("Day trade count manually reset", reset_on=self._reset_on.isoformat())

    # Reporting
    def get_pdt_status(self, equity: Optional[float] = None) -> PDTStatus:
        equity = self._equity if equity is None else equity
        today = self._today()
        recent = self._trades_in_window(today)
        count = len(recent)
        limit = self.settings.day_trade_limit
        exempt = self.is_account_exempt(equity)
        protected = self._enabled and not exempt

        warning_level = WarningLevel.SAFE
        if protected:
            if count >= limit:
                warning_level = WarningLevel.DANGER
            elif count >= self.settings.warning_threshold:
                warning_level = WarningLevel.WARNING

        window_reset_at = None
        if recent:
            oldest = min(t.session_date for t in recent)
            window_reset_at = self.calendar.window_reset_at(oldest, self.settings.lookback_days)

        return PDTStatus(
            protected=protected,
            enabled=self._enabled,
            account_exempt=exempt,
            equity=equity,
            threshold=self.settings.equity_threshold,
            day_trade_count=count,
            day_trade_limit=limit,
            remaining=max(0, limit - count) if protected else None,
            window_start=self._window_start(today),
            window_reset_at=window_reset_at,
            warning_level=warning_level,
            recent_day_trades=[
                RecentDayTrade(symbol=t.symbol, session_date=t.session_date, hours_held=round(t.hours_held, 2))
                for t in recent
            ],
        )
