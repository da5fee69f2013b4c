import pytest
from datetime import date

from core.config.settings import PDTSettings
from core.utils.exceptions import ComplianceViolation
from services.pdt_compliance.models import WarningLevel
from services.pdt_compliance.tracker import PDTComplianceTracker


def _round_trip(tracker, symbol="AAPL", n=1):
    tracker.record_open(symbol, f"buy-{symbol}-{n}")
    return tracker.record_day_trade(symbol, f"sell-{symbol}-{n}")


class TestPDTStatus:
    def test_initial_status_unknown_equity_is_protected(self, pdt_tracker):
        status = pdt_tracker.get_pdt_status()

        assert status.protected is True
        assert status.enabled is True
        assert status.account_exempt is False
        assert status.day_trade_count == 0
        assert status.remaining == 3
        assert status.window_reset_at is None
        assert status.warning_level == WarningLevel.SAFE
        assert status.window_start == date(2025, 3, 6)

    def test_exempt_account_is_not_protected(self, pdt_tracker):
        pdt_tracker.update_equity(25_000)
        status = pdt_tracker.get_pdt_status()

        assert status.account_exempt is True
        assert status.protected is False
        assert status.remaining is None

    def test_equity_override_is_reporting_only(self, pdt_tracker):
        assert pdt_tracker.get_pdt_status(equity=30_000).protected is False
        assert pdt_tracker.get_pdt_status().protected is True

    def test_negative_equity_rejected(self, pdt_tracker):
        with pytest.raises(ValueError):
            pdt_tracker.update_equity(-1)

    def test_warning_levels(self, pdt_tracker):
        _round_trip(pdt_tracker, n=1)
        _round_trip(pdt_tracker, n=2)
        assert pdt_tracker.get_pdt_status().warning_level == WarningLevel.WARNING

        _round_trip(pdt_tracker, n=3)
        status = pdt_tracker.get_pdt_status()
        assert status.warning_level == WarningLevel.DANGER
        assert status.remaining == 0
        assert [t.symbol for t in status.recent_day_trades] == ["AAPL"] * 3


class TestDayTradeClassification:
    def test_buy_is_never_a_day_trade(self, pdt_tracker):
        pdt_tracker.record_open("AAPL", "t1")
        assert pdt_tracker.is_day_trade("AAPL", "buy") is False

    def test_same_session_sell_is_day_trade(self, pdt_tracker):
        pdt_tracker.record_open("AAPL", "t1")
        assert pdt_tracker.is_day_trade("AAPL", "sell") is True
        assert pdt_tracker.is_day_trade("MSFT", "sell") is False

    def test_overnight_sell_is_not_day_trade(self, pdt_tracker, clock):
        pdt_tracker.record_open("AAPL", "t1")
        clock.advance(days=1)
        assert pdt_tracker.is_day_trade("AAPL", "sell") is False

    def test_record_day_trade_requires_same_session_buy(self, pdt_tracker):
        with pytest.raises(ValueError):
            pdt_tracker.record_day_trade("AAPL", "t2")


class TestPDTGate:
    def test_fourth_day_trade_blocked_below_threshold(self, pdt_tracker):
        pdt_tracker.update_equity(20_000)
        for n in range(3):
            pdt_tracker.ensure_day_trade_allowed()
            _round_trip(pdt_tracker, n=n)

        with pytest.raises(ComplianceViolation) as exc_info:
            pdt_tracker.ensure_day_trade_allowed()

        error = exc_info.value
        assert error.status_code == 403
        assert error.day_trade_count == 3
        assert error.day_trade_limit == 3
        assert error.equity == 20_000
        assert "3/3" in error.message

    def test_check_does_not_mutate(self, pdt_tracker):
        for _ in range(5):
            assert pdt_tracker.check_day_trade().allowed is True
        assert pdt_tracker.day_trade_count() == 0

    def test_disabled_protection_allows_and_keeps_counting(self, pdt_tracker):
        pdt_tracker.update_equity(20_000)
        for n in range(3):
            _round_trip(pdt_tracker, n=n)
        pdt_tracker.disable_pdt_protection()

        result = pdt_tracker.ensure_day_trade_allowed()
        assert result.allowed is True
        assert result.warning is not None

        _round_trip(pdt_tracker, n=4)
        status = pdt_tracker.get_pdt_status()
        assert status.enabled is False
        assert status.protected is False
        assert status.day_trade_count == 4

    def test_reenable_blocks_again(self, pdt_tracker):
        for n in range(3):
            _round_trip(pdt_tracker, n=n)
        pdt_tracker.disable_pdt_protection()
        pdt_tracker.enable_pdt_protection()
        assert pdt_tracker.check_day_trade().allowed is False

    def test_exempt_account_never_blocked(self, pdt_tracker):
        pdt_tracker.update_equity(50_000)
        for n in range(5):
            _round_trip(pdt_tracker, n=n)
        assert pdt_tracker.check_day_trade().allowed is True


class TestRollingWindow:
    def test_trade_expires_after_five_trading_days(self, pdt_tracker, clock):
        _round_trip(pdt_tracker)
        assert pdt_tracker.get_pdt_status().window_reset_at == date(2025, 3, 19)

        clock.advance(days=6)  # Tue 18th: window Wed 12th..Tue 18th
        assert pdt_tracker.day_trade_count() == 1

        clock.advance(days=1)  # Wed 19th: window Thu 13th..Wed 19th
        assert pdt_tracker.day_trade_count() == 0

    def test_weekend_does_not_consume_window(self, test_settings, calendar, clock):
        clock.now = clock.now.replace(day=10)  # Monday
        tracker = PDTComplianceTracker(test_settings.pdt, calendar=calendar, clock=clock)
        _round_trip(tracker)

        clock.now = clock.now.replace(day=14)  # Friday, window Mon..Fri
        assert tracker.day_trade_count() == 1

        clock.now = clock.now.replace(day=16)  # Sunday, still anchored on Friday
        assert tracker.day_trade_count() == 1

        clock.now = clock.now.replace(day=17)  # Monday, window Tue 11th..Mon 17th
        assert tracker.day_trade_count() == 0

    def test_holiday_extends_window(self, clock):
        settings = PDTSettings(holidays=[date(2025, 3, 14)])
        tracker = PDTComplianceTracker(settings, clock=clock)
        _round_trip(tracker)  # Wed 12th

        # Trading days after the 12th: 13, 17, 18, 19 (14th is a holiday)
        clock.now = clock.now.replace(day=19)
        assert tracker.day_trade_count() == 1
        assert tracker.get_pdt_status().window_reset_at == date(2025, 3, 20)


def test_reset_day_trade_count(pdt_tracker):
    for n in range(3):
        _round_trip(pdt_tracker, n=n)
    pdt_tracker.record_open("MSFT", "open-lot")

    pdt_tracker.reset_day_trade_count()

    status = pdt_tracker.get_pdt_status()
    assert status.day_trade_count == 0
    assert status.window_start == date(2025, 3, 12)
    assert pdt_tracker.is_day_trade("MSFT", "sell") is False
    assert pdt_tracker.check_day_trade().allowed is True
