import asyncio
import pytest
from pydantic import ValidationError as PydanticValidationError

from core.utils.exceptions import ConnectivityError, NotFound, ValidationError
from services.trading_engine.models import BrokerPortfolio, RejectionKind, TradeProposal, TradeSide


def buy(symbol="00700", quantity=2.0, price=20.0, proposal_id=None):
    kwargs = {"proposal_id": proposal_id} if proposal_id else {}
    return TradeProposal(symbol=symbol, side=TradeSide.BUY, quantity=quantity, price=price, **kwargs)


def sell(symbol="00700", quantity=2.0, price=20.0, proposal_id=None):
    kwargs = {"proposal_id": proposal_id} if proposal_id else {}
    return TradeProposal(symbol=symbol, side=TradeSide.SELL, quantity=quantity, price=price, **kwargs)


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_twice_keeps_started_at(self, engine, clock):
        first = await engine.start("moomoo")
        version = engine.version
        clock.advance(minutes=5)

        second = await engine.start("moomoo")

        assert first.active is True
        assert first.connected is True
        assert second.started_at == first.started_at
        assert engine.version == version

    @pytest.mark.asyncio
    async def test_start_unknown_or_inactive_broker(self, engine):
        with pytest.raises(NotFound):
            await engine.start("kraken")
        with pytest.raises(ValidationError):
            await engine.start("binance-us")

    @pytest.mark.asyncio
    async def test_stop_clears_started_at(self, engine):
        await engine.start("moomoo")
        state = await engine.stop("moomoo")
        assert state.active is False
        assert state.started_at is None

    @pytest.mark.asyncio
    async def test_unreachable_broker_starts_disconnected(self, stub_engine):
        engine, adapters = stub_engine(moomoo={})
        adapters["moomoo"].start_errors = 1

        state = await engine.start("moomoo")

        assert state.active is True
        assert state.connected is False
        assert engine.get_state().connected is False

    @pytest.mark.asyncio
    async def test_live_adapter_syncs_portfolio_on_start(self, stub_engine, pdt_tracker):
        engine, _ = stub_engine(alpaca={
            "syncs_portfolio": True,
            "portfolio": BrokerPortfolio(value=1_500.0, day_change=12.5),
        })

        state = await engine.start("alpaca")

        assert state.portfolio.value == 1_500.0
        assert state.portfolio.profit == 12.5
        assert state.portfolio.trade_count == 0
        assert pdt_tracker.get_pdt_status().equity == 1_500.0

    @pytest.mark.asyncio
    async def test_refresh_resyncs_live_values(self, stub_engine):
        engine, adapters = stub_engine(alpaca={"syncs_portfolio": True})
        await engine.start("alpaca")
        adapters["alpaca"].portfolio = BrokerPortfolio(value=1_600.0, day_change=-4.0)

        snapshot = await engine.refresh_connectivity()

        assert snapshot.brokers["alpaca"].portfolio.value == 1_600.0
        assert snapshot.brokers["alpaca"].portfolio.profit == -4.0

    @pytest.mark.asyncio
    async def test_reset_zeroes_and_deactivates(self, engine):
        await engine.start("moomoo")
        await engine.execute_trade("moomoo", buy())
        await engine.execute_trade("moomoo", sell(price=25.0))

        snapshot = await engine.reset()

        moomoo = snapshot.brokers["moomoo"]
        assert moomoo.active is False
        assert moomoo.connected is True
        assert moomoo.portfolio.value == 300.0
        assert moomoo.portfolio.trade_count == 0
        assert moomoo.portfolio.profit == 0.0
        assert moomoo.positions == {}
        assert engine.get_trades("moomoo") == []


class TestExecution:
    @pytest.mark.asyncio
    async def test_inactive_broker_rejected_without_mutation(self, engine):
        version = engine.version
        result = await engine.execute_trade("moomoo", buy())

        assert result.accepted is False
        assert result.rejection.kind == RejectionKind.BROKER_INACTIVE
        assert engine.version == version
        assert engine.get_broker_state("moomoo").portfolio.trade_count == 0

    @pytest.mark.asyncio
    async def test_round_trip_realizes_profit(self, engine):
        await engine.start("moomoo")

        bought = await engine.execute_trade("moomoo", buy(quantity=2, price=20.0))
        sold = await engine.execute_trade("moomoo", sell(quantity=2, price=25.0))

        assert bought.trade.profit is None
        assert sold.trade.profit == pytest.approx(10.0)
        state = engine.get_broker_state("moomoo")
        assert state.portfolio.trade_count == 2
        assert state.portfolio.value == pytest.approx(310.0)
        assert state.portfolio.profit == pytest.approx(10.0)
        assert state.positions == {}

    @pytest.mark.asyncio
    async def test_fees_move_value_and_profit_together(self, stub_engine):
        engine, _ = stub_engine(moomoo={"fees": 0.5})
        await engine.start("moomoo")

        await engine.execute_trade("moomoo", buy())

        portfolio = engine.get_broker_state("moomoo").portfolio
        assert portfolio.trade_count == 1
        assert portfolio.value == pytest.approx(299.5)
        assert portfolio.profit == pytest.approx(-0.5)

    @pytest.mark.asyncio
    async def test_positions_average_in(self, engine):
        await engine.start("moomoo")
        await engine.execute_trade("moomoo", buy(quantity=1, price=20.0))
        await engine.execute_trade("moomoo", buy(quantity=1, price=30.0))

        position = engine.get_broker_state("moomoo").positions["00700"]
        assert position.quantity == 2
        assert position.average_price == pytest.approx(25.0)

    @pytest.mark.asyncio
    async def test_rule_violations(self, engine):
        await engine.start("moomoo")

        too_small = await engine.execute_trade("moomoo", buy(quantity=2, price=4.0))
        assert too_small.rejection.kind == RejectionKind.RULE_VIOLATION
        assert "minimum" in too_small.rejection.reason

        too_large = await engine.execute_trade("moomoo", buy(quantity=4, price=20.0))
        assert too_large.rejection.kind == RejectionKind.RULE_VIOLATION

        naked_sell = await engine.execute_trade("moomoo", sell())
        assert naked_sell.rejection.kind == RejectionKind.RULE_VIOLATION
        assert "only 0.0 held" in naked_sell.rejection.reason

        assert engine.get_broker_state("moomoo").portfolio.trade_count == 0

    @pytest.mark.asyncio
    async def test_nan_price_rejected_before_limit_check(self, engine):
        await engine.start("binance-testnet")

        result = await engine.execute_trade("binance-testnet", buy(symbol="BTCUSDT", quantity=1, price=float("nan")))

        assert result.rejection.kind == RejectionKind.RULE_VIOLATION
        state = engine.get_broker_state("binance-testnet")
        assert state.portfolio.trade_count == 0
        assert state.portfolio.value == 2_000.0
        assert state.positions == {}

    @pytest.mark.asyncio
    async def test_trading_limit_caps_exposure(self, engine, validator):
        validator.set_user_trading_limit("moomoo", 100.0, 300.0)
        await engine.start("moomoo")

        first = await engine.execute_trade("moomoo", buy(quantity=2, price=30.0))
        second = await engine.execute_trade("moomoo", buy(quantity=2, price=30.0))

        assert first.accepted is True
        assert second.accepted is False
        assert second.rejection.kind == RejectionKind.LIMIT_EXCEEDED
        assert "HKD 100.00" in second.rejection.reason
        state = engine.get_broker_state("moomoo")
        assert state.portfolio.trade_count == 1
        assert state.positions["00700"].quantity == 2
        assert state.effective_limit == 100.0

    @pytest.mark.asyncio
    async def test_duplicate_proposal_executes_once(self, stub_engine):
        engine, adapters = stub_engine()
        await engine.start("moomoo")
        proposal = buy(proposal_id="prp_dup")

        first = await engine.execute_trade("moomoo", proposal)
        second = await engine.execute_trade("moomoo", proposal)

        assert first.duplicate is False
        assert second.duplicate is True
        assert second.trade.id == first.trade.id
        assert adapters["moomoo"].executed == ["prp_dup"]
        assert engine.get_broker_state("moomoo").portfolio.trade_count == 1

    @pytest.mark.asyncio
    async def test_broker_refusal_is_rejection(self, stub_engine):
        engine, adapters = stub_engine()
        await engine.start("moomoo")
        adapters["moomoo"].reject_next = "insufficient buying power"

        result = await engine.execute_trade("moomoo", buy())

        assert result.rejection.kind == RejectionKind.BROKER_REJECTED
        assert result.rejection.reason == "insufficient buying power"
        assert engine.get_broker_state("moomoo").portfolio.trade_count == 0

    @pytest.mark.asyncio
    async def test_get_trades(self, engine, clock):
        await engine.start("moomoo")
        await engine.start("binance-testnet")
        await engine.execute_trade("moomoo", buy())
        clock.advance(seconds=1)
        await engine.execute_trade("binance-testnet", buy(symbol="BTCUSDT", quantity=0.01, price=2_000.0))

        assert [t.broker_id for t in engine.get_trades()] == ["moomoo", "binance-testnet"]
        assert len(engine.get_trades("moomoo")) == 1


class TestConnectivity:
    @pytest.mark.asyncio
    async def test_disconnected_broker_raises_and_records_nothing(self, stub_engine):
        engine, adapters = stub_engine()
        adapters["moomoo"].start_errors = 1
        await engine.start("moomoo")
        proposal = buy(proposal_id="prp_retry")

        with pytest.raises(ConnectivityError) as exc_info:
            await engine.execute_trade("moomoo", proposal)
        assert exc_info.value.broker == "moomoo"
        assert engine.get_broker_state("moomoo").portfolio.trade_count == 0

        assert await engine.reconnect("moomoo") is True
        result = await engine.execute_trade("moomoo", proposal)
        assert result.accepted is True

    @pytest.mark.asyncio
    async def test_failure_during_execution_marks_disconnected(self, stub_engine):
        engine, adapters = stub_engine()
        await engine.start("moomoo")
        adapters["moomoo"].fail_next = 1
        proposal = buy(proposal_id="prp_flaky")

        with pytest.raises(ConnectivityError):
            await engine.execute_trade("moomoo", proposal)
        assert engine.get_broker_state("moomoo").connected is False

        await engine.reconnect("moomoo")
        await engine.execute_trade("moomoo", proposal)
        await engine.execute_trade("moomoo", proposal)

        assert adapters["moomoo"].executed == ["prp_flaky"]
        assert engine.get_broker_state("moomoo").portfolio.trade_count == 1

    @pytest.mark.asyncio
    async def test_one_broker_failing_does_not_affect_others(self, stub_engine):
        engine, adapters = stub_engine()
        await engine.start("moomoo")
        await engine.start("binance-testnet")
        adapters["moomoo"].fail_next = 1

        with pytest.raises(ConnectivityError):
            await engine.execute_trade("moomoo", buy())
        result = await engine.execute_trade("binance-testnet", buy(symbol="ETHUSDT", quantity=0.1, price=300.0))

        assert result.accepted is True
        snapshot = engine.get_state()
        assert snapshot.brokers["binance-testnet"].connected is True
        assert snapshot.connected is True


class TestPDTEnforcement:
    async def _day_trade(self, engine, n):
        bought = await engine.execute_trade("alpaca", buy("AAPL", 1, 100.0, proposal_id=f"b{n}"))
        assert bought.accepted is True
        return await engine.execute_trade("alpaca", sell("AAPL", 1, 101.0, proposal_id=f"s{n}"))

    @pytest.mark.asyncio
    async def test_fourth_day_trade_blocked_then_allowed_when_disabled(self, engine, pdt_tracker):
        pdt_tracker.update_equity(20_000)
        await engine.start("alpaca")
        for n in range(3):
            result = await self._day_trade(engine, n)
            assert result.trade.day_trade is True

        blocked = await self._day_trade(engine, 3)
        assert blocked.accepted is False
        assert blocked.rejection.kind == RejectionKind.COMPLIANCE_VIOLATION
        assert engine.get_broker_state("alpaca").positions["AAPL"].quantity == 1

        pdt_tracker.disable_pdt_protection()
        allowed = await engine.execute_trade("alpaca", sell("AAPL", 1, 101.0, proposal_id="s3"))

        assert allowed.accepted is True
        assert pdt_tracker.get_pdt_status().day_trade_count == 4
        assert engine.get_broker_state("alpaca").portfolio.trade_count == 8

    @pytest.mark.asyncio
    async def test_overnight_sell_not_blocked(self, engine, pdt_tracker, clock):
        await engine.start("alpaca")
        for n in range(3):
            await self._day_trade(engine, n)
        await engine.execute_trade("alpaca", buy("AAPL", 1, 100.0, proposal_id="overnight"))
        clock.advance(days=1)

        result = await engine.execute_trade("alpaca", sell("AAPL", 1, 99.0))

        assert result.accepted is True
        assert result.trade.day_trade is False
        assert pdt_tracker.day_trade_count() == 3

    @pytest.mark.asyncio
    async def test_pdt_not_applied_to_other_brokers(self, engine, pdt_tracker):
        await engine.start("moomoo")
        for n in range(4):
            await engine.execute_trade("moomoo", buy(proposal_id=f"b{n}"))
            result = await engine.execute_trade("moomoo", sell(proposal_id=f"s{n}"))
            assert result.accepted is True
        assert pdt_tracker.day_trade_count() == 0


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_stop_during_in_flight_trade_commits_whole_fill(self, stub_engine):
        engine, adapters = stub_engine(moomoo={"fees": 0.5})
        adapter = adapters["moomoo"]
        adapter.gate = asyncio.Event()
        snapshots = []
        engine.subscribe(snapshots.append)
        await engine.start("moomoo")

        task = asyncio.create_task(engine.execute_trade("moomoo", buy()))
        await adapter.entered.wait()
        stopped = await engine.stop("moomoo")

        assert stopped.active is False
        assert stopped.portfolio.trade_count == 0
        assert stopped.portfolio.value == 300.0

        adapter.gate.set()
        result = await task

        assert result.accepted is True
        state = engine.get_broker_state("moomoo")
        assert state.active is False
        assert state.portfolio.trade_count == 1
        assert state.portfolio.value == pytest.approx(299.5)
        for snapshot in snapshots:
            portfolio = snapshot.brokers["moomoo"].portfolio
            assert portfolio.value == pytest.approx(300.0 + portfolio.profit)
            if portfolio.trade_count == 0:
                assert portfolio.value == 300.0

        later = await engine.execute_trade("moomoo", buy())
        assert later.rejection.kind == RejectionKind.BROKER_INACTIVE

    @pytest.mark.asyncio
    async def test_brokers_do_not_block_each_other(self, stub_engine):
        engine, adapters = stub_engine()
        adapters["moomoo"].gate = asyncio.Event()
        await engine.start("moomoo")
        await engine.start("binance-testnet")

        slow = asyncio.create_task(engine.execute_trade("moomoo", buy()))
        await adapters["moomoo"].entered.wait()

        fast = await asyncio.wait_for(
            engine.execute_trade("binance-testnet", buy(symbol="ETHUSDT", quantity=0.1, price=300.0)),
            timeout=1,
        )
        assert fast.accepted is True
        assert not slow.done()

        adapters["moomoo"].gate.set()
        assert (await slow).accepted is True

    @pytest.mark.asyncio
    async def test_concurrent_buys_respect_limit(self, stub_engine, validator):
        engine, _ = stub_engine()
        validator.set_user_trading_limit("moomoo", 100.0, 300.0)
        await engine.start("moomoo")

        results = await asyncio.gather(*[
            engine.execute_trade("moomoo", buy(quantity=2, price=20.0)) for _ in range(5)
        ])

        assert sum(r.accepted for r in results) == 2
        assert engine.get_broker_state("moomoo").positions["00700"].quantity == 4


class TestSnapshots:
    @pytest.mark.asyncio
    async def test_snapshots_are_immutable_copies(self, engine):
        await engine.start("moomoo")
        before = engine.get_state()

        with pytest.raises(PydanticValidationError):
            before.brokers["moomoo"].active = False
        before.brokers.pop("moomoo")

        await engine.execute_trade("moomoo", buy())
        after = engine.get_state()

        assert after.version > before.version
        assert after.brokers["moomoo"].portfolio.trade_count == 1
        assert "moomoo" not in before.brokers

    @pytest.mark.asyncio
    async def test_subscribers_receive_increasing_versions(self, engine):
        versions = []
        unsubscribe = engine.subscribe(lambda snapshot: versions.append(snapshot.version))

        def broken(snapshot):
            raise RuntimeError("listener failure")

        engine.subscribe(broken)
        await engine.start("moomoo")
        await engine.execute_trade("moomoo", buy())

        assert versions == sorted(versions)
        assert len(versions) == 2
        assert versions[-1] == engine.version

        unsubscribe()
        await engine.stop("moomoo")
        assert len(versions) == 2
