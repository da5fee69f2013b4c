import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from core.logging import ServiceLogger
from core.utils.exceptions import ComplianceViolation, ConnectivityError, ValidationError
from core.utils.ids import generate_trade_id
from services.broker_registry.models import BrokerConfig
from services.broker_registry.registry import BrokerRegistry
from services.pdt_compliance.tracker import PDTComplianceTracker
from services.trading_limits.rules import DEFAULT_TRADE_RULES, TradeRule
from services.trading_limits.validator import TradingLimitValidator
from .adapters.adapter_factory import BrokerAdapterFactory
from .models import (
    BrokerRuntimeState,
    EngineSnapshot,
    Fill,
    PortfolioState,
    Position,
    Rejection,
    RejectionKind,
    Trade,
    TradeProposal,
    TradeResult,
    TradeSide,
)

SnapshotListener = Callable[[EngineSnapshot], None]

# Quantities below this are treated as a closed position
_QTY_EPSILON = 1e-9


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class _OpenPosition:
    quantity: float = 0.0
    average_price: float = 0.0


@dataclass
class _BrokerBook:
    """Mutable per-broker state. Only touched inside the engine."""
    value: float
    active: bool = False
    connected: bool = False
    trade_count: int = 0
    profit: float = 0.0
    started_at: Optional[datetime] = None
    positions: Dict[str, _OpenPosition] = field(default_factory=dict)
    trades: List[Trade] = field(default_factory=list)
    accepted: Dict[str, TradeResult] = field(default_factory=dict)

    @classmethod
    def fresh(cls, config: BrokerConfig) -> "_BrokerBook":
        return cls(value=config.initial_balance)

    def exposure(self) -> float:
        return sum(p.quantity * p.average_price for p in self.positions.values())


class BrokerTradingEngine:
    """
    Executes trades for every active broker and owns their runtime state.

    Each broker has its own lock, so brokers never block one another while
    trades for the same broker are serialized. A proposal is checked in
    full (rules, trading limit, PDT) before anything is written; an
    accepted fill is then committed in one synchronous step so portfolio
    value, profit and trade count always move together. Every committed
    mutation bumps the engine version and is published to listeners as an
    immutable EngineSnapshot.
    """

    def __init__(self, registry: BrokerRegistry, validator: TradingLimitValidator,
                 pdt_tracker: PDTComplianceTracker, adapter_factory: BrokerAdapterFactory,
                 rules: Sequence[TradeRule] = DEFAULT_TRADE_RULES,
                 clock: Optional[Callable[[], datetime]] = None):
        self.registry = registry
        self.validator = validator
        self.pdt_tracker = pdt_tracker
        self.adapter_factory = adapter_factory
        self.rules = list(rules)
        self._clock = clock or _utcnow

        self._books: Dict[str, _BrokerBook] = {c.id: _BrokerBook.fresh(c) for c in registry.active()}
        self._locks: Dict[str, asyncio.Lock] = {broker_id: asyncio.Lock() for broker_id in self._books}
        self._listeners: List[SnapshotListener] = []
        self._version = 0

        self.adapter_factory.initialize(registry.active())

        self.service_logger = ServiceLogger("trading_engine")
        self.logger = self.service_logger.main
        self.audit_logger = self.service_logger.audit
        self.error_logger = self.service_logger.error

    # Lookup helpers
    def _resolve(self, broker_id: str) -> Tuple[BrokerConfig, _BrokerBook]:
        config = self.registry.get(broker_id)
        book = self._books.get(broker_id)
        if book is None:
            raise ValidationError(f"Broker '{broker_id}' is not active in this deployment",
                                  field="broker_id", value=broker_id,
                                  reason=f"{config.display_name} is not an active broker")
        return config, book

    @property
    def version(self) -> int:
        return self._version

    # Lifecycle
    async def start(self, broker_id: str) -> BrokerRuntimeState:
        """Begin trading on a broker. Starting an active broker is a no-op."""
        config, book = self._resolve(broker_id)
        log = self.service_logger.bind_broker_context(broker_id)

        async with self._locks[broker_id]:
            if book.active:
                log.debug("Broker already active")
                return self._broker_state(config, book)

            adapter = self.adapter_factory.get_adapter(broker_id)
            portfolio = None
            try:
                await adapter.start()
                book.connected = True
                if adapter.syncs_portfolio:
                    portfolio = await adapter.get_portfolio()
            except ConnectivityError as e:
                book.connected = False
                log.warning("Broker unreachable on start - trading active but disconnected",
                            error=e.message)

            book.active = True
            book.started_at = self._clock()
            if portfolio is not None:
                # The broker is authoritative for value and day change
                book.value = portfolio.value
                book.profit = portfolio.day_change
                if config.pdt_applicable:
                    self.pdt_tracker.update_equity(portfolio.value)
            self._commit_version()

        self.audit_logger.info("Broker trading started", broker=broker_id,
                               mode=config.mode.value, connected=book.connected)
        return self._broker_state(config, book)

    async def stop(self, broker_id: str) -> BrokerRuntimeState:
        """Stop trading on a broker.

        Does not wait on an in-flight trade: a fill already under way is
        still committed whole, later proposals are rejected as inactive.
        """
        config, book = self._resolve(broker_id)
        if book.active:
            book.active = False
            book.started_at = None
            self._commit_version()
            self.audit_logger.info("Broker trading stopped", broker=broker_id)
        return self._broker_state(config, book)

    async def reset(self, broker_id: Optional[str] = None) -> EngineSnapshot:
        """Stop and zero one broker, or all of them."""
        broker_ids = [broker_id] if broker_id is not None else list(self._books)
        for bid in broker_ids:
            config, _ = self._resolve(bid)
            async with self._locks[bid]:
                connected = self._books[bid].connected
                self._books[bid] = _BrokerBook.fresh(config)
                self._books[bid].connected = connected
                self._commit_version()
        self.audit_logger.warning("Portfolio state reset", brokers=broker_ids)
        return self.get_state()

    async def _probe(self, broker_id: str, book: _BrokerBook) -> bool:
        """Check a connected broker, or try to (re)open the session of a disconnected one."""
        adapter = self.adapter_factory.get_adapter(broker_id)
        if book.connected:
            return await adapter.check_connection()
        try:
            await adapter.start()
            return True
        except ConnectivityError as e:
            self.service_logger.bind_broker_context(broker_id).debug("Broker still unreachable", error=e.message)
            return False

    async def reconnect(self, broker_id: str) -> bool:
        """Re-probe one broker. Returns its connected flag."""
        _, book = self._resolve(broker_id)
        async with self._locks[broker_id]:
            connected = await self._probe(broker_id, book)
            if connected != book.connected:
                book.connected = connected
                self._commit_version()
            return connected

    async def refresh_connectivity(self) -> EngineSnapshot:
        """Probe every active broker and re-sync remote account values."""
        for broker_id, book in self._books.items():
            if not book.active:
                continue
            config = self.registry.get(broker_id)
            adapter = self.adapter_factory.get_adapter(broker_id)
            async with self._locks[broker_id]:
                connected = await self._probe(broker_id, book)
                portfolio = None
                if connected and adapter.syncs_portfolio:
                    try:
                        portfolio = await adapter.get_portfolio()
                    except ConnectivityError:
                        connected = False
                changed = connected != book.connected
                book.connected = connected
                if portfolio is not None:
                    changed = changed or (book.value, book.profit) != (portfolio.value, portfolio.day_change)
                    book.value = portfolio.value
                    book.profit = portfolio.day_change
                    if config.pdt_applicable:
                        self.pdt_tracker.update_equity(portfolio.value)
                if changed:
                    self._commit_version()
        return self.get_state()

    async def shutdown(self) -> None:
        for book in self._books.values():
            book.active = False
        await self.adapter_factory.shutdown()

    # Execution
    async def execute_trade(self, broker_id: str, proposal: TradeProposal) -> TradeResult:
        """
        Validate and execute one proposal.

        Returns a TradeResult that is either an accepted Trade or a
        Rejection; no state changes on rejection. Raises NotFound for an
        unknown broker and ConnectivityError when the broker cannot be
        reached (nothing is recorded, the same proposal may be retried).
        """
        config, book = self._resolve(broker_id)
        log = self.service_logger.bind_broker_context(broker_id)

        async with self._locks[broker_id]:
            previous = book.accepted.get(proposal.proposal_id)
            if previous is not None:
                log.info("Duplicate proposal - returning recorded result",
                         proposal_id=proposal.proposal_id)
                return previous.model_copy(update={"duplicate": True})

            if not book.active:
                return self._reject(config, proposal, RejectionKind.BROKER_INACTIVE,
                                    f"{config.display_name} trading is not active")

            rule_state = {"positions": {s: p.quantity for s, p in book.positions.items()}}
            for rule in self.rules:
                passed, reason = rule.check(proposal, config, rule_state)
                if not passed:
                    return self._reject(config, proposal, RejectionKind.RULE_VIOLATION, reason)

            if proposal.side == TradeSide.BUY:
                limit = self.validator.effective_limit(broker_id, book.value)
                exposure = book.exposure() + proposal.notional
                if exposure > limit + _QTY_EPSILON:
                    return self._reject(
                        config, proposal, RejectionKind.LIMIT_EXCEEDED,
                        f"Trade would bring {config.display_name} exposure to {config.currency} "
                        f"{exposure:.2f}, above the trading limit of {config.currency} {limit:.2f}",
                    )

            now = self._clock()
            if config.pdt_applicable and self.pdt_tracker.is_day_trade(proposal.symbol, proposal.side.value, now):
                try:
                    self.pdt_tracker.ensure_day_trade_allowed()
                except ComplianceViolation as e:
                    return self._reject(config, proposal, RejectionKind.COMPLIANCE_VIOLATION, e.message)

            if not book.connected:
                raise ConnectivityError(f"{config.display_name} is not connected", broker=broker_id)

            adapter = self.adapter_factory.get_adapter(broker_id)
            try:
                fill = await adapter.execute_trade(proposal)
            except ConnectivityError:
                book.connected = False
                self._commit_version()
                raise
            except ValidationError as e:
                return self._reject(config, proposal, RejectionKind.BROKER_REJECTED, e.message)

            trade = self._apply_fill(config, book, proposal, fill)
            result = TradeResult(accepted=True, trade=trade)
            book.accepted[proposal.proposal_id] = result
            self._commit_version()

        log.info("Trade executed", trade_id=trade.id, symbol=trade.symbol, side=trade.side.value,
                 quantity=trade.quantity, price=trade.price, fees=trade.fees, profit=trade.profit,
                 day_trade=trade.day_trade)
        return result

    def _apply_fill(self, config: BrokerConfig, book: _BrokerBook, proposal: TradeProposal,
                    fill: Fill) -> Trade:
        """Write an accepted fill. Must not await: the whole update is one step."""
        now = self._clock()
        trade_id = generate_trade_id()
        realized: Optional[float] = None
        day_trade = False

        if proposal.side == TradeSide.BUY:
            position = book.positions.setdefault(proposal.symbol, _OpenPosition())
            total_cost = position.quantity * position.average_price + fill.quantity * fill.fill_price
            position.quantity += fill.quantity
            position.average_price = total_cost / position.quantity
            delta = -fill.fees
            if config.pdt_applicable:
                self.pdt_tracker.record_open(proposal.symbol, trade_id, now)
        else:
            position = book.positions[proposal.symbol]
            realized = (fill.fill_price - position.average_price) * fill.quantity - fill.fees
            position.quantity -= fill.quantity
            if position.quantity <= _QTY_EPSILON:
                del book.positions[proposal.symbol]
            delta = realized
            # A reset between check and fill can remove the open lot
            if config.pdt_applicable and self.pdt_tracker.is_day_trade(proposal.symbol, "sell", now):
                self.pdt_tracker.record_day_trade(proposal.symbol, trade_id, now)
                day_trade = True

        trade = Trade(
            id=trade_id,
            proposal_id=proposal.proposal_id,
            broker_id=config.id,
            order_id=fill.order_id,
            timestamp=now,
            symbol=proposal.symbol,
            side=proposal.side,
            quantity=fill.quantity,
            price=fill.fill_price,
            fees=fill.fees,
            profit=realized,
            day_trade=day_trade,
            reasoning=proposal.reasoning,
        )
        book.value += delta
        book.profit += delta
        book.trade_count += 1
        book.trades.append(trade)
        return trade

    def _reject(self, config: BrokerConfig, proposal: TradeProposal, kind: RejectionKind,
                reason: str) -> TradeResult:
        self.logger.warning("Trade rejected", broker=config.id, proposal_id=proposal.proposal_id,
                            symbol=proposal.symbol, side=proposal.side.value, kind=kind.value,
                            reason=reason)
        return TradeResult(
            accepted=False,
            rejection=Rejection(proposal_id=proposal.proposal_id, broker_id=config.id,
                                kind=kind, reason=reason),
        )

    # Snapshots
    def subscribe(self, listener: SnapshotListener) -> Callable[[], None]:
        """Register a listener called with every new snapshot. Returns an unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            self.unsubscribe(listener)

        return unsubscribe

    def unsubscribe(self, listener: SnapshotListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _commit_version(self) -> None:
        self._version += 1
        if not self._listeners:
            return
        snapshot = self.get_state()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception as e:
                self.error_logger.error("Error in engine snapshot listener", error=str(e),
                                        version=snapshot.version)

    def _broker_state(self, config: BrokerConfig, book: _BrokerBook) -> BrokerRuntimeState:
        return BrokerRuntimeState(
            broker_id=config.id,
            display_name=config.display_name,
            currency=config.currency,
            mode=config.mode,
            active=book.active,
            connected=book.connected,
            portfolio=PortfolioState(value=book.value, trade_count=book.trade_count, profit=book.profit),
            effective_limit=self.validator.effective_limit(config.id, book.value),
            started_at=book.started_at,
            positions={
                symbol: Position(symbol=symbol, quantity=p.quantity, average_price=p.average_price)
                for symbol, p in book.positions.items()
            },
        )

    def get_state(self) -> EngineSnapshot:
        return EngineSnapshot(
            version=self._version,
            taken_at=self._clock(),
            brokers={
                broker_id: self._broker_state(self.registry.get(broker_id), book)
                for broker_id, book in self._books.items()
            },
        )

    def get_broker_state(self, broker_id: str) -> BrokerRuntimeState:
        config, book = self._resolve(broker_id)
        return self._broker_state(config, book)

    def get_trades(self, broker_id: Optional[str] = None) -> List[Trade]:
        if broker_id is not None:
            _, book = self._resolve(broker_id)
            return list(book.trades)
        trades = [t for book in self._books.values() for t in book.trades]
        return sorted(trades, key=lambda t: t.timestamp)
