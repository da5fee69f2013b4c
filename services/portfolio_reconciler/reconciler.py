from typing import Callable, Dict, List, Optional

from core.logging import get_error_logger_safe, get_trading_logger_safe
from services.trading_engine.engine import BrokerTradingEngine
from services.trading_engine.models import BrokerRuntimeState, EngineSnapshot
from .models import Correction, PortfolioProjection, ReconciledBroker

ProjectionListener = Callable[[PortfolioProjection], None]


class PortfolioStateReconciler:
    """
    Converges engine snapshots into the projection dashboards read.

    Known inconsistency healed here: a broker with no trades must report
    zero profit. A live broker's day change is loaded on start, so a fresh
    session can show P&L before it has traded; the projection forces that
    profit to 0 and records the correction.

    Projections are cached by engine version, so reconciling an unchanged
    engine returns the identical projection. The override is applied to
    every projection (flagged by `profit_corrected`), but a correction is
    reported, logged and listed in `corrections` only when a broker's
    observed value changes; mutations of other brokers do not re-report it.
    Reconciliation has no suspension points, which keeps concurrent callers
    from interleaving.
    """

    def __init__(self, engine: BrokerTradingEngine, subscribe: bool = True):
        self.engine = engine
        self._projection: Optional[PortfolioProjection] = None
        self._listeners: List[ProjectionListener] = []
        self._unsubscribe: Optional[Callable[[], None]] = None
        # broker id -> observed profit already reported as corrected
        self._reported: Dict[str, float] = {}
        self.logger = get_trading_logger_safe("portfolio_reconciler")
        self.error_logger = get_error_logger_safe("portfolio_reconciler_errors")
        if subscribe:
            self.attach()

    def attach(self) -> None:
        """Reconcile on every engine mutation instead of on demand only."""
        if self._unsubscribe is None:
            self._unsubscribe = self.engine.subscribe(self._on_snapshot)

    def detach(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    async def sync_portfolio_with_ai(self) -> PortfolioProjection:
        """Read the engine state and publish a corrected projection."""
        return self.reconcile(self.engine.get_state())

    def latest(self) -> PortfolioProjection:
        if self._projection is None:
            return self.reconcile(self.engine.get_state())
        return self._projection

    def reconcile(self, snapshot: EngineSnapshot) -> PortfolioProjection:
        current = self._projection
        if current is not None and snapshot.version <= current.version:
            return current

        corrections: List[Correction] = []
        brokers = {}
        for broker_id, state in snapshot.brokers.items():
            reconciled, correction = self._reconcile_broker(state)
            brokers[broker_id] = reconciled
            if correction is not None:
                corrections.append(correction)

        projection = PortfolioProjection(
            version=snapshot.version,
            synced_at=snapshot.taken_at,
            connected=snapshot.connected,
            brokers=brokers,
            corrections=corrections,
        )
        self._projection = projection
        self._publish(projection)
        return projection

    def _reconcile_broker(self, state: BrokerRuntimeState):
        portfolio = state.portfolio
        profit = portfolio.profit
        correction = None
        corrected = portfolio.trade_count == 0 and profit != 0

        if not corrected:
            self._reported.pop(state.broker_id, None)
        elif self._reported.get(state.broker_id) != profit:
            self._reported[state.broker_id] = profit
            correction = Correction(
                broker_id=state.broker_id,
                field="profit",
                observed=profit,
                corrected=0.0,
                reason="No trades executed but profit was non-zero",
            )
            self.logger.warning("DATA INCONSISTENCY: profit reported with zero trades - forcing to 0",
                                broker=state.broker_id, observed_profit=profit,
                                trade_count=portfolio.trade_count)

        if corrected:
            profit = 0.0

        reconciled = ReconciledBroker(
            broker_id=state.broker_id,
            display_name=state.display_name,
            currency=state.currency,
            mode=state.mode,
            active=state.active,
            connected=state.connected,
            value=portfolio.value,
            trade_count=portfolio.trade_count,
            profit=profit,
            profit_corrected=corrected,
            effective_limit=state.effective_limit,
            started_at=state.started_at,
        )
        return reconciled, correction

    # Change notification
    def subscribe(self, listener: ProjectionListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _on_snapshot(self, snapshot: EngineSnapshot) -> None:
        self.reconcile(snapshot)

    def _publish(self, projection: PortfolioProjection) -> None:
        for listener in list(self._listeners):
            try:
                listener(projection)
            except Exception as e:
                self.error_logger.error("Error in projection listener", error=str(e),
                                        version=projection.version)
