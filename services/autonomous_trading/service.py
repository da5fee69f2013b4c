import asyncio
from typing import Dict, Optional

from core.config.settings import AutonomousTradingSettings
from core.logging import ServiceLogger
from core.utils.exceptions import ConnectivityError, create_error_context, get_retry_delay
from core.utils.ids import generate_proposal_id
from services.broker_registry.models import BrokerConfig, PositionSizing
from services.broker_registry.registry import BrokerRegistry
from services.portfolio_reconciler.models import PortfolioProjection
from services.portfolio_reconciler.reconciler import PortfolioStateReconciler
from services.trading_engine.engine import BrokerTradingEngine
from services.trading_engine.models import BrokerRuntimeState, TradeProposal, TradeSide
from .models import AIDecision, DecisionOutcome, DecisionResult


class AutonomousTradingService:
    """
    Routes AI trade decisions to the broker engine.

    Decisions are either executed directly (`submit_decision`) or queued
    per broker and drained by one worker task each, so every broker has a
    single writer. Connectivity failures are retried with exponential
    backoff under the same proposal id, which the engine executes at most
    once.
    """

    def __init__(self, registry: BrokerRegistry, engine: BrokerTradingEngine,
                 reconciler: PortfolioStateReconciler, settings: AutonomousTradingSettings):
        self.registry = registry
        self.engine = engine
        self.reconciler = reconciler
        self.settings = settings

        self._queues: Dict[str, asyncio.Queue] = {}
        self._workers: Dict[str, asyncio.Task] = {}
        self._running = False

        service_logger = ServiceLogger("autonomous_trading")
        self.logger = service_logger.main
        self.error_logger = service_logger.error

    # Worker lifecycle
    async def start(self) -> None:
        if self._running:
            return
        for broker_id in self.registry.ids():
            queue = asyncio.Queue(maxsize=self.settings.decision_queue_maxsize)
            self._queues[broker_id] = queue
            self._workers[broker_id] = asyncio.create_task(self._decision_worker(broker_id, queue))
        self._running = True
        self.logger.info("Autonomous trading workers started", brokers=list(self._workers))

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        for task in self._workers.values():
            task.cancel()
        for task in self._workers.values():
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._workers = {}
        self._queues = {}
        self.logger.info("Autonomous trading workers stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    def enqueue_decision(self, decision: AIDecision) -> bool:
        """Hand a decision to its broker's worker. Returns False when it cannot be queued."""
        self.registry.get(decision.broker_id)
        queue = self._queues.get(decision.broker_id)
        if queue is None:
            self.logger.warning("Decision dropped - workers not running", broker=decision.broker_id,
                                symbol=decision.symbol)
            return False
        try:
            queue.put_nowait(decision)
        except asyncio.QueueFull:
            self.logger.warning("Decision queue full - decision dropped", broker=decision.broker_id,
                                symbol=decision.symbol, maxsize=queue.maxsize)
            return False
        return True

    async def drain(self) -> None:
        """Wait until every queued decision has been processed."""
        for queue in list(self._queues.values()):
            await queue.join()

    async def _decision_worker(self, broker_id: str, queue: asyncio.Queue) -> None:
        self.logger.info("Decision worker started", broker=broker_id)
        while True:
            try:
                decision = await queue.get()
                try:
                    await self.submit_decision(decision)
                finally:
                    queue.task_done()
            except asyncio.CancelledError:
                self.logger.info("Decision worker stopping", broker=broker_id)
                raise
            except Exception as e:
                self.error_logger.error("Unhandled exception in decision worker",
                                        **create_error_context(e, "decision_worker", {"broker": broker_id}))

    # Decision routing
    async def submit_decision(self, decision: AIDecision) -> DecisionResult:
        config = self.registry.get(decision.broker_id)
        side = decision.recommendation.side

        if side is None:
            return self._skipped(decision, "Hold recommendation")
        if decision.confidence < config.confidence_threshold:
            return self._skipped(
                decision,
                f"Confidence {decision.confidence:.1f}% below {config.display_name} "
                f"threshold of {config.confidence_threshold:.1f}%",
            )

        state = self.engine.get_broker_state(decision.broker_id)
        if not state.active:
            return self._skipped(decision, f"{config.display_name} trading is not active")

        quantity = self._position_quantity(config, state, decision, side)
        if quantity <= 0:
            return self._skipped(decision, f"No {decision.symbol} position to sell")

        proposal = TradeProposal(
            proposal_id=f"prp_{decision.decision_id}" if decision.decision_id else generate_proposal_id(),
            symbol=decision.symbol,
            side=side,
            quantity=quantity,
            price=decision.price,
            reasoning=decision.reasoning,
            confidence=decision.confidence,
        )
        return await self.route_proposal(decision.broker_id, proposal)

    async def route_proposal(self, broker_id: str, proposal: TradeProposal) -> DecisionResult:
        """Execute a proposal, retrying connectivity failures with backoff."""
        attempt = 0
        while True:
            attempt += 1
            try:
                result = await self.engine.execute_trade(broker_id, proposal)
                break
            except ConnectivityError as e:
                e.retry_count = attempt - 1
                e.max_retries = self.settings.max_connectivity_retries
                if attempt > self.settings.max_connectivity_retries:
                    self.error_logger.error("Proposal failed - broker unreachable",
                                            **create_error_context(e, "route_proposal",
                                                                   {"proposal_id": proposal.proposal_id}))
                    return DecisionResult(broker_id=broker_id, symbol=proposal.symbol,
                                          outcome=DecisionOutcome.FAILED,
                                          proposal_id=proposal.proposal_id,
                                          reason=e.message, attempts=attempt)
                delay = get_retry_delay(e, self.settings.retry_base_delay_seconds)
                self.logger.warning("Broker unreachable - retrying proposal", broker=broker_id,
                                    proposal_id=proposal.proposal_id, attempt=attempt, delay=delay)
                await asyncio.sleep(delay)
                await self.engine.reconnect(broker_id)

        if result.accepted:
            return DecisionResult(broker_id=broker_id, symbol=proposal.symbol,
                                  outcome=DecisionOutcome.EXECUTED, proposal_id=proposal.proposal_id,
                                  attempts=attempt, result=result)
        return DecisionResult(broker_id=broker_id, symbol=proposal.symbol,
                              outcome=DecisionOutcome.REJECTED, proposal_id=proposal.proposal_id,
                              reason=result.rejection.reason, attempts=attempt, result=result)

    def _position_quantity(self, config: BrokerConfig, state: BrokerRuntimeState,
                           decision: AIDecision, side: TradeSide) -> float:
        if side == TradeSide.SELL:
            held = state.positions.get(decision.symbol)
            if held is None:
                return 0.0
            if decision.position_size is not None:
                return min(decision.position_size, held.quantity)
            return held.quantity

        if decision.position_size is not None:
            return decision.position_size
        if config.position_sizing == PositionSizing.FIXED:
            return config.default_position_size

        budget = state.portfolio.value * config.default_position_size / 100
        if config.position_sizing == PositionSizing.VOLATILITY_ADJUSTED:
            # Scale the allocation by conviction
            budget *= decision.confidence / 100
        return round(budget / decision.price, 6)

    def _skipped(self, decision: AIDecision, reason: str) -> DecisionResult:
        self.logger.debug("Decision skipped", broker=decision.broker_id, symbol=decision.symbol,
                          recommendation=decision.recommendation.value, reason=reason)
        return DecisionResult(broker_id=decision.broker_id, symbol=decision.symbol,
                              outcome=DecisionOutcome.SKIPPED, reason=reason)

    # Engine delegation
    async def start_broker(self, broker_id: str) -> PortfolioProjection:
        await self.engine.start(broker_id)
        return await self.reconciler.sync_portfolio_with_ai()

    async def stop_broker(self, broker_id: str) -> PortfolioProjection:
        await self.engine.stop(broker_id)
        return await self.reconciler.sync_portfolio_with_ai()

    async def reset_all(self, broker_id: Optional[str] = None) -> PortfolioProjection:
        """Zero portfolio state for one broker, or every broker when none is given."""
        await self.engine.reset(broker_id)
        return await self.reconciler.sync_portfolio_with_ai()

    async def get_state(self) -> PortfolioProjection:
        return await self.reconciler.sync_portfolio_with_ai()

    async def refresh(self) -> PortfolioProjection:
        await self.engine.refresh_connectivity()
        return await self.reconciler.sync_portfolio_with_ai()
