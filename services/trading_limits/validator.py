import math
from typing import List, Optional

from core.logging import get_trading_logger_safe
from core.utils.exceptions import LimitExceeded, ValidationError
from services.broker_registry.registry import BrokerRegistry
from .models import BrokerLimitSummary, LimitValidationResult

logger = get_trading_logger_safe("trading_limit_validator")


class TradingLimitValidator:
    """
    Validates and manages per-broker user trading limits.

    A user limit is valid iff ``0 < limit <= broker max`` and
    ``limit <= actual balance``. The registry override map is only written
    after validation passes, so the stored limit never exceeds either bound
    at the time it was set.
    """

    def __init__(self, registry: BrokerRegistry):
        self.registry = registry

    def validate_user_trading_limit(self, broker_id: str, proposed_limit: float,
                                    actual_balance: float) -> LimitValidationResult:
        config = self.registry.get(broker_id)

        if not (math.isfinite(proposed_limit) and math.isfinite(actual_balance)):
            return LimitValidationResult(
                valid=False,
                reason="Trading limit and account balance must be finite numbers",
                error_kind="ValidationError",
                broker_max=config.max_portfolio_value,
            )

        if proposed_limit <= 0:
            return LimitValidationResult(
                valid=False,
                reason="Trading limit must be greater than $0",
                error_kind="ValidationError",
                broker_max=config.max_portfolio_value,
            )

        if config.max_portfolio_value is not None and proposed_limit > config.max_portfolio_value:
            return LimitValidationResult(
                valid=False,
                reason=(
                    f"Trading limit ({proposed_limit:.2f}) exceeds {config.display_name} "
                    f"maximum of {config.max_portfolio_value:.2f}"
                ),
                error_kind="LimitExceeded",
                broker_max=config.max_portfolio_value,
            )

        if proposed_limit > actual_balance:
            return LimitValidationResult(
                valid=False,
                reason=(
                    f"Trading limit ({proposed_limit:.2f}) exceeds actual account balance "
                    f"({actual_balance:.2f})"
                ),
                error_kind="LimitExceeded",
                broker_max=config.max_portfolio_value,
            )

        return LimitValidationResult(valid=True, broker_max=config.max_portfolio_value)

    def set_user_trading_limit(self, broker_id: str, limit: float, actual_balance: float) -> float:
        """Validate then store a user limit. Returns the resulting effective limit."""
        result = self.validate_user_trading_limit(broker_id, limit, actual_balance)
        if not result.valid:
            logger.warning("Trading limit rejected", broker=broker_id, limit=limit,
                           actual_balance=actual_balance, reason=result.reason)
            if result.error_kind == "LimitExceeded":
                raise LimitExceeded(result.reason, limit=result.broker_max, attempted=limit,
                                    reason=result.reason)
            raise ValidationError(result.reason, field="limit", value=limit, reason=result.reason)

        self.registry.set_user_limit(broker_id, limit)
        return self.effective_limit(broker_id, actual_balance)

    def get_user_trading_limit(self, broker_id: str) -> Optional[float]:
        return self.registry.get_user_limit(broker_id)

    def clear_user_trading_limit(self, broker_id: str) -> None:
        """Revert to using the full account balance."""
        self.registry.clear_user_limit(broker_id)

    def effective_limit(self, broker_id: str, actual_balance: float) -> float:
        """min(user limit or balance, broker max), never above the actual balance."""
        config = self.registry.get(broker_id)
        user_limit = self.registry.get_user_limit(broker_id)
        base = actual_balance if user_limit is None else min(user_limit, actual_balance)
        return max(0.0, config.cap(base))

    def limit_summary(self) -> List[BrokerLimitSummary]:
        summaries = []
        for config in self.registry.active():
            user_limit = self.registry.get_user_limit(config.id)
            summaries.append(BrokerLimitSummary(
                broker_id=config.id,
                display_name=config.display_name,
                currency=config.currency,
                user_defined_limit=user_limit,
                broker_max_limit=config.max_portfolio_value,
                has_user_limit=user_limit is not None,
            ))
        return summaries
