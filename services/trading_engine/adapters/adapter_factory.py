from typing import Callable, Dict, Iterable

from core.config.settings import Settings
from core.logging import get_logger
from core.utils.exceptions import ConfigurationError, NotFound
from services.broker_registry.models import BrokerConfig
from ..interfaces.broker_adapter import BrokerAdapter
from .live_adapter import LiveBrokerAdapter
from .paper_adapter import PaperBrokerAdapter

logger = get_logger(__name__)

AdapterBuilder = Callable[[BrokerConfig], BrokerAdapter]


class BrokerAdapterFactory:
    """Creates and owns one adapter per active broker."""

    def __init__(self, settings: Settings):
        self._settings = settings
        self._adapters: Dict[str, BrokerAdapter] = {}
        self._builders: Dict[str, AdapterBuilder] = {"alpaca": self._build_alpaca}

    def register(self, broker_id: str, builder: AdapterBuilder) -> None:
        """Override how the adapter for one broker is built."""
        self._builders[broker_id] = builder

    def initialize(self, configs: Iterable[BrokerConfig]) -> None:
        for config in configs:
            if config.id not in self._adapters:
                self._adapters[config.id] = self.create(config)
                logger.info("Broker adapter created", broker=config.id,
                            mode=self._adapters[config.id].get_execution_mode())

    def create(self, config: BrokerConfig) -> BrokerAdapter:
        builder = self._builders.get(config.id)
        if builder is not None:
            return builder(config)
        if config.is_live:
            raise ConfigurationError(
                f"No live adapter available for broker '{config.id}'",
                config_field="active_brokers",
                config_value=config.id,
            )
        return PaperBrokerAdapter(config, self._settings.paper_trading)

    def _build_alpaca(self, config: BrokerConfig) -> BrokerAdapter:
        alpaca = self._settings.alpaca
        if alpaca.api_key and alpaca.api_secret:
            return LiveBrokerAdapter(config, alpaca.base_url, alpaca.api_key,
                                     alpaca.api_secret, timeout=alpaca.timeout_seconds)
        if config.is_live:
            raise ConfigurationError(
                "Alpaca live trading requires ALPACA__API_KEY and ALPACA__API_SECRET",
                config_field="alpaca.api_key",
                config_value="",
            )
        # Without credentials the paper account is simulated locally
        return PaperBrokerAdapter(config, self._settings.paper_trading)

    def get_adapter(self, broker_id: str) -> BrokerAdapter:
        adapter = self._adapters.get(broker_id)
        if adapter is None:
            raise NotFound(f"No adapter registered for broker: {broker_id}",
                           resource="broker", resource_id=broker_id)
        return adapter

    async def shutdown(self) -> None:
        for broker_id, adapter in self._adapters.items():
            try:
                await adapter.stop()
            except Exception as e:
                logger.error("Error stopping broker adapter", broker=broker_id, error=str(e))
