from .adapter_factory import BrokerAdapterFactory
from .live_adapter import LiveBrokerAdapter
from .paper_adapter import PaperBrokerAdapter

__all__ = ["BrokerAdapterFactory", "LiveBrokerAdapter", "PaperBrokerAdapter"]
