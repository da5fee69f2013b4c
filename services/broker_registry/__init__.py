"""
Broker registry: static broker configuration and user limit overrides.
"""

from .models import BrokerConfig, BrokerMode, PositionSizing
from .registry import BrokerRegistry, default_broker_configs

__all__ = [
    "BrokerConfig",
    "BrokerMode",
    "PositionSizing",
    "BrokerRegistry",
    "default_broker_configs",
]
