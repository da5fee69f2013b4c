"""
Log channels for Neural Core.

Each channel gets its own rotating file; components are routed to a channel
by name so the engine, ledger and API can be followed separately.
"""

from enum import Enum
from typing import Dict
from pathlib import Path
from dataclasses import dataclass


class LogChannel(str, Enum):
    APPLICATION = "application"
    TRADING = "trading"      # engine, PDT, limits, reconciliation, autonomous loop
    DATABASE = "database"    # deposit ledger persistence
    API = "api"
    AUDIT = "audit"          # accepted trades, settled deposits, limit changes
    ERROR = "error"


@dataclass(frozen=True)
class ChannelConfig:
    filename: str
    level: str = "INFO"
    backup_count: int = 5

    def get_file_path(self, logs_dir: str) -> Path:
        return Path(logs_dir) / self.filename


CHANNEL_CONFIGS: Dict[LogChannel, ChannelConfig] = {
    LogChannel.APPLICATION: ChannelConfig("application.log", backup_count=10),
    LogChannel.TRADING: ChannelConfig("trading.log", backup_count=20),
    LogChannel.DATABASE: ChannelConfig("database.log", level="WARNING"),
    LogChannel.API: ChannelConfig("api.log", backup_count=10),
    LogChannel.AUDIT: ChannelConfig("audit.log", backup_count=50),
    LogChannel.ERROR: ChannelConfig("error.log", level="ERROR", backup_count=20),
}

_COMPONENT_CHANNELS: Dict[LogChannel, tuple] = {
    LogChannel.TRADING: (
        "trading_engine",
        "pdt_compliance",
        "trading_limits",
        "portfolio_reconciler",
        "autonomous_trading",
        "broker_adapter",
    ),
    LogChannel.DATABASE: ("database", "deposit_ledger"),
    LogChannel.API: ("api",),
    LogChannel.AUDIT: ("audit",),
    LogChannel.ERROR: ("error",),
}

COMPONENT_CHANNELS: Dict[str, LogChannel] = {
    component: channel
    for channel, components in _COMPONENT_CHANNELS.items()
    for component in components
}


def get_channel_for_component(component: str) -> LogChannel:
    """Channel for a component; unknown components go to APPLICATION."""
    return COMPONENT_CHANNELS.get(component, LogChannel.APPLICATION)


def get_channel_config(channel: LogChannel) -> ChannelConfig:
    return CHANNEL_CONFIGS[channel]


def create_log_directory_structure(logs_dir: str) -> None:
    Path(logs_dir).mkdir(parents=True, exist_ok=True)
