"""
Standardized service logger initialization for Neural Core services.
Provides consistent logging patterns across all service components.
"""

from typing import Optional

from .enhanced_logging import (
    bind_broker_context,
    get_trading_logger,
    get_error_logger,
    get_audit_logger,
)


class ServiceLogger:
    """Standardized logger collection for services"""

    def __init__(self, service_name: str, component: Optional[str] = None):
        """
        Initialize service logger collection.

        Args:
            service_name: Name of the service (e.g., 'trading_engine', 'deposit_ledger')
            component: Optional component within service (e.g., 'adapters')
        """
        self.service_name = service_name
        self.component = component

        base_name = f"{service_name}_{component}" if component else service_name

        service_context = {
            "service": service_name,
            "component": component
        }

        self.main = get_trading_logger(base_name).bind(**service_context)
        self.error = get_error_logger(f"{base_name}_errors").bind(**service_context)
        self.audit = get_audit_logger(f"{base_name}_audit").bind(**service_context)


    def bind_broker_context(self, broker: str):
        """Main logger with broker fields bound."""
        return bind_broker_context(self.main, broker)
