# Lifecycle protocol for long-running services
from typing import Protocol


class LifespanService(Protocol):
    """Protocol for services started with the application and stopped on shutdown"""

    async def start(self) -> None:
        """Start the service"""
        ...

    async def stop(self) -> None:
        """Stop the service and release its tasks"""
        ...
