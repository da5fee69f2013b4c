"""
Per-request correlation context.

The request middleware stores the correlation id and a few request fields in
context variables; the logging pipeline stamps them on every event emitted
while the request is being served, including events from the engine and the
deposit ledger.
"""

import uuid
import contextvars
from typing import Optional, Dict, Any

_correlation_id: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    'correlation_id', default=None
)
_request_context: contextvars.ContextVar[Dict[str, Any]] = contextvars.ContextVar(
    'request_context', default={}
)


class CorrelationIdManager:
    """Read and write the correlation context of the current task"""

    @staticmethod
    def generate_correlation_id() -> str:
        return f"corr_{uuid.uuid4().hex}"

    @staticmethod
    def set_correlation_id(correlation_id: str) -> str:
        _correlation_id.set(correlation_id)
        return correlation_id

    @staticmethod
    def get_correlation_id() -> Optional[str]:
        return _correlation_id.get()

    @staticmethod
    def set_correlation_context(**fields) -> Dict[str, Any]:
        """Merge request fields (request_id, method, path) into the current context."""
        context = {**_request_context.get(), **fields}
        _request_context.set(context)
        return context

    @staticmethod
    def get_correlation_context() -> Dict[str, Any]:
        return dict(_request_context.get())
