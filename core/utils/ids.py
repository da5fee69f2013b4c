"""
Centralized ID generation.

IDs carry a short type prefix and a time-ordered hex component so log lines
and API payloads sort naturally by creation time.
"""

from __future__ import annotations

import time
from uuid import uuid4


def _time_prefixed_uuid() -> str:
    """Timestamp (ms) hex prefix + uuid4 suffix."""
    ts_ms = int(time.time() * 1000)
    return f"{ts_ms:013x}{uuid4().hex[:12]}"


def generate_trade_id() -> str:
    return f"trd_{_time_prefixed_uuid()}"


def generate_deposit_id() -> str:
    return f"dep_{_time_prefixed_uuid()}"


def generate_transaction_id() -> str:
    return f"txn_{_time_prefixed_uuid()}"


def generate_proposal_id() -> str:
    return f"prp_{_time_prefixed_uuid()}"
