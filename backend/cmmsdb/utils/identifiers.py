from __future__ import annotations

import os
import time
import uuid
from datetime import datetime
from typing import Optional


def generate_uuid7(now: Optional[datetime] = None) -> str:
    """
    Generate a time-ordered UUIDv7 string.

    Job and history ids sort by creation time, which gives the queue a stable
    secondary ordering after `scheduled_at`. Passing `now` lets records
    created under an injected clock sort by that clock.
    """
    ts = now.timestamp() if now is not None else time.time()
    ts_ms = int(ts * 1000)
    raw = bytearray(ts_ms.to_bytes(6, "big", signed=False) + os.urandom(10))
    raw[6] = (raw[6] & 0x0F) | 0x70
    raw[8] = (raw[8] & 0x3F) | 0x80
    return str(uuid.UUID(bytes=bytes(raw)))


def generate_wo_number(prefix: str, now: datetime, suffix: Optional[str] = None) -> str:
    """Human-readable work order number, e.g. ``PM-20240202-1a2b3c``."""
    tail = suffix or uuid.uuid4().hex[:6]
    return f"{prefix}-{now.strftime('%Y%m%d')}-{tail}"
