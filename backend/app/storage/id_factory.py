from __future__ import annotations

import secrets
import time
import uuid


RUN_PREFIX = "run_"
ATTEMPT_PREFIX = "att_"
TIMESTAMP_WIDTH = 12


def new_run_id(now_ms: int | None = None) -> str:
    """Time-ordered run id: hex millisecond timestamp followed by random hex."""
    timestamp = int(time.time() * 1000) if now_ms is None else now_ms
    return f"{RUN_PREFIX}{timestamp:0{TIMESTAMP_WIDTH}x}{secrets.token_hex(6)}"


def new_attempt_id() -> str:
    return f"{ATTEMPT_PREFIX}{uuid.uuid4().hex}"

