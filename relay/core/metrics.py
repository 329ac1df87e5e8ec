# relay/core/metrics.py
from __future__ import annotations

from prometheus_client import Counter, Histogram

TURNS = Counter("relay_turns_total", "Chat turns by outcome", ["outcome"])
TURN_SECONDS = Histogram(
    "relay_turn_seconds",
    "Wall-clock time from turn start to transcript persisted",
    buckets=(0.25, 0.5, 1, 2, 5, 10, 20, 40, 80, 160),
)
TOKENS = Counter("relay_tokens_total", "Estimated tokens by kind", ["kind"])
RATE_LIMITED = Counter("relay_rate_limited_total", "Chat requests rejected by the rate limiter")
STORE_ERRORS = Counter("relay_store_errors_total", "Conversation store failures", ["op"])
