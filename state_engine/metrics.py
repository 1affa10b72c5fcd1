"""
Prometheus metrics: applied transitions (organic vs forced) and rejected transition requests.
"""
from prometheus_client import Counter, generate_latest

state_transitions_total = Counter(
    "state_transitions_total",
    "Total lifecycle transitions committed",
    ["entity_type", "forced"],
)
state_transitions_rejected_total = Counter(
    "state_transitions_rejected_total",
    "Total transition requests rejected (not allowed or lost a concurrent write)",
    ["entity_type", "error"],
)
idempotent_replays_total = Counter(
    "idempotent_replays_total",
    "Total transition requests answered from an existing Idempotency-Key",
)


def get_metrics_content_type():
    return "text/plain; charset=utf-8; version=0.0.4"


def get_metrics_bytes():
    return generate_latest()
