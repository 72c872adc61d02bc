"""
shared/utils/metrics.py
Prometheus counters for the listing/credit state machine.
Exposed at /metrics by main.py.
"""

from prometheus_client import Counter

LISTING_TRANSITIONS = Counter(
    "saman_listing_transitions_total",
    "Listing lifecycle transitions",
    ["action"],
)

CREDIT_OPERATIONS = Counter(
    "saman_credit_operations_total",
    "Credit ledger mutations",
    ["operation", "category"],
)

TRANSACTIONS_FINALIZED = Counter(
    "saman_transactions_finalized_total",
    "Credit purchases reaching a terminal status",
    ["status", "method"],
)

SWEEP_RUNS = Counter(
    "saman_expiration_sweep_items_total",
    "Rows touched by the expiration sweep",
    ["kind"],
)
