"""
Vesting instrumentation.

Prometheus metrics tracking released tokens, emergency withdrawals, category
usage and custody balance, with helper functions that are safe to call from
the release path.
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge

from . import config

tokens_released_counter = Counter(
    "vestledger_tokens_released_total",
    "Total base units released to beneficiaries",
    ["category"],
)

release_events_counter = Counter(
    "vestledger_release_events_total",
    "Release attempts by outcome",
    ["outcome"],
)

emergency_withdrawals_counter = Counter(
    "vestledger_emergency_withdrawals_total",
    "Number of emergency withdrawals executed",
)

category_allocated_gauge = Gauge(
    "vestledger_category_allocated",
    "Base units committed per allocation category",
    ["category"],
)

custody_balance_gauge = Gauge(
    "vestledger_custody_balance",
    "Token balance held by the vesting engine",
)


def record_release(category: str, amount: int) -> None:
    """Count a release; zero-amount releases only bump the outcome counter."""
    if not config.METRICS_ENABLED:
        return
    if amount > 0:
        tokens_released_counter.labels(category=category).inc(amount)
        release_events_counter.labels(outcome="released").inc()
    else:
        release_events_counter.labels(outcome="noop").inc()


def record_release_failure() -> None:
    if not config.METRICS_ENABLED:
        return
    release_events_counter.labels(outcome="failed").inc()


def record_emergency_withdrawal() -> None:
    if not config.METRICS_ENABLED:
        return
    emergency_withdrawals_counter.inc()


def update_category_allocated(category: str, allocated: int) -> None:
    if not config.METRICS_ENABLED:
        return
    category_allocated_gauge.labels(category=category).set(allocated)


def update_custody_balance(balance: int) -> None:
    if not config.METRICS_ENABLED:
        return
    custody_balance_gauge.set(balance)
