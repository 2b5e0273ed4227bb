"""Result blocks printed at the end of a run."""

from collections.abc import Callable

from txload.funding import CollectionSummary
from txload.stats import Stats


def stats_lines(stats: Stats) -> list[str]:
    tps = stats.throughput if stats.finished else 0.0
    return [
        "",
        "=== Load Test Results ===",
        f"Duration: {stats.elapsed:.2f} seconds",
        f"Total Transactions: {stats.total}",
        f"Successful Transactions: {stats.succeeded}",
        f"Failed Transactions: {stats.failed}",
        f"Success Rate: {stats.success_rate:.2f}%",
        f"Average TPS: {tps:.2f}",
        "========================",
    ]


def collection_lines(summary: CollectionSummary, fmt: Callable[[int], str] = str) -> list[str]:
    final = fmt(summary.final_balance) if summary.final_balance is not None else "unavailable"
    return [
        "",
        "Fund collection summary:",
        f"- Successful collections: {summary.successful}/{summary.total}",
        f"- Total collected: {fmt(summary.collected)}",
        f"- Master wallet final balance: {final}",
    ]
