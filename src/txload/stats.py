import time
from dataclasses import asdict, dataclass, replace

from txload.constants import TxStatus


@dataclass(frozen=True, slots=True)
class TransactionRecord:
    tx_hash: str
    target: str
    amount: int
    sequence: int
    status: TxStatus
    block: int | None = None

    def __str__(self):
        return f"{self.tx_hash} -> {self.target} seq={self.sequence} {self.status}"


@dataclass(slots=True)
class Stats:
    total: int = 0
    broadcast: int = 0
    succeeded: int = 0
    failed: int = 0
    start_time: float | None = None
    end_time: float | None = None

    @property
    def finished(self) -> bool:
        return self.end_time is not None

    @property
    def elapsed(self) -> float:
        if self.start_time is None:
            return 0.0
        end = self.end_time if self.end_time is not None else time.time()
        return max(0.0, end - self.start_time)

    @property
    def throughput(self) -> float:
        """Confirmed transfers per second over the finished run."""
        if self.end_time is None:
            raise RuntimeError("throughput is only defined once the run has finished")
        elapsed = self.elapsed
        return self.succeeded / elapsed if elapsed > 0 else 0.0

    @property
    def success_rate(self) -> float:
        return self.succeeded / self.total * 100 if self.total else 0.0

    def as_dict(self) -> dict:
        d = asdict(self)
        d["elapsed"] = self.elapsed
        d["success_rate"] = self.success_rate
        d["throughput"] = self.throughput if self.finished else None
        return d


class StatsAggregator:
    """Counters for one dispatch run.

    Every mutator runs synchronously between two suspension points of the event
    loop, so concurrent account loops can share one aggregator without a lock.
    """

    def __init__(self) -> None:
        self._stats = Stats()

    def reset(self, now: float | None = None) -> None:
        self._stats = Stats(start_time=time.time() if now is None else now)

    def record_broadcast(self) -> None:
        self._stats.total += 1
        self._stats.broadcast += 1

    def record(self, rec: TransactionRecord) -> None:
        self.record_result(rec.status)

    def record_result(self, status: TxStatus) -> None:
        if status is TxStatus.CONFIRMED:
            self._stats.succeeded += 1
        else:
            self._stats.failed += 1

    def record_failure(self, *, broadcast: bool = False) -> None:
        """A send that never produced a terminal receipt."""
        if not broadcast:
            self._stats.total += 1
        self._stats.failed += 1

    def finish(self, now: float | None = None) -> Stats:
        self._stats.end_time = time.time() if now is None else now
        return self.snapshot()

    def snapshot(self) -> Stats:
        return replace(self._stats)
