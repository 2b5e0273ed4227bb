import logging

from txload.ledger import Ledger

log = logging.getLogger("txload.sequence")


class SequenceAllocator:
    """Per-address next-sequence cache, reconciled against the ledger.

    ``allocate`` never suspends, so an allocate-then-broadcast sequence running
    on the event loop cannot interleave with another allocation for the same
    address. Only ``initialize``/``resync`` touch the ledger.
    """

    def __init__(self, ledger: Ledger):
        self.ledger = ledger
        self._next: dict[str, int] = {}

    async def initialize(self, address: str) -> int:
        seq = await self.ledger.get_sequence(address)
        prev = self._next.get(address)
        if prev is not None and seq < prev:
            log.warning("Sequence for %s moved back %s -> %s (ledger dropped pending txns)", address, prev, seq)
        self._next[address] = seq
        log.debug("initialized %s at %s", address, seq)
        return seq

    async def resync(self, address: str) -> int:
        return await self.initialize(address)

    def allocate(self, address: str) -> int:
        try:
            s = self._next[address]
        except KeyError:
            raise KeyError(f"sequence for {address} not initialized") from None
        self._next[address] = s + 1
        return s

    def allocate_range(self, address: str, n: int) -> range:
        """Hand out ``n`` consecutive sequences in one step."""
        if n < 0:
            raise ValueError("n must be >= 0")
        start = self.allocate(address)
        self._next[address] = start + n
        return range(start, start + n)

    def peek(self, address: str) -> int | None:
        return self._next.get(address)

    def snapshot(self) -> dict[str, int]:
        return dict(self._next)

    def __contains__(self, address: str) -> bool:
        return address in self._next
