import logging
from collections.abc import Iterator

from txload.errors import InvalidCount
from txload.ledger import Account, Ledger

log = logging.getLogger("txload.accounts")


class AccountPool:
    """The funding account plus the generated worker accounts.

    Worker order is fixed at creation and is what stagger offsets and batch
    positions are computed from.
    """

    def __init__(self, ledger: Ledger, funding: Account):
        self.ledger = ledger
        self.funding = funding
        self._workers: list[Account] = []

    @classmethod
    def from_secret(cls, ledger: Ledger, secret: str) -> "AccountPool":
        return cls(ledger, ledger.account_from_secret(secret))

    def create_accounts(self, n: int) -> list[Account]:
        if n <= 0:
            raise InvalidCount(f"account count must be > 0, got {n}")
        log.info("Creating %s wallets...", n)

        seen = {self.funding.address, *(w.address for w in self._workers)}
        created: list[Account] = []
        for _ in range(n):
            acct = self.ledger.new_account()
            if acct.address in seen:
                raise RuntimeError(f"key generator returned duplicate address {acct.address}")
            seen.add(acct.address)
            created.append(acct)

        self._workers.extend(created)
        log.info("Created %s wallets", len(self._workers))
        return created

    @property
    def workers(self) -> tuple[Account, ...]:
        return tuple(self._workers)

    def addresses(self) -> list[str]:
        return [w.address for w in self._workers]

    def __len__(self) -> int:
        return len(self._workers)

    def __iter__(self) -> Iterator[Account]:
        return iter(tuple(self._workers))
