"""Error taxonomy for a load-test run.

Every condition carries an ``ErrorKind`` and belongs to exactly one of two
roots. ``RecoverableError`` is handled where it happens (logged, counted,
maybe resynced); ``FatalError`` always reaches the runner and ends the run
with a non-zero exit status. Handlers only ever catch ``RecoverableError``,
so a fatal condition cannot be absorbed by a retry or a counter.
"""

from enum import StrEnum


class ErrorKind(StrEnum):
    CONFIG_VALIDATION        = "ConfigValidation"
    INVALID_COUNT            = "InvalidCount"
    INSUFFICIENT_FUNDS       = "InsufficientFunds"
    ENDPOINT_UNREACHABLE     = "EndpointUnreachable"
    SEQUENCE_CONFLICT        = "SequenceConflict"
    TRANSFER_FAILURE         = "TransferFailure"
    COLLECTION_FAILURE       = "CollectionFailure"
    LEDGER_QUERY             = "LedgerQuery"
    NETWORK_INFO_UNAVAILABLE = "NetworkInfoUnavailable"


class LoadTestError(Exception):
    kind: ErrorKind
    fatal: bool = False

    def __init__(self, message: str = "", *, kind: ErrorKind | None = None):
        super().__init__(message)
        if kind is not None:
            self.kind = kind
        elif not hasattr(self, "kind"):
            raise TypeError(f"{type(self).__name__} needs an explicit kind")

    @property
    def message(self) -> str:
        return str(self)

    def __repr__(self) -> str:
        tag = "Fatal" if self.fatal else "Recoverable"
        return f"{tag}({self.kind}: {self.message})"


class RecoverableError(LoadTestError):
    fatal = False


class FatalError(LoadTestError):
    fatal = True


# Fatal
class ConfigValidation(FatalError):
    kind = ErrorKind.CONFIG_VALIDATION


class InvalidCount(FatalError):
    kind = ErrorKind.INVALID_COUNT


class InsufficientFunds(FatalError):
    kind = ErrorKind.INSUFFICIENT_FUNDS


class EndpointUnreachable(FatalError):
    kind = ErrorKind.ENDPOINT_UNREACHABLE


class DistributionFailed(FatalError):
    """A funding transfer failed; the remaining batches were not issued."""

    kind = ErrorKind.TRANSFER_FAILURE

    def __init__(self, message: str, *, failures: list[RecoverableError] | None = None):
        super().__init__(message)
        self.failures = failures or []


# Recoverable
class SequenceConflict(RecoverableError):
    kind = ErrorKind.SEQUENCE_CONFLICT


class TransferFailure(RecoverableError):
    kind = ErrorKind.TRANSFER_FAILURE


class CollectionFailure(RecoverableError):
    kind = ErrorKind.COLLECTION_FAILURE


class LedgerQueryError(RecoverableError):
    kind = ErrorKind.LEDGER_QUERY


class NetworkInfoUnavailable(RecoverableError):
    kind = ErrorKind.NETWORK_INFO_UNAVAILABLE


__all__ = [
    "CollectionFailure",
    "ConfigValidation",
    "DistributionFailed",
    "EndpointUnreachable",
    "ErrorKind",
    "FatalError",
    "InsufficientFunds",
    "InvalidCount",
    "LedgerQueryError",
    "LoadTestError",
    "NetworkInfoUnavailable",
    "RecoverableError",
    "SequenceConflict",
    "TransferFailure",
]
