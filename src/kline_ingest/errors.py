"""Exception hierarchy for the kline backfill pipeline."""


class BackfillError(Exception):
    """Base class for all backfill errors."""


class UnalignedTimeframeError(BackfillError, ValueError):
    """A timestamp does not fall on a candle interval boundary."""

    def __init__(self, timestamp: int, interval_ms: int):
        self.timestamp = timestamp
        self.interval_ms = interval_ms
        super().__init__(
            f"Timestamp {timestamp} is not aligned to a {interval_ms}ms interval boundary"
        )


class IncorrectArgumentOrderError(BackfillError, ValueError):
    """The start of a range lies after its end."""

    def __init__(self, start: int, end: int):
        self.start = start
        self.end = end
        super().__init__(f"Range start {start} is after range end {end}")


class ApiConnectorError(BackfillError):
    """Remote extent could not be determined; retry on a later run."""


class UnspecifiedError(BackfillError):
    """Catch-all for unexpected failures while planning a fetch."""


class StorageError(BackfillError):
    """Base class for persistence failures."""


class CannotCreateTransactionError(StorageError):
    """A connection or transaction could not be obtained from the pool."""


class TransactionError(StorageError):
    """A statement or commit failed in the middle of a batch."""
