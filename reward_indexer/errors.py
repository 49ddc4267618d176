"""
Exception types raised by the reward indexer.
"""

from typing import Optional


class IndexerError(Exception):
    """Base class for unrecoverable indexer failures"""


class ConfigError(IndexerError):
    """Settings could not be loaded or validated"""


class RpcExhaustedError(IndexerError):
    """Every endpoint and every retry failed for a single RPC call"""

    def __init__(self, method: str, last_error: Optional[BaseException], detail: str = ""):
        self.method = method
        self.last_error = last_error
        self.detail = detail
        message = f"All RPC endpoints failed for {method}"
        if detail:
            message += f" ({detail})"
        if last_error is not None:
            message += f": {last_error}"
        super().__init__(message)


class RangeFetchError(IndexerError):
    """Logs for a block range could not be fetched, even after splitting"""

    def __init__(self, from_block: int, to_block: int, cause: BaseException):
        self.from_block = from_block
        self.to_block = to_block
        self.cause = cause
        super().__init__(f"RPC getLogs failed for range {from_block}-{to_block}: {cause}")


class LatestBlockUnavailableError(IndexerError):
    """No endpoint could report the latest block number"""


class CheckpointError(IndexerError):
    """Checkpoint would move backwards"""


class HistoryMissingError(IndexerError):
    """A checkpoint exists but the all-time leaderboard it depends on cannot be read"""

    def __init__(self, path, checkpoint_block: int):
        self.path = path
        self.checkpoint_block = checkpoint_block
        super().__init__(
            f"{path} is missing or unreadable but the checkpoint is at block {checkpoint_block}; "
            f"restore the file or delete the checkpoint to rebuild from scratch"
        )


class NoRewardsError(IndexerError):
    """There are no distributor transfers to report on"""


class WeekOutOfRangeError(IndexerError, ValueError):
    """Timestamp or week key lies before the week 1 anchor"""
