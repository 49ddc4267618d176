"""
Chunked Transfer log fetching with adaptive range splitting.
"""

import logging
from typing import Any, Iterator, List, Optional, Tuple

from web3 import Web3

from .errors import RangeFetchError
from .models import TransferEvent
from .rpc import RpcClientPool, is_timeout_error

logger = logging.getLogger(__name__)

# ERC20 Transfer event signature: Transfer(address,address,uint256)
TRANSFER_TOPIC = Web3.to_hex(Web3.keccak(text="Transfer(address,address,uint256)"))


def address_topic(address: str) -> str:
    """Left-pad an address to a 32 byte topic"""
    return '0x' + address[2:].lower().zfill(64)


def _topic_hex(topic: Any) -> str:
    if isinstance(topic, (bytes, bytearray)):
        return '0x' + bytes(topic).hex()
    return str(topic).lower()


def _topic_to_address(topic: Any) -> str:
    return Web3.to_checksum_address('0x' + _topic_hex(topic)[-40:])


def _data_to_int(data: Any) -> int:
    if isinstance(data, (bytes, bytearray)):
        return int.from_bytes(bytes(data), 'big')
    text = str(data)
    if text in ('', '0x'):
        raise ValueError("empty log data")
    return int(text, 16)


def _to_int(value: Any) -> int:
    if isinstance(value, str):
        return int(value, 16) if value.startswith('0x') else int(value)
    return int(value)


def parse_transfer_log(log: Any, distributor: str) -> Optional[TransferEvent]:
    """Validate a raw eth_getLogs entry into a TransferEvent.

    Returns None for anything that is not a Transfer sent by ``distributor``.
    """
    try:
        topics = log['topics']
        if len(topics) < 3 or _topic_hex(topics[0]) != TRANSFER_TOPIC:
            return None

        from_address = _topic_to_address(topics[1])
        if from_address != Web3.to_checksum_address(distributor):
            return None

        tx_hash = log.get('transactionHash')
        log_index = log.get('logIndex')
        return TransferEvent(
            from_address=from_address,
            to_address=_topic_to_address(topics[2]),
            value=_data_to_int(log['data']),
            block_number=_to_int(log['blockNumber']),
            log_index=_to_int(log_index) if log_index is not None else None,
            transaction_hash=_topic_hex(tx_hash) if tx_hash is not None else None,
        )
    except Exception as e:
        logger.debug(f"Ignoring malformed Transfer log {log!r}: {e}")
        return None


class ChunkedLogFetcher:
    """Fetches distributor Transfer logs, splitting ranges that time out"""

    def __init__(
        self,
        pool: RpcClientPool,
        token_address: str,
        distributor: str,
        chunk_size_blocks: int = 9000,
        min_split_range_blocks: int = 200,
    ):
        self.pool = pool
        self.token_address = Web3.to_checksum_address(token_address)
        self.distributor = Web3.to_checksum_address(distributor)
        self.chunk_size_blocks = chunk_size_blocks
        self.min_split_range_blocks = min_split_range_blocks
        self.topics = [TRANSFER_TOPIC, address_topic(self.distributor)]
        self.splits = 0

    def iter_chunks(self, start_block: int, latest_block: int) -> Iterator[Tuple[int, int]]:
        """Inclusive (from, to) chunks covering start_block..latest_block"""
        from_block = start_block
        while from_block <= latest_block:
            to_block = min(from_block + self.chunk_size_blocks - 1, latest_block)
            yield from_block, to_block
            from_block = to_block + 1

    def fetch_logs_for_range(self, from_block: int, to_block: int) -> List[Any]:
        """All matching logs in [from_block, to_block], in block order.

        A timeout on a range wider than ``min_split_range_blocks`` splits it in
        half; both halves go back on the work stack, left half first.
        """
        logs: List[Any] = []
        stack = [(from_block, to_block)]

        while stack:
            lo, hi = stack.pop()
            try:
                logs.extend(self.pool.fetch_logs(lo, hi, self.token_address, self.topics))
                continue
            except Exception as e:
                span = hi - lo
                if not is_timeout_error(e) or span <= self.min_split_range_blocks:
                    raise RangeFetchError(lo, hi, e) from e

                mid = lo + span // 2
                logger.warning(
                    f"Timeout on range {lo}->{hi}. Splitting into {lo}->{mid} and {mid + 1}->{hi}"
                )
                self.splits += 1
                stack.append((mid + 1, hi))
                stack.append((lo, mid))

        return logs

    def fetch_transfers(self, from_block: int, to_block: int) -> List[TransferEvent]:
        """Parsed transfers for a range with block timestamps filled in"""
        events = []
        for log in self.fetch_logs_for_range(from_block, to_block):
            event = parse_transfer_log(log, self.distributor)
            if event is None:
                continue
            timestamp = self.pool.fetch_block_timestamp(event.block_number)
            events.append(event.model_copy(update={'timestamp': timestamp}))
        return events
