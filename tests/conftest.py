#!/usr/bin/env python3
"""
Pytest configuration: an in-memory fake chain standing in for Base RPC nodes.
"""

from datetime import datetime, timezone

import pytest
import requests
from web3 import Web3

from reward_indexer.config import Settings
from reward_indexer.fetcher import TRANSFER_TOPIC, address_topic
from reward_indexer.rpc import RpcClientPool
from reward_indexer.weeks import WEEK_SECONDS

ANCHOR = int(datetime(2025, 7, 23, tzinfo=timezone.utc).timestamp())
WEEK_1 = "2025-07-23"
WEEK_2 = "2025-07-30"
WEEK_3 = "2025-08-06"

DISTRIBUTOR = "0x3D483c284bA397c1aB05E7f74593a79952a812ac"
USDC = "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913"

ALICE = Web3.to_checksum_address("0x" + "a1" * 20)
BOB = Web3.to_checksum_address("0x" + "b2" * 20)
CAROL = Web3.to_checksum_address("0x" + "c3" * 20)

FIXED_NOW = datetime(2025, 8, 10, 12, 0, tzinfo=timezone.utc)


def usdc(amount) -> int:
    """Whole/decimal USDC to base units for readable test data"""
    return int(round(amount * 10 ** 6))


def make_log(to_address, value, block_number, log_index=0, sender=DISTRIBUTOR):
    """A raw eth_getLogs entry in JSON-RPC (hex string) form"""
    return {
        'address': USDC,
        'topics': [TRANSFER_TOPIC, address_topic(sender), address_topic(to_address)],
        'data': '0x' + value.to_bytes(32, 'big').hex(),
        'blockNumber': block_number,
        'logIndex': log_index,
        'transactionHash': '0x' + f"{block_number:064x}",
    }


class FakeEth:
    def __init__(self, chain, url):
        self.chain = chain
        self.url = url

    @property
    def block_number(self):
        self.chain.calls.append((self.url, 'eth_blockNumber', None))
        if self.url in self.chain.down:
            raise requests.exceptions.ConnectionError(f"{self.url} is down")
        return self.chain.latest_block

    def get_block(self, block_number):
        self.chain.calls.append((self.url, 'eth_getBlockByNumber', block_number))
        if self.url in self.chain.down:
            raise requests.exceptions.ConnectionError(f"{self.url} is down")
        return {'number': block_number, 'timestamp': self.chain.timestamp_of(block_number)}

    def get_logs(self, filter_params):
        lo, hi = filter_params['fromBlock'], filter_params['toBlock']
        self.chain.calls.append((self.url, 'eth_getLogs', (lo, hi)))

        if self.url in self.chain.down:
            raise requests.exceptions.ConnectionError(f"{self.url} is down")
        if self.chain.failures:
            raise self.chain.failures.pop(0)
        if self.chain.fail_from is not None and hi >= self.chain.fail_from:
            raise ValueError(f"execution reverted while reading {lo}-{hi}")
        if self.chain.max_range is not None and hi - lo + 1 > self.chain.max_range:
            raise requests.exceptions.ReadTimeout("Read timed out. (read timeout=30)")

        sender_topic = filter_params['topics'][1]
        return [
            log for log in self.chain.logs
            if lo <= log['blockNumber'] <= hi
            and log['address'] == filter_params['address']
            and log['topics'][1] == sender_topic
        ]


class FakeWeb3:
    def __init__(self, chain, url):
        self.eth = FakeEth(chain, url)


class FakeChain:
    """Holds logs and block timestamps; serves any number of fake endpoints"""

    def __init__(self, latest_block=20000, max_range=None):
        self.latest_block = latest_block
        self.max_range = max_range
        self.logs = []
        self.timestamps = {}
        self.failures = []
        self.fail_from = None
        self.down = set()
        self.calls = []

    def add_transfer(self, to_address, value, block_number, timestamp, sender=DISTRIBUTOR):
        log_index = sum(1 for log in self.logs if log['blockNumber'] == block_number)
        self.logs.append(make_log(to_address, value, block_number, log_index, sender))
        self.logs.sort(key=lambda log: (log['blockNumber'], log['logIndex']))
        self.timestamps[block_number] = timestamp

    def timestamp_of(self, block_number):
        return self.timestamps.get(block_number, ANCHOR + block_number)

    def client(self, url):
        return FakeWeb3(self, url)

    def log_ranges(self):
        return [args for _, method, args in self.calls if method == 'eth_getLogs']


@pytest.fixture
def chain():
    return FakeChain()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def make_pool(chain, sleeps):
    def _make(urls=("https://primary.test", "https://fallback.test"), max_retries=2, fake_chain=None):
        target = fake_chain or chain
        return RpcClientPool(
            list(urls),
            max_retries=max_retries,
            base_backoff=0.4,
            client_factory=target.client,
            sleep=sleeps.append,
        )
    return _make


@pytest.fixture
def settings(tmp_path):
    return Settings(
        rpc_urls="https://primary.test,https://fallback.test",
        data_dir=str(tmp_path / "data"),
        first_reward_block=1000,
        chunk_size_blocks=500,
        min_split_range_blocks=50,
        pause_between_chunks=0,
        pause_between_block_fetch=0,
        max_retries=1,
        base_backoff=0,
    )


@pytest.fixture
def rewards_chain():
    """100 USDC to Alice in week 1, then 50 to Alice and 200 to Bob in week 2"""
    fake = FakeChain(latest_block=2000)
    fake.add_transfer(ALICE, usdc(100), 1010, ANCHOR + 100)
    fake.add_transfer(ALICE, usdc(50), 1500, ANCHOR + WEEK_SECONDS + 10)
    fake.add_transfer(BOB, usdc(200), 1600, ANCHOR + WEEK_SECONDS + 20)
    return fake
