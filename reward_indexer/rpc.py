"""
RPC client pool with per-endpoint retry and ordered failover.

Free Base RPCs rate limit, time out and occasionally report "no backend is
currently healthy". Those failures are retried with exponential backoff and
then handed to the next endpoint; anything else is raised straight away.
"""

import time
import logging
from typing import Any, Callable, Dict, List, Optional

import requests
from web3 import Web3
from web3.middleware import ExtraDataToPOAMiddleware

from .config import BASE_CHAIN_ID
from .errors import LatestBlockUnavailableError, RpcExhaustedError

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}

TIMEOUT_MARKERS = (
    'timed out',
    'took too long',
)

RETRYABLE_MARKERS = TIMEOUT_MARKERS + (
    'http request failed',
    'status: 429',
    'status: 503',
    '429 client error',
    '503 server error',
    'too many requests',
    'rate limit',
    'timeout',
    'no backend is currently healthy',
)


def _root_error(exc: BaseException) -> BaseException:
    """Unwrap pool exhaustion to the error that caused it"""
    while isinstance(exc, RpcExhaustedError) and exc.last_error is not None:
        exc = exc.last_error
    return exc


def is_timeout_error(exc: BaseException) -> bool:
    """True when the request timed out (as opposed to being rate limited)"""
    exc = _root_error(exc)
    if isinstance(exc, (requests.exceptions.Timeout, TimeoutError)):
        return True
    msg = str(exc).lower()
    return any(marker in msg for marker in TIMEOUT_MARKERS)


def is_retryable_rpc_error(exc: BaseException) -> bool:
    """True for transient failures worth a retry or a failover"""
    exc = _root_error(exc)
    if is_timeout_error(exc):
        return True
    if isinstance(exc, requests.exceptions.ConnectionError):
        return True
    if isinstance(exc, requests.exceptions.HTTPError):
        response = getattr(exc, 'response', None)
        if response is not None and response.status_code in RETRYABLE_STATUS_CODES:
            return True
    msg = str(exc).lower()
    return any(marker in msg for marker in RETRYABLE_MARKERS)


def make_web3_client(rpc_url: str, timeout: float, chain_id: int = BASE_CHAIN_ID) -> Web3:
    """Create a Web3 client whose HTTP requests give up after ``timeout`` seconds"""
    provider = Web3.HTTPProvider(
        rpc_url,
        request_kwargs={'timeout': timeout},
        # Retries are owned by RpcClientPool
        exception_retry_configuration=None,
    )
    w3 = Web3(provider)

    # Add PoA middleware for Base
    if chain_id in [137, BASE_CHAIN_ID]:
        w3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
    return w3


class RpcClientPool:
    """Ordered list of JSON-RPC endpoints, first one is the primary"""

    def __init__(
        self,
        rpc_urls: List[str],
        http_timeout: float = 30.0,
        max_retries: int = 2,
        base_backoff: float = 0.4,
        pause_between_block_fetch: float = 0.0,
        chain_id: int = BASE_CHAIN_ID,
        client_factory: Optional[Callable[[str], Any]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if not rpc_urls:
            raise ValueError("RpcClientPool needs at least one endpoint")
        self.rpc_urls = list(rpc_urls)
        self.max_retries = max_retries
        self.base_backoff = base_backoff
        self.pause_between_block_fetch = pause_between_block_fetch
        self._sleep = sleep
        if client_factory is None:
            client_factory = lambda url: make_web3_client(url, http_timeout, chain_id)
        self._client_factory = client_factory
        self._clients: Dict[str, Any] = {}
        self._timestamp_cache: Dict[int, int] = {}
        self.last_endpoint: Optional[str] = None

    def _client(self, rpc_url: str):
        if rpc_url not in self._clients:
            self._clients[rpc_url] = self._client_factory(rpc_url)
        return self._clients[rpc_url]

    def _call_with_failover(self, method: str, call: Callable[[Any], Any], detail: str = ""):
        """Run ``call(client)`` with retries on each endpoint in order"""
        last_error: Optional[BaseException] = None
        attempts = self.max_retries + 1

        for rpc_url in self.rpc_urls:
            for attempt in range(attempts):
                try:
                    result = call(self._client(rpc_url))
                    self.last_endpoint = rpc_url
                    return result
                except Exception as e:
                    last_error = e
                    if not is_retryable_rpc_error(e):
                        raise

                    backoff = self.base_backoff * (2 ** attempt)
                    logger.warning(
                        f"RPC error on {rpc_url} for {method} {detail} "
                        f"(attempt {attempt + 1}/{attempts}): {e}. Backing off {backoff:.2f}s..."
                    )
                    self._sleep(backoff)

            if len(self.rpc_urls) > 1:
                logger.warning(f"RPC {rpc_url} is failing for {method} {detail}. Switching...")

        raise RpcExhaustedError(method, last_error, detail)

    def fetch_logs(self, from_block: int, to_block: int, address: str, topics: List[Any]) -> List[Any]:
        """eth_getLogs over an inclusive block range"""
        filter_params = {
            'fromBlock': from_block,
            'toBlock': to_block,
            'address': address,
            'topics': topics,
        }
        return self._call_with_failover(
            'eth_getLogs',
            lambda w3: w3.eth.get_logs(filter_params),
            f"{from_block}-{to_block}",
        )

    def fetch_block_timestamp(self, block_number: int) -> int:
        """Timestamp of a block, cached for the lifetime of the pool"""
        block_number = int(block_number)
        if block_number in self._timestamp_cache:
            return self._timestamp_cache[block_number]

        block = self._call_with_failover(
            'eth_getBlockByNumber',
            lambda w3: w3.eth.get_block(block_number),
            str(block_number),
        )
        timestamp = int(block['timestamp'])
        self._timestamp_cache[block_number] = timestamp
        if self.pause_between_block_fetch:
            self._sleep(self.pause_between_block_fetch)
        return timestamp

    def fetch_latest_block(self) -> int:
        """Latest block number from the first endpoint that answers"""
        for rpc_url in self.rpc_urls:
            try:
                latest = int(self._client(rpc_url).eth.block_number)
                self.last_endpoint = rpc_url
                return latest
            except Exception as e:
                logger.warning(f"Failed to read latest block from {rpc_url}: {e}. Trying next...")
        raise LatestBlockUnavailableError("Could not read latest block from any RPC")

    @property
    def cached_timestamps(self) -> int:
        return len(self._timestamp_cache)
