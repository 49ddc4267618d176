"""
Configuration management for the reward indexer.

Values come from (highest precedence first) an optional YAML config file,
environment variables, a ``.env`` file and the defaults below. Environment
variables referenced as ``${VAR}`` inside the YAML file are expanded before
parsing.
"""

import os
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

import yaml
from dotenv import load_dotenv
from pydantic import ValidationError, field_validator
from pydantic_settings import BaseSettings
from web3 import Web3

from .errors import ConfigError

logger = logging.getLogger(__name__)

BASE_CHAIN_ID = 8453


class Settings(BaseSettings):
    """Indexer settings with environment-based configuration"""

    # Ordered, comma-separated; the first URL is the primary endpoint
    rpc_urls: str = "https://base-rpc.publicnode.com,https://mainnet.base.org"

    chain_name: str = "base"
    chain_id: int = BASE_CHAIN_ID

    # Token and distributor
    usdc_address: str = "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913"
    token_symbol: str = "USDC"
    token_decimals: int = 6
    reward_distributor: str = "0x3D483c284bA397c1aB05E7f74593a79952a812ac"
    first_reward_block: int = 33259888

    # Week 1 starts here; weeks are fixed 7 day windows from this instant
    week_1_start_utc: datetime = datetime(2025, 7, 23, tzinfo=timezone.utc)

    # Stability knobs for free RPCs
    chunk_size_blocks: int = 9000
    pause_between_chunks: float = 0.35
    pause_between_block_fetch: float = 0.05
    http_timeout: float = 30.0
    max_retries: int = 2
    base_backoff: float = 0.4
    min_split_range_blocks: int = 200

    # Output
    data_dir: str = "data"
    log_level: str = "INFO"

    @field_validator('rpc_urls', mode='before')
    @classmethod
    def join_rpc_urls(cls, v):
        """YAML files may list endpoints instead of a comma-separated string"""
        if isinstance(v, (list, tuple)):
            return ",".join(str(url) for url in v)
        return v

    @field_validator('usdc_address', 'reward_distributor')
    @classmethod
    def checksum_address(cls, v):
        """Reject malformed addresses and store them checksummed"""
        if not Web3.is_address(v):
            raise ValueError(f"Invalid address: {v}")
        return Web3.to_checksum_address(v)

    @field_validator('week_1_start_utc')
    @classmethod
    def force_utc(cls, v: datetime) -> datetime:
        """Naive anchors are interpreted as UTC; week keys are dates, so the anchor must be midnight"""
        if v.tzinfo is None:
            v = v.replace(tzinfo=timezone.utc)
        v = v.astimezone(timezone.utc)
        if (v.hour, v.minute, v.second, v.microsecond) != (0, 0, 0, 0):
            raise ValueError(f"week_1_start_utc must be midnight UTC, got {v.isoformat()}")
        return v

    @field_validator('chunk_size_blocks', 'min_split_range_blocks')
    @classmethod
    def positive_blocks(cls, v: int) -> int:
        if v < 1:
            raise ValueError("block ranges must be at least 1 block")
        return v

    @field_validator('max_retries')
    @classmethod
    def non_negative_retries(cls, v: int) -> int:
        if v < 0:
            raise ValueError("max_retries cannot be negative")
        return v

    def get_rpc_urls(self) -> List[str]:
        """Get RPC endpoints as an ordered list"""
        return [url.strip() for url in self.rpc_urls.split(",") if url.strip()]

    @property
    def week_anchor_ts(self) -> int:
        """Week 1 anchor as a Unix timestamp"""
        return int(self.week_1_start_utc.timestamp())

    @property
    def data_path(self) -> Path:
        return Path(self.data_dir)

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "case_sensitive": False, "extra": "ignore"}


def _load_yaml(config_path: str) -> dict:
    """Load a YAML config file, expanding environment variables first"""
    with open(config_path, 'r') as f:
        config_content = os.path.expandvars(f.read())

    try:
        data = yaml.safe_load(config_content) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Could not parse {config_path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {config_path} must contain a mapping")

    # Allow both a flat file and one nested under an 'indexer' key
    if isinstance(data.get('indexer'), dict):
        data = data['indexer']
    return data


def load_settings(config_path: Optional[str] = None, **overrides) -> Settings:
    """Build settings from .env, environment, an optional YAML file and overrides"""
    load_dotenv()

    values = {}
    if config_path:
        if not os.path.exists(config_path):
            raise ConfigError(f"Config file not found: {config_path}")
        values.update(_load_yaml(config_path))
        logger.info(f"Loaded configuration from {config_path}")
    values.update({k: v for k, v in overrides.items() if v is not None})

    try:
        settings = Settings(**values)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e

    if not settings.get_rpc_urls():
        raise ConfigError("At least one RPC URL is required (RPC_URLS)")
    if settings.first_reward_block < 0:
        raise ConfigError("first_reward_block cannot be negative")
    return settings
