"""
JSON persistence: atomic writes, tolerant reads and the scan checkpoint.

Readers (the web layer) may open these files at any time, so every write goes
to a temporary sibling first and is renamed over the target.
"""

import os
import json
import logging
from pathlib import Path
from typing import Any, Union

from pydantic import BaseModel, ValidationError

from .errors import CheckpointError
from .models import Checkpoint

logger = logging.getLogger(__name__)

STATE_FILE = "_indexer_state.json"
OVERVIEW_FILE = "overview.json"
WEEKLY_FILE = "weekly.json"
LEADERBOARD_LATEST_FILE = "leaderboard_weekly_latest.json"
LEADERBOARD_ALL_TIME_FILE = "leaderboard_all_time.json"
FARCASTER_MAP_FILE = "farcaster_map.json"

PathLike = Union[str, Path]


def write_json_atomic(path: PathLike, value: Any) -> None:
    """Write ``value`` as JSON to ``path`` via a temp file and rename"""
    path = Path(path)
    if isinstance(value, BaseModel):
        value = value.model_dump(mode='json')

    tmp_path = path.with_name(path.name + '.tmp')
    try:
        with open(tmp_path, 'w', encoding='utf-8') as f:
            json.dump(value, f, indent=2, ensure_ascii=False)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except Exception:
        if tmp_path.exists():
            tmp_path.unlink()
        raise


def read_json_or_default(path: PathLike, default: Any = None) -> Any:
    """Load JSON, falling back to ``default`` if the file is missing or unparsable"""
    path = Path(path)
    if not path.exists():
        return default
    try:
        with open(path, 'r', encoding='utf-8') as f:
            return json.load(f)
    except (OSError, ValueError) as e:
        logger.warning(f"Could not read {path}, using default: {e}")
        return default


def ensure_data_dir(data_dir: PathLike) -> Path:
    data_dir = Path(data_dir)
    data_dir.mkdir(parents=True, exist_ok=True)
    return data_dir


def ensure_farcaster_map(data_dir: PathLike) -> bool:
    """Create an empty farcaster_map.json if none exists. Returns True if created."""
    path = Path(data_dir) / FARCASTER_MAP_FILE
    if path.exists():
        return False
    write_json_atomic(path, {})
    return True


class CheckpointStore:
    """Last fully processed block, persisted in _indexer_state.json"""

    def __init__(self, path: PathLike):
        self.path = Path(path)
        self._last: Checkpoint = Checkpoint()

    def load(self) -> Checkpoint:
        raw = read_json_or_default(self.path, None)
        if raw is None:
            logger.info(f"No checkpoint at {self.path}, starting from genesis")
            self._last = Checkpoint()
            return self._last
        try:
            self._last = Checkpoint.model_validate(raw)
        except ValidationError as e:
            logger.warning(f"Ignoring invalid checkpoint in {self.path}: {e}")
            self._last = Checkpoint()
        return self._last

    @property
    def last_processed_block(self):
        return self._last.lastProcessedBlock

    def save(self, block_number: int) -> None:
        current = self._last.lastProcessedBlock
        if current is not None and block_number < current:
            raise CheckpointError(
                f"Refusing to move checkpoint backwards from {current} to {block_number}"
            )
        write_json_atomic(self.path, Checkpoint(lastProcessedBlock=block_number))
        self._last = Checkpoint(lastProcessedBlock=block_number)
