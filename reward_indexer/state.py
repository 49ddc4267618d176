"""
In-memory reward accounting.

All amounts are integers in token base units. Dicts double as insertion
ordered sets so that report ordering is deterministic for ties.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from web3 import Web3

from .errors import WeekOutOfRangeError
from .models import TransferEvent
from .units import parse_usdc
from .weeks import DEFAULT_ANCHOR_TS, week_key_for

logger = logging.getLogger(__name__)


@dataclass
class WeekBucket:
    total: int = 0
    users: Dict[str, None] = field(default_factory=dict)


@dataclass
class UserAggregate:
    all_time: int = 0
    weeks: Dict[str, int] = field(default_factory=dict)


class AggregationState:
    """Per-week and per-user reward totals"""

    def __init__(self, anchor_ts: int = DEFAULT_ANCHOR_TS, decimals: int = 6):
        self.anchor_ts = anchor_ts
        self.decimals = decimals
        self.weeks: Dict[str, WeekBucket] = {}
        self.users: Dict[str, UserAggregate] = {}
        self.event_count = 0
        self.skipped_before_anchor = 0

    def _add(self, address: str, week_key: str, value: int) -> None:
        bucket = self.weeks.setdefault(week_key, WeekBucket())
        bucket.total += value
        bucket.users[address] = None

        user = self.users.setdefault(address, UserAggregate())
        user.all_time += value
        user.weeks[week_key] = user.weeks.get(week_key, 0) + value

    def ingest(self, event: TransferEvent, week_key: Optional[str] = None) -> bool:
        """Add one transfer to its week bucket and to the recipient's totals.

        The week comes from ``week_key`` or the event's block timestamp.
        Returns False (and changes nothing) for zero-value or malformed events.
        """
        try:
            value = int(event.value)
            address = Web3.to_checksum_address(event.to_address)
            if week_key is None:
                if event.timestamp is None:
                    raise ValueError("event has no timestamp")
                week_key = week_key_for(event.timestamp, self.anchor_ts)
        except WeekOutOfRangeError as e:
            self.skipped_before_anchor += 1
            logger.warning(
                f"Skipping transfer of {event.value} base units to {event.to_address} in block "
                f"{event.block_number} permanently, the checkpoint will move past it: {e}"
            )
            return False
        except (AttributeError, TypeError, ValueError) as e:
            logger.debug(f"Ignoring malformed transfer {event!r}: {e}")
            return False

        if value <= 0:
            logger.debug(f"Ignoring zero-value transfer to {address} in block {event.block_number}")
            return False

        self._add(address, week_key, value)
        self.event_count += 1
        return True

    def seed_from_existing_report(self, report: Optional[Mapping[str, Any]]) -> int:
        """Rebuild totals from a previously written leaderboard_all_time.json.

        Returns the number of user rows restored.
        """
        # Every week key with a non-zero amount appears in some row's ``weeks``,
        # so weekly.json is not needed to rebuild the buckets.
        if not isinstance(report, Mapping):
            return 0
        rows = report.get('rows')
        if not isinstance(rows, list):
            return 0

        restored = 0
        for row in rows:
            if not isinstance(row, Mapping):
                continue
            try:
                address = Web3.to_checksum_address(row['address'])
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping all-time row with bad address {row.get('address')!r}: {e}")
                continue

            weeks = row.get('weeks') or {}
            if not isinstance(weeks, Mapping):
                continue
            for week_key, amount in weeks.items():
                try:
                    value = parse_usdc(amount, self.decimals)
                except ValueError as e:
                    logger.warning(f"Skipping {address} week {week_key}: {e}")
                    continue
                if value <= 0:
                    continue
                self._add(address, str(week_key), value)
            restored += 1

        logger.info(f"Restored {len(self.users)} users across {len(self.weeks)} weeks from existing report")
        return restored

    def week_keys(self) -> List[str]:
        return sorted(self.weeks)

    def latest_week_key(self) -> Optional[str]:
        keys = self.week_keys()
        return keys[-1] if keys else None

    def previous_week_key(self) -> Optional[str]:
        """Week key before the latest one present (not necessarily adjacent)"""
        keys = self.week_keys()
        return keys[-2] if len(keys) >= 2 else None

    def week_total(self, week_key: str) -> int:
        bucket = self.weeks.get(week_key)
        return bucket.total if bucket else 0

    def week_users(self, week_key: str) -> List[str]:
        bucket = self.weeks.get(week_key)
        return list(bucket.users) if bucket else []

    def user_week_total(self, address: str, week_key: Optional[str]) -> int:
        user = self.users.get(address)
        if user is None or week_key is None:
            return 0
        return user.weeks.get(week_key, 0)

    def user_all_time(self, address: str) -> int:
        user = self.users.get(address)
        return user.all_time if user else 0

    def all_time_total(self) -> int:
        return sum(user.all_time for user in self.users.values())

    @property
    def user_count(self) -> int:
        return len(self.users)
