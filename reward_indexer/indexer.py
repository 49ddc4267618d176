#!/usr/bin/env python3
"""
Base USDC reward indexer.

Scans USDC Transfer events sent by the reward distributor, aggregates them
into weekly and all-time leaderboards and writes the JSON files the web app
reads. Runs are incremental: the scan resumes after the last checkpointed
block and previously published totals are loaded back before new events are
added.
"""

import sys
import time
import logging
import argparse
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional

from rich.console import Console
from rich.table import Table

from .config import Settings, load_settings
from .errors import HistoryMissingError, IndexerError, NoRewardsError, RangeFetchError
from .fetcher import ChunkedLogFetcher
from .reports import build_all_time_leaderboard, build_reports, utc_stamp
from .rpc import RpcClientPool
from .state import AggregationState
from .storage import (
    LEADERBOARD_ALL_TIME_FILE,
    LEADERBOARD_LATEST_FILE,
    OVERVIEW_FILE,
    STATE_FILE,
    WEEKLY_FILE,
    CheckpointStore,
    ensure_data_dir,
    ensure_farcaster_map,
    read_json_or_default,
    write_json_atomic,
)

logger = logging.getLogger(__name__)


@dataclass
class RunSummary:
    start_block: int
    latest_block: int
    chunks: int = 0
    logs: int = 0
    events_counted: int = 0
    splits: int = 0
    skipped_before_anchor: int = 0
    last_processed_block: Optional[int] = None
    nothing_new: bool = False
    reports_written: bool = False
    total_usdc: str = "0"
    unique_users: int = 0
    weeks: int = 0
    files: List[str] = field(default_factory=list)


class RewardIndexer:
    """Incremental, resumable scan of distributor USDC transfers"""

    def __init__(
        self,
        settings: Settings,
        pool: Optional[RpcClientPool] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.settings = settings
        self._sleep = sleep
        self._clock = clock
        self.pool = pool or RpcClientPool(
            settings.get_rpc_urls(),
            http_timeout=settings.http_timeout,
            max_retries=settings.max_retries,
            base_backoff=settings.base_backoff,
            pause_between_block_fetch=settings.pause_between_block_fetch,
            chain_id=settings.chain_id,
            sleep=sleep,
        )
        self.fetcher = ChunkedLogFetcher(
            self.pool,
            token_address=settings.usdc_address,
            distributor=settings.reward_distributor,
            chunk_size_blocks=settings.chunk_size_blocks,
            min_split_range_blocks=settings.min_split_range_blocks,
        )
        self.data_dir = settings.data_path
        self.checkpoint = CheckpointStore(self.data_dir / STATE_FILE)
        self.state = AggregationState(anchor_ts=settings.week_anchor_ts, decimals=settings.token_decimals)
        self._history_on_disk = False

    def _now(self) -> Optional[datetime]:
        return self._clock() if self._clock else None

    def _load(self) -> Optional[int]:
        """Seed state from the last all-time leaderboard and work out where to resume"""
        checkpoint = self.checkpoint.load()
        leaderboard_path = self.data_dir / LEADERBOARD_ALL_TIME_FILE
        existing = read_json_or_default(leaderboard_path, None)
        readable = isinstance(existing, dict) and isinstance(existing.get('rows'), list)

        resume = checkpoint.lastProcessedBlock
        if resume is not None and not readable:
            # Resuming without the published totals would overwrite them with the new blocks only
            raise HistoryMissingError(leaderboard_path, resume)

        self.state.seed_from_existing_report(existing)
        self._history_on_disk = readable
        report_block = existing.get('last_processed_block') if isinstance(existing, dict) else None
        if isinstance(report_block, int) and (resume is None or report_block > resume):
            # The leaderboard is written before the checkpoint, so it can be ahead
            logger.info(f"All-time leaderboard already covers block {report_block}, checkpoint was {resume}")
            resume = report_block
        return resume

    def _persist_progress(self, to_block: int) -> None:
        leaderboard = build_all_time_leaderboard(self.state, utc_stamp(self._now()), to_block)
        write_json_atomic(self.data_dir / LEADERBOARD_ALL_TIME_FILE, leaderboard)
        self._history_on_disk = True

    def _scan(self, start_block: int, latest_block: int, summary: RunSummary) -> None:
        chunks = list(self.fetcher.iter_chunks(start_block, latest_block))
        total_blocks = latest_block - start_block + 1

        for index, (from_block, to_block) in enumerate(chunks):
            remaining = latest_block - to_block
            logger.info(f"[{to_block}, -{remaining}] Fetching logs: blocks {from_block} -> {to_block}")

            try:
                events = self.fetcher.fetch_transfers(from_block, to_block)
            except RangeFetchError:
                raise
            except Exception as e:
                raise RangeFetchError(from_block, to_block, e) from e

            counted = sum(1 for event in events if self.state.ingest(event))
            # A checkpoint is never written without a leaderboard next to it
            if counted or not self._history_on_disk:
                self._persist_progress(to_block)
            self.checkpoint.save(to_block)

            summary.chunks += 1
            summary.logs += len(events)
            summary.events_counted += counted
            summary.last_processed_block = to_block

            done = to_block - start_block + 1
            logger.info(
                f"[{to_block}, -{remaining}] Got {len(events)} transfers, counted {counted} "
                f"(RPC used: {self.pool.last_endpoint}) - {done:,}/{total_blocks:,} blocks "
                f"({done / total_blocks * 100:.1f}%)"
            )

            if index < len(chunks) - 1 and self.settings.pause_between_chunks:
                self._sleep(self.settings.pause_between_chunks)

    def _write_reports(self, summary: RunSummary) -> None:
        bundle = build_reports(
            self.state,
            self.settings,
            now=self._now(),
            last_processed_block=summary.last_processed_block,
        )
        outputs = [
            (OVERVIEW_FILE, bundle.overview),
            (WEEKLY_FILE, bundle.weekly),
            (LEADERBOARD_LATEST_FILE, bundle.leaderboard_latest_week),
            (LEADERBOARD_ALL_TIME_FILE, bundle.leaderboard_all_time),
        ]
        for name, document in outputs:
            write_json_atomic(self.data_dir / name, document)
            summary.files.append(str(self.data_dir / name))

        summary.reports_written = True
        summary.total_usdc = bundle.overview.all_time.total_usdc
        summary.unique_users = bundle.overview.all_time.unique_users
        summary.weeks = len(bundle.weekly.week_keys)

    def run(self) -> RunSummary:
        """One full or incremental pass. Raises IndexerError on fatal failures."""
        ensure_data_dir(self.data_dir)
        if ensure_farcaster_map(self.data_dir):
            logger.info("Created empty farcaster_map.json")

        resume = self._load()
        latest_block = self.pool.fetch_latest_block()
        start_block = resume + 1 if resume is not None else self.settings.first_reward_block

        logger.info("--- Base reward indexer ---")
        logger.info(f"Start block: {start_block}")
        logger.info(f"Latest block: {latest_block}")

        summary = RunSummary(start_block=start_block, latest_block=latest_block, last_processed_block=resume)

        if start_block > latest_block:
            logger.info("Nothing new to index. Rewriting outputs from existing data only...")
            summary.nothing_new = True
        else:
            self._scan(start_block, latest_block, summary)
            summary.splits = self.fetcher.splits
            summary.skipped_before_anchor = self.state.skipped_before_anchor
            if summary.skipped_before_anchor:
                logger.warning(
                    f"{summary.skipped_before_anchor} transfers before the week 1 start were skipped "
                    f"and will not be rescanned"
                )

        try:
            self._write_reports(summary)
        except NoRewardsError as e:
            logger.warning(str(e))
        return summary


def print_summary(summary: RunSummary, console: Optional[Console] = None) -> None:
    """Render a run summary table on stdout"""
    console = console or Console()
    table = Table(title="Reward indexer run", title_style="bold cyan")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")

    table.add_row("Start block", f"{summary.start_block:,}")
    table.add_row("Latest block", f"{summary.latest_block:,}")
    last = summary.last_processed_block
    table.add_row("Last processed block", f"{last:,}" if last is not None else "-")
    table.add_row("Chunks scanned", str(summary.chunks))
    table.add_row("Range splits", str(summary.splits))
    table.add_row("Transfers counted", str(summary.events_counted))
    if summary.skipped_before_anchor:
        table.add_row("Skipped before week 1", str(summary.skipped_before_anchor))
    table.add_row("Weeks", str(summary.weeks))
    table.add_row("Unique users", str(summary.unique_users))
    table.add_row("All-time USDC", summary.total_usdc)
    console.print(table)

    if summary.files:
        console.print("Done. Wrote:")
        for path in summary.files:
            console.print(f"- {path}")
    elif not summary.reports_written:
        console.print("[yellow]No reports written[/yellow]")


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point"""
    parser = argparse.ArgumentParser(description='Base USDC reward leaderboard indexer')
    parser.add_argument('--config', '-c',
                        help='Optional YAML config file (environment variables are expanded)',
                        default=None)
    parser.add_argument('--log-level',
                        help='Override the configured log level',
                        dest='log_level', default=None)
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        stream=sys.stdout,
    )

    try:
        settings = load_settings(args.config, log_level=args.log_level)
        level = getattr(logging, str(settings.log_level).upper(), logging.INFO)
        logging.getLogger().setLevel(level)

        summary = RewardIndexer(settings).run()
    except RangeFetchError as e:
        logger.error(f"RPC getLogs failed for range {e.from_block} -> {e.to_block}")
        logger.error(f"Error: {e.cause}")
        logger.error("Re-run later to resume.")
        return 1
    except IndexerError as e:
        logger.error(f"Fatal error: {e}")
        return 1
    except KeyboardInterrupt:
        logger.info("Indexer stopped by user")
        return 1

    print_summary(summary)
    return 0


if __name__ == "__main__":
    sys.exit(main())
