#!/usr/bin/env python3
"""
End-to-end tests for the indexer run against a fake chain
"""

import json

import pytest

from reward_indexer import indexer as indexer_module
from reward_indexer.errors import HistoryMissingError, LatestBlockUnavailableError, RangeFetchError
from reward_indexer.indexer import RewardIndexer, RunSummary, main, print_summary
from reward_indexer.rpc import RpcClientPool
from reward_indexer.weeks import WEEK_SECONDS

from conftest import ALICE, ANCHOR, BOB, CAROL, FIXED_NOW, WEEK_1, WEEK_2, WEEK_3, FakeChain, usdc


def make_indexer(settings, chain, sleeps=None):
    pool = RpcClientPool(
        settings.get_rpc_urls(),
        max_retries=settings.max_retries,
        base_backoff=settings.base_backoff,
        client_factory=chain.client,
        sleep=lambda s: None,
    )
    return RewardIndexer(
        settings,
        pool=pool,
        sleep=(sleeps.append if sleeps is not None else (lambda s: None)),
        clock=lambda: FIXED_NOW,
    )


def read(settings, name):
    with open(settings.data_path / name) as f:
        return json.load(f)


class TestFullRun:

    @pytest.fixture(autouse=True)
    def setup(self, settings, rewards_chain):
        self.settings = settings
        self.chain = rewards_chain
        self.sleeps = []
        self.summary = make_indexer(settings, rewards_chain, self.sleeps).run()

    def test_summary(self):
        assert self.summary.start_block == 1000
        assert self.summary.latest_block == 2000
        assert self.summary.chunks == 3
        assert self.summary.events_counted == 3
        assert self.summary.last_processed_block == 2000
        assert self.summary.total_usdc == "350"
        assert len(self.summary.files) == 4

    def test_chunks_scanned_in_order(self):
        assert self.chain.log_ranges() == [(1000, 1499), (1500, 1999), (2000, 2000)]
        assert self.sleeps == []

    def test_checkpoint(self):
        assert read(self.settings, "_indexer_state.json") == {"lastProcessedBlock": 2000}

    def test_overview(self):
        overview = read(self.settings, "overview.json")
        assert overview['all_time'] == {"total_usdc": "350", "unique_users": 2}
        assert overview['latest_week']['week_start_utc'] == WEEK_2
        assert overview['generated_at_utc'] == "2025-08-10T12:00:00.000Z"

    def test_latest_week_ranks_bob_first(self):
        board = read(self.settings, "leaderboard_weekly_latest.json")
        assert [row['address'] for row in board['rows']] == [BOB, ALICE]
        assert board['rows'][1]['pct_change'] == "-50.00"
        assert board['rows'][0]['pct_change'] is None

    def test_all_time(self):
        board = read(self.settings, "leaderboard_all_time.json")
        alice = next(row for row in board['rows'] if row['address'] == ALICE)
        assert alice['weeks'] == {WEEK_1: "100", WEEK_2: "50"}
        assert alice['total_weeks_earned'] == 2
        assert board['last_processed_block'] == 2000

    def test_weekly(self):
        weekly = read(self.settings, "weekly.json")
        assert weekly['week_keys'] == [WEEK_1, WEEK_2]
        assert weekly['weeks'][1]['week_label'] == "Week 2 – 30 Jul 2025"

    def test_farcaster_map_created(self):
        assert read(self.settings, "farcaster_map.json") == {}

    def test_rerun_is_a_no_op(self):
        calls_before = len(self.chain.log_ranges())
        summary = make_indexer(self.settings, self.chain).run()
        assert summary.nothing_new
        assert len(self.chain.log_ranges()) == calls_before
        assert read(self.settings, "overview.json")['all_time']['total_usdc'] == "350"

    def test_incremental_run_adds_to_history(self):
        self.chain.latest_block = 3000
        self.chain.add_transfer(CAROL, usdc(10), 2500, ANCHOR + 2 * WEEK_SECONDS + 1)
        self.chain.add_transfer(BOB, usdc(20), 2600, ANCHOR + 2 * WEEK_SECONDS + 2)

        summary = make_indexer(self.settings, self.chain).run()
        assert summary.start_block == 2001
        assert summary.events_counted == 2

        overview = read(self.settings, "overview.json")
        assert overview['all_time'] == {"total_usdc": "380", "unique_users": 3}
        assert overview['latest_week']['week_start_utc'] == WEEK_3

        board = read(self.settings, "leaderboard_weekly_latest.json")
        assert board['previous_week_start_utc'] == WEEK_2
        bob = board['rows'][0]
        assert (bob['address'], bob['this_week_usdc'], bob['pct_change']) == (BOB, "20", "-90.00")
        assert bob['all_time_usdc'] == "220"


class TestResume:

    def test_crash_then_resume_matches_uninterrupted_run(self, settings, rewards_chain, tmp_path):
        uninterrupted = settings.model_copy(update={'data_dir': str(tmp_path / "reference")})
        make_indexer(uninterrupted, rewards_chain).run()
        rewards_chain.calls.clear()

        # Chunk 1000-1499 succeeds, chunk 1500-1999 blows up
        rewards_chain.fail_from = 1500
        with pytest.raises(RangeFetchError) as excinfo:
            make_indexer(settings, rewards_chain).run()
        assert excinfo.value.from_block == 1500
        assert read(settings, "_indexer_state.json") == {"lastProcessedBlock": 1499}
        assert read(settings, "leaderboard_all_time.json")['rows'][0]['weeks'] == {WEEK_1: "100"}
        assert not (settings.data_path / "overview.json").exists()

        rewards_chain.fail_from = None
        rewards_chain.calls.clear()
        summary = make_indexer(settings, rewards_chain).run()

        assert summary.start_block == 1500
        assert rewards_chain.log_ranges()[0] == (1500, 1999)
        for name in ("overview.json", "weekly.json", "leaderboard_weekly_latest.json", "leaderboard_all_time.json"):
            assert read(settings, name) == read(uninterrupted, name)

    def test_leaderboard_ahead_of_checkpoint_is_not_rescanned(self, settings, rewards_chain):
        make_indexer(settings, rewards_chain).run()
        # Simulate a crash between the leaderboard write and the checkpoint write
        (settings.data_path / "_indexer_state.json").write_text('{"lastProcessedBlock": 1499}')
        rewards_chain.calls.clear()

        summary = make_indexer(settings, rewards_chain).run()
        assert summary.nothing_new
        assert rewards_chain.log_ranges() == []
        assert read(settings, "overview.json")['all_time']['total_usdc'] == "350"

    def test_empty_chunks_do_not_rewrite_leaderboard(self, settings):
        chain = FakeChain(latest_block=1800)
        make_indexer(settings, chain).run()
        assert read(settings, "_indexer_state.json") == {"lastProcessedBlock": 1800}
        # Written once with the first checkpoint, then left alone
        leaderboard = read(settings, "leaderboard_all_time.json")
        assert leaderboard['rows'] == []
        assert leaderboard['last_processed_block'] == 1499
        assert not (settings.data_path / "overview.json").exists()

    def test_rerun_after_empty_scan(self, settings):
        chain = FakeChain(latest_block=1800)
        make_indexer(settings, chain).run()
        chain.latest_block = 2100
        chain.add_transfer(ALICE, usdc(5), 2050, ANCHOR + 50)

        summary = make_indexer(settings, chain).run()
        assert summary.start_block == 1801
        assert read(settings, "overview.json")['all_time']['total_usdc'] == "5"

    def test_missing_leaderboard_with_checkpoint_is_fatal(self, settings, rewards_chain):
        make_indexer(settings, rewards_chain).run()
        (settings.data_path / "leaderboard_all_time.json").unlink()
        rewards_chain.latest_block = 2100
        rewards_chain.add_transfer(CAROL, usdc(1), 2050, ANCHOR + WEEK_SECONDS + 30)
        rewards_chain.calls.clear()
        published = read(settings, "overview.json")

        with pytest.raises(HistoryMissingError) as excinfo:
            make_indexer(settings, rewards_chain).run()
        assert "leaderboard_all_time.json" in str(excinfo.value)
        assert excinfo.value.checkpoint_block == 2000
        assert rewards_chain.log_ranges() == []
        assert read(settings, "overview.json") == published
        assert read(settings, "_indexer_state.json") == {"lastProcessedBlock": 2000}

    def test_malformed_leaderboard_with_checkpoint_is_fatal(self, settings, rewards_chain):
        make_indexer(settings, rewards_chain).run()
        (settings.data_path / "leaderboard_all_time.json").write_text("{not json")
        with pytest.raises(HistoryMissingError):
            make_indexer(settings, rewards_chain).run()

    def test_missing_leaderboard_exits_1(self, settings, rewards_chain, monkeypatch):
        make_indexer(settings, rewards_chain).run()
        (settings.data_path / "leaderboard_all_time.json").unlink()
        monkeypatch.setattr(indexer_module, "load_settings", lambda *a, **kw: settings)
        monkeypatch.setattr(
            indexer_module, "RewardIndexer",
            lambda s: make_indexer(s, rewards_chain),
        )
        assert main([]) == 1


class TestFailures:

    def test_latest_block_unavailable(self, settings, rewards_chain):
        rewards_chain.down = set(settings.get_rpc_urls())
        with pytest.raises(LatestBlockUnavailableError):
            make_indexer(settings, rewards_chain).run()
        assert not (settings.data_path / "_indexer_state.json").exists()

    def test_bisection_during_run(self, settings, rewards_chain):
        rewards_chain.max_range = 100
        summary = make_indexer(settings, rewards_chain).run()
        assert summary.splits > 0
        assert summary.total_usdc == "350"


class TestCli:

    def test_success_exit_code(self, settings, rewards_chain, monkeypatch, capsys):
        monkeypatch.setattr(indexer_module, "load_settings", lambda *a, **kw: settings)
        monkeypatch.setattr(
            indexer_module, "RewardIndexer",
            lambda s: make_indexer(s, rewards_chain),
        )
        assert main([]) == 0
        out = capsys.readouterr().out
        assert "Reward indexer run" in out
        assert "350" in out

    def test_fatal_exit_code(self, settings, rewards_chain, monkeypatch):
        rewards_chain.fail_from = 1000
        monkeypatch.setattr(indexer_module, "load_settings", lambda *a, **kw: settings)
        monkeypatch.setattr(
            indexer_module, "RewardIndexer",
            lambda s: make_indexer(s, rewards_chain),
        )
        assert main([]) == 1

    def test_bad_config_exit_code(self, tmp_path):
        assert main(["--config", str(tmp_path / "missing.yaml")]) == 1


def test_print_summary_without_reports(capsys):
    print_summary(RunSummary(start_block=10, latest_block=5, nothing_new=True))
    assert "No reports written" in capsys.readouterr().out


def test_pauses_between_chunks_only(settings, rewards_chain):
    paced = settings.model_copy(update={'pause_between_chunks': 0.35})
    sleeps = []
    make_indexer(paced, rewards_chain, sleeps).run()
    assert sleeps == [0.35, 0.35]
