"""
Builds the published leaderboard and overview documents from aggregation state.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional

from .config import Settings
from .errors import NoRewardsError
from .models import (
    AllTimeLeaderboard,
    AllTimeRow,
    AllTimeTotals,
    BreakdownBucket,
    LatestWeekLeaderboard,
    LatestWeekRow,
    LatestWeekSummary,
    Overview,
    TokenInfo,
    WeeklyReport,
    WeekRow,
)
from .state import AggregationState
from .units import format_usdc, pct_change, short_address
from .weeks import week_end_for, week_label_for, week_number_for


@dataclass
class ReportBundle:
    overview: Overview
    weekly: WeeklyReport
    leaderboard_latest_week: LatestWeekLeaderboard
    leaderboard_all_time: AllTimeLeaderboard


def utc_stamp(now: Optional[datetime] = None) -> str:
    """ISO-8601 UTC timestamp with millisecond precision and a Z suffix"""
    now = now or datetime.now(timezone.utc)
    return now.astimezone(timezone.utc).isoformat(timespec='milliseconds').replace('+00:00', 'Z')


def build_breakdown(state: AggregationState, week_key: str) -> List[BreakdownBucket]:
    """Count users per exact weekly total, largest reward first"""
    counts: Dict[int, int] = {}
    for address in state.week_users(week_key):
        weekly_total = state.user_week_total(address, week_key)
        if weekly_total == 0:
            continue
        counts[weekly_total] = counts.get(weekly_total, 0) + 1

    return [
        BreakdownBucket(reward_usdc=format_usdc(value, state.decimals), users=users)
        for value, users in sorted(counts.items(), key=lambda item: item[0], reverse=True)
    ]


def build_overview(state: AggregationState, settings: Settings, generated_at: str) -> Overview:
    latest = state.latest_week_key()
    if latest is None:
        raise NoRewardsError("No transfers found from distributor")

    return Overview(
        generated_at_utc=generated_at,
        chain=settings.chain_name,
        token=TokenInfo(
            symbol=settings.token_symbol,
            address=settings.usdc_address,
            decimals=settings.token_decimals,
        ),
        reward_distributor=settings.reward_distributor,
        first_reward_block=str(settings.first_reward_block),
        all_time=AllTimeTotals(
            total_usdc=format_usdc(state.all_time_total(), state.decimals),
            unique_users=state.user_count,
        ),
        latest_week=LatestWeekSummary(
            week_start_utc=latest,
            week_end_utc=week_end_for(latest),
            total_usdc=format_usdc(state.week_total(latest), state.decimals),
            unique_users=len(state.week_users(latest)),
            breakdown=build_breakdown(state, latest),
        ),
    )


def build_weekly(state: AggregationState, generated_at: str) -> WeeklyReport:
    week_keys = state.week_keys()
    weeks = []
    for week_key in week_keys:
        week_number = week_number_for(week_key, state.anchor_ts)
        weeks.append(WeekRow(
            week_number=week_number,
            week_label=week_label_for(week_number, week_key),
            week_start_date_utc=f"{week_key} 00:00",
            week_start_utc=week_key,
            week_end_utc=week_end_for(week_key),
            total_usdc_amount=format_usdc(state.week_total(week_key), state.decimals),
            total_unique_users=len(state.week_users(week_key)),
        ))
    return WeeklyReport(generated_at_utc=generated_at, week_keys=week_keys, weeks=weeks)


def build_latest_week_leaderboard(state: AggregationState, generated_at: str) -> LatestWeekLeaderboard:
    latest = state.latest_week_key()
    if latest is None:
        raise NoRewardsError("No transfers found from distributor")
    previous = state.previous_week_key()

    entries = []
    for address in state.week_users(latest):
        this_week = state.user_week_total(address, latest)
        prev_week = state.user_week_total(address, previous)
        entries.append((this_week, prev_week, address))

    # sorted() is stable, ties keep first-seen order
    entries = sorted(entries, key=lambda entry: entry[0], reverse=True)

    rows = [
        LatestWeekRow(
            rank=rank,
            address=address,
            user_display=short_address(address),
            this_week_usdc=format_usdc(this_week, state.decimals),
            previous_week_usdc=format_usdc(prev_week, state.decimals),
            pct_change=pct_change(this_week, prev_week),
            all_time_usdc=format_usdc(state.user_all_time(address), state.decimals),
        )
        for rank, (this_week, prev_week, address) in enumerate(entries, start=1)
    ]

    return LatestWeekLeaderboard(
        generated_at_utc=generated_at,
        latest_week_start_utc=latest,
        latest_week_end_utc=week_end_for(latest),
        previous_week_start_utc=previous,
        rows=rows,
    )


def build_all_time_leaderboard(
    state: AggregationState,
    generated_at: str,
    last_processed_block: Optional[int] = None,
) -> AllTimeLeaderboard:
    week_keys = state.week_keys()

    ranked = sorted(state.users.items(), key=lambda item: item[1].all_time, reverse=True)

    rows = []
    for rank, (address, user) in enumerate(ranked, start=1):
        weeks = {
            week_key: format_usdc(user.weeks[week_key], state.decimals)
            for week_key in week_keys
            if user.weeks.get(week_key, 0) > 0
        }
        rows.append(AllTimeRow(
            all_time_rank=rank,
            address=address,
            user_display=short_address(address),
            total_usdc=format_usdc(user.all_time, state.decimals),
            total_weeks_earned=len(weeks),
            weeks=weeks,
        ))

    return AllTimeLeaderboard(
        generated_at_utc=generated_at,
        last_processed_block=last_processed_block,
        week_keys=week_keys,
        rows=rows,
    )


def build_reports(
    state: AggregationState,
    settings: Settings,
    now: Optional[datetime] = None,
    last_processed_block: Optional[int] = None,
) -> ReportBundle:
    """Snapshot the state into the four published documents"""
    if state.latest_week_key() is None:
        raise NoRewardsError("No transfers found from distributor. Check addresses and start block.")

    generated_at = utc_stamp(now)
    return ReportBundle(
        overview=build_overview(state, settings, generated_at),
        weekly=build_weekly(state, generated_at),
        leaderboard_latest_week=build_latest_week_leaderboard(state, generated_at),
        leaderboard_all_time=build_all_time_leaderboard(state, generated_at, last_processed_block),
    )
