"""
Pydantic models for indexer state and the published JSON documents.
"""

from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class TransferEvent(BaseModel):
    """A validated USDC Transfer sent by the reward distributor"""
    model_config = ConfigDict(frozen=True)

    from_address: str = Field(..., description="Checksummed sender (the distributor)")
    to_address: str = Field(..., description="Checksummed reward recipient")
    value: int = Field(..., ge=0, description="Amount in token base units")
    block_number: int = Field(..., ge=0)
    log_index: Optional[int] = Field(None, description="Position of the log in its block")
    transaction_hash: Optional[str] = Field(None, description="0x-prefixed transaction hash")
    timestamp: Optional[int] = Field(None, description="Block timestamp, filled in after fetching the block")


class Checkpoint(BaseModel):
    """Contents of _indexer_state.json"""
    lastProcessedBlock: Optional[int] = Field(None, description="Last block fully processed and persisted")


class TokenInfo(BaseModel):
    symbol: str
    address: str
    decimals: int


class AllTimeTotals(BaseModel):
    total_usdc: str
    unique_users: int


class BreakdownBucket(BaseModel):
    """Number of users who earned exactly ``reward_usdc`` in the week"""
    reward_usdc: str
    users: int


class LatestWeekSummary(BaseModel):
    week_start_utc: str
    week_end_utc: str
    total_usdc: str
    unique_users: int
    breakdown: List[BreakdownBucket] = Field(default_factory=list)


class Overview(BaseModel):
    """overview.json"""
    generated_at_utc: str
    chain: str
    token: TokenInfo
    reward_distributor: str
    first_reward_block: str
    all_time: AllTimeTotals
    latest_week: LatestWeekSummary


class WeekRow(BaseModel):
    week_number: int
    week_label: str
    week_start_date_utc: str
    week_start_utc: str
    week_end_utc: str
    total_usdc_amount: str
    total_unique_users: int


class WeeklyReport(BaseModel):
    """weekly.json"""
    generated_at_utc: str
    week_keys: List[str]
    weeks: List[WeekRow]


class LatestWeekRow(BaseModel):
    rank: int
    address: str
    user_display: str
    this_week_usdc: str
    previous_week_usdc: str
    pct_change: Optional[str] = Field(None, description="Null when the previous week total is 0")
    all_time_usdc: str


class LatestWeekLeaderboard(BaseModel):
    """leaderboard_weekly_latest.json"""
    generated_at_utc: str
    latest_week_start_utc: str
    latest_week_end_utc: str
    previous_week_start_utc: Optional[str] = None
    rows: List[LatestWeekRow]


class AllTimeRow(BaseModel):
    all_time_rank: int
    address: str
    user_display: str
    total_usdc: str
    total_weeks_earned: int
    weeks: Dict[str, str] = Field(default_factory=dict, description="week key -> amount, only weeks with earnings")


class AllTimeLeaderboard(BaseModel):
    """leaderboard_all_time.json"""
    generated_at_utc: str
    last_processed_block: Optional[int] = Field(None, description="Highest block whose transfers are included")
    week_keys: List[str]
    rows: List[AllTimeRow]
