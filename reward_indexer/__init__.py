"""Base USDC reward leaderboard indexer."""

__version__ = "0.1.0"
