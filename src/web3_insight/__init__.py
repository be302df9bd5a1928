"""Web3 Insight: background jobs, scheduling and semantic search over collected content."""

__version__ = "0.1.0"
