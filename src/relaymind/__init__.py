"""RelayMind — multi-provider plan/execute/synthesize orchestration engine."""

__version__ = "1.0.0"
