"""PayBridge: multi-provider payment orchestration and webhook reconciliation."""

__version__ = "1.0.0"
