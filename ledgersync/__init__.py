"""Incremental transaction sync and ledger aggregation service."""

__version__ = "0.1.0"
