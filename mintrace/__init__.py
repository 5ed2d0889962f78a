"""Concurrent gated-mint submission and retry engine for EVM chains."""

__version__ = "0.1.0"
