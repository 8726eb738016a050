"""
CLI Module for membound

Provides command-line tools:
- memctl: inspect memory stats, watch sampling, list presets, print config

Usage:
    python -m membound.cli.memctl stats
    python -m membound.cli.memctl watch --samples 5
"""

from .memctl import main as memctl_main

__all__ = [
    'memctl_main',
]
