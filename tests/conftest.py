"""
Pytest configuration and shared fixtures for membound tests.

This module provides deterministic clocks, sample builders and temporary
directories shared across the test suite.
"""

import json
import os
import shutil
import tempfile
from pathlib import Path
from typing import Dict, Generator, List, Optional

import pytest

# Add the parent directory to the path for imports
import sys
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from membound.constants import BYTES_PER_MB
from membound.sampler import MemorySample, MemoryStatus


# Tuesday 2023-11-14 00:00:00 UTC
BASE_TS = 1699920000.0
HOUR = 3600.0
LIMIT_BYTES = 1024 * BYTES_PER_MB


# ===========================================================================
# Clock Fixtures
# ===========================================================================

class FakeClock:
    """Manually advanced clock usable wherever a time.time callable is expected."""

    def __init__(self, start: float = BASE_TS):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    """Provide a fake clock starting at BASE_TS."""
    return FakeClock()


# ===========================================================================
# Temporary Directory Fixtures
# ===========================================================================

@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Provide a temporary directory that is cleaned up after the test."""
    tmpdir = tempfile.mkdtemp(prefix="membound_test_")
    yield Path(tmpdir)
    shutil.rmtree(tmpdir, ignore_errors=True)


# ===========================================================================
# Sample Builders
# ===========================================================================

def make_sample(
    timestamp: float,
    pct: Optional[float] = None,
    usage_bytes: Optional[int] = None,
    limit_bytes: Optional[int] = LIMIT_BYTES,
    components: Optional[Dict[str, int]] = None,
    efficiency: float = 100.0,
) -> MemorySample:
    """Build a MemorySample from a usage percentage or a byte count."""
    if usage_bytes is None:
        usage_bytes = int(limit_bytes * pct / 100) if limit_bytes else 0
    if limit_bytes is None:
        pct = None
        status = MemoryStatus.UNBOUNDED.value
    else:
        if pct is None:
            pct = usage_bytes / limit_bytes * 100
        status = MemoryStatus.NORMAL.value
    return MemorySample(
        timestamp=timestamp,
        total_usage_bytes=usage_bytes,
        limit_bytes=limit_bytes,
        usage_percentage=pct,
        efficiency_score=efficiency,
        component_breakdown=dict(components or {}),
        status=status,
    )


def make_series(values: List[float], start: float = BASE_TS, step: float = HOUR) -> List[MemorySample]:
    """Samples at regular intervals with the given usage percentages."""
    return [make_sample(start + i * step, pct=v) for i, v in enumerate(values)]


@pytest.fixture
def hourly_growth_history() -> List[MemorySample]:
    """Ten hourly samples climbing two points per hour from 50%."""
    return make_series([50.0 + 2.0 * i for i in range(10)])


@pytest.fixture
def flat_history() -> List[MemorySample]:
    """Twenty hourly samples holding steady at 40%."""
    return make_series([40.0] * 20)


class ListReader:
    """Returns successive values from a list, repeating the last one."""

    def __init__(self, values):
        self.values = list(values)
        self.calls = 0

    def __call__(self):
        index = min(self.calls, len(self.values) - 1)
        self.calls += 1
        value = self.values[index]
        if isinstance(value, Exception):
            raise value
        return value


# ===========================================================================
# Utility Functions
# ===========================================================================

def read_jsonl(path: Path) -> list:
    """Read all records from a JSON-lines file."""
    records = []
    with open(path, 'r') as f:
        for line in f:
            line = line.strip()
            if line:
                records.append(json.loads(line))
    return records


# ===========================================================================
# Markers Registration
# ===========================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests (fast, isolated)")
    config.addinivalue_line("markers", "integration: Integration tests")
    config.addinivalue_line("markers", "slow: Slow tests (>1s)")
