"""
History Store - time-ordered storage of memory samples.

Samples are kept sorted by timestamp ascending; samples sharing a timestamp
keep their insertion order. Every read returns a copy taken under the lock,
so a concurrent append or prune can never produce a torn read.

An optional JSON-lines file gives the store durability across restarts.
Samples dropped by retention stay in the file until it is compacted, which
happens automatically once the dropped lines outnumber the live ones (and
at least compact_min_stale of them have piled up).
Consumers must treat the sequence as irregularly spaced: missed sampling
ticks simply leave gaps.
"""

import bisect
import json
import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional, Tuple, Union

from .constants import SamplingDefaults
from .sampler import MemorySample

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetentionPolicy:
    """Count and/or age bound for stored samples (None disables a bound)."""
    max_samples: Optional[int] = None
    max_age_seconds: Optional[float] = None

    def __post_init__(self):
        if self.max_samples is not None and self.max_samples < 0:
            raise ValueError("max_samples must be >= 0")
        if self.max_age_seconds is not None and self.max_age_seconds < 0:
            raise ValueError("max_age_seconds must be >= 0")

    @classmethod
    def from_config(cls, config) -> 'RetentionPolicy':
        return cls(
            max_samples=config.max_history_entries,
            max_age_seconds=config.history_retention_seconds,
        )


class HistoryStore:
    """
    Thread-safe, append-mostly store of MemorySample ordered by timestamp.

    Pruning by age is relative to the caller-supplied `now` (defaulting to the
    newest sample), never to the wall clock, so results are reproducible.
    """

    def __init__(
        self,
        policy: Optional[RetentionPolicy] = None,
        path: Optional[Union[str, Path]] = None,
        compact_min_stale: int = SamplingDefaults.COMPACT_MIN_STALE_LINES,
    ):
        """
        Initialize HistoryStore.

        Args:
            policy: Retention applied after each append (count bound only;
                age pruning happens on explicit prune() calls)
            path: Optional JSON-lines file that each append is written to
            compact_min_stale: Dropped lines below which the file is never
                rewritten automatically
        """
        self.policy = policy
        self._samples: List[MemorySample] = []
        self._timestamps: List[float] = []
        self._lock = threading.RLock()
        self._path = Path(path) if path is not None else None
        self.compact_min_stale = compact_min_stale
        self._stale_lines = 0

    @classmethod
    def load(cls, path: Union[str, Path], policy: Optional[RetentionPolicy] = None) -> 'HistoryStore':
        """Restore a store from a JSON-lines file, skipping corrupt lines."""
        filepath = Path(path)
        loaded: List[MemorySample] = []
        skipped = 0

        if filepath.exists():
            with open(filepath, 'r') as f:
                for lineno, line in enumerate(f, start=1):
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        loaded.append(MemorySample.from_dict(json.loads(line)))
                    except (ValueError, KeyError, TypeError) as e:
                        skipped += 1
                        logger.warning(f"Skipping corrupt history line {lineno} in {filepath}: {e}")

        store = cls(policy=policy, path=None)
        store.extend(loaded)
        store._path = filepath
        store._stale_lines = len(loaded) + skipped - len(store)
        logger.info(f"Loaded {len(store)} samples from {filepath} ({skipped} skipped)")
        return store

    def __len__(self) -> int:
        with self._lock:
            return len(self._samples)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def _insert(self, sample: MemorySample) -> None:
        index = bisect.bisect_right(self._timestamps, sample.timestamp)
        self._timestamps.insert(index, sample.timestamp)
        self._samples.insert(index, sample)

    def append(self, sample: MemorySample) -> None:
        """Add a sample, keeping timestamp order."""
        with self._lock:
            self._insert(sample)
            if self._path is not None:
                self._write_lines([sample], mode='a')
            self._apply_count_bound()

    def extend(self, samples: Iterable[MemorySample]) -> None:
        with self._lock:
            batch = list(samples)
            for sample in batch:
                self._insert(sample)
            if self._path is not None and batch:
                self._write_lines(batch, mode='a')
            self._apply_count_bound()

    def _apply_count_bound(self) -> None:
        if self.policy is None or self.policy.max_samples is None:
            return
        excess = len(self._samples) - self.policy.max_samples
        if excess > 0:
            del self._samples[:excess]
            del self._timestamps[:excess]
            self._dropped(excess)

    def _dropped(self, count: int) -> None:
        """Record lines that are in the file but no longer in memory."""
        if self._path is None:
            return
        self._stale_lines += count
        if self._stale_lines >= max(self.compact_min_stale, len(self._samples)):
            self._compact_locked()

    def prune(self, policy: Optional[RetentionPolicy] = None, now: Optional[float] = None) -> int:
        """
        Drop samples outside the retention policy.

        Args:
            policy: Policy to apply (defaults to the store's policy)
            now: Reference time for age pruning (defaults to newest sample)

        Returns:
            Number of samples removed
        """
        policy = policy or self.policy
        if policy is None:
            return 0

        with self._lock:
            before = len(self._samples)
            if before == 0:
                return 0

            if policy.max_age_seconds is not None:
                reference = now if now is not None else self._timestamps[-1]
                cutoff = reference - policy.max_age_seconds
                index = bisect.bisect_left(self._timestamps, cutoff)
                if index:
                    del self._samples[:index]
                    del self._timestamps[:index]

            if policy.max_samples is not None:
                excess = len(self._samples) - policy.max_samples
                if excess > 0:
                    del self._samples[:excess]
                    del self._timestamps[:excess]

            removed = before - len(self._samples)
            if removed:
                self._dropped(removed)

        if removed:
            logger.debug(f"Pruned {removed} history samples")
        return removed

    def clear(self) -> None:
        with self._lock:
            self._samples.clear()
            self._timestamps.clear()
            if self._path is not None:
                self._write_lines([], mode='w')
                self._stale_lines = 0

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def range(self, start: Optional[float] = None, end: Optional[float] = None) -> List[MemorySample]:
        """Samples with start <= timestamp <= end (open bounds when None)."""
        with self._lock:
            lo = 0 if start is None else bisect.bisect_left(self._timestamps, start)
            hi = len(self._samples) if end is None else bisect.bisect_right(self._timestamps, end)
            return self._samples[lo:hi]

    def latest(self, n: int = 1) -> List[MemorySample]:
        """The n newest samples, oldest first."""
        if n <= 0:
            return []
        with self._lock:
            return self._samples[-n:]

    def last(self) -> Optional[MemorySample]:
        with self._lock:
            return self._samples[-1] if self._samples else None

    def snapshot(self) -> Tuple[MemorySample, ...]:
        """Immutable copy of the whole history."""
        with self._lock:
            return tuple(self._samples)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _write_lines(self, samples: List[MemorySample], mode: str) -> None:
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with open(self._path, mode) as f:
                for sample in samples:
                    f.write(json.dumps(sample.to_dict(), default=str) + '\n')
        except OSError as e:
            # Persistence is best effort; the in-memory history stays authoritative
            logger.warning(f"Failed to write history to {self._path}: {e}")

    def compact(self) -> None:
        """Rewrite the backing file so it matches the in-memory history."""
        if self._path is None:
            return
        with self._lock:
            self._compact_locked()

    def _compact_locked(self) -> None:
        stale = self._stale_lines
        self._write_lines(list(self._samples), mode='w')
        self._stale_lines = 0
        logger.debug(f"Compacted history file {self._path} ({stale} stale lines dropped)")


__all__ = ['RetentionPolicy', 'HistoryStore']
