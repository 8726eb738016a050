"""
Tests for the History Store module.
"""

import os
import sys
import threading

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from membound.config import MonitorConfig
from membound.history import HistoryStore, RetentionPolicy

from conftest import BASE_TS, HOUR, make_sample, make_series, read_jsonl


class TestRetentionPolicy:
    """Tests for RetentionPolicy."""

    def test_negative_bounds_rejected(self):
        with pytest.raises(ValueError):
            RetentionPolicy(max_samples=-1)
        with pytest.raises(ValueError):
            RetentionPolicy(max_age_seconds=-1)

    def test_from_config(self):
        policy = RetentionPolicy.from_config(MonitorConfig(max_history_entries=100))
        assert policy.max_samples == 100
        assert policy.max_age_seconds == MonitorConfig().history_retention_seconds


class TestHistoryOrdering:
    """Tests for time ordering."""

    def test_out_of_order_appends_are_sorted(self):
        store = HistoryStore()
        for offset in (30, 10, 20):
            store.append(make_sample(BASE_TS + offset, pct=offset))
        assert [s.timestamp for s in store.snapshot()] == [
            BASE_TS + 10, BASE_TS + 20, BASE_TS + 30
        ]

    def test_equal_timestamps_keep_insertion_order(self):
        store = HistoryStore()
        store.append(make_sample(BASE_TS, pct=1.0))
        store.append(make_sample(BASE_TS, pct=2.0))
        store.append(make_sample(BASE_TS, pct=3.0))
        assert [s.usage_percentage for s in store.snapshot()] == [1.0, 2.0, 3.0]

    def test_range_is_inclusive(self):
        store = HistoryStore()
        store.extend(make_series([10, 20, 30, 40]))
        selected = store.range(BASE_TS + HOUR, BASE_TS + 2 * HOUR)
        assert [s.usage_percentage for s in selected] == [20, 30]
        assert len(store.range()) == 4
        assert len(store.range(start=BASE_TS + 3 * HOUR)) == 1

    def test_latest_and_last(self):
        store = HistoryStore()
        assert store.last() is None
        assert store.latest(5) == []
        store.extend(make_series([10, 20, 30]))
        assert [s.usage_percentage for s in store.latest(2)] == [20, 30]
        assert store.latest(0) == []
        assert store.last().usage_percentage == 30

    def test_reads_are_copies(self):
        store = HistoryStore()
        store.extend(make_series([10, 20]))
        snapshot = store.snapshot()
        recent = store.latest(2)
        store.append(make_sample(BASE_TS + 10 * HOUR, pct=99))
        assert len(snapshot) == 2
        assert len(recent) == 2
        assert isinstance(snapshot, tuple)


class TestHistoryRetention:
    """Tests for count and age bounds."""

    def test_count_bound_applied_on_append(self):
        store = HistoryStore(policy=RetentionPolicy(max_samples=3))
        store.extend(make_series([1, 2, 3, 4, 5]))
        assert len(store) == 3
        assert [s.usage_percentage for s in store.snapshot()] == [3, 4, 5]

    def test_age_prune_relative_to_now(self):
        store = HistoryStore()
        store.extend(make_series([1, 2, 3, 4, 5]))
        removed = store.prune(RetentionPolicy(max_age_seconds=2 * HOUR), now=BASE_TS + 4 * HOUR)
        assert removed == 2
        assert store.snapshot()[0].timestamp == BASE_TS + 2 * HOUR

    def test_age_prune_defaults_to_newest_sample(self):
        store = HistoryStore(policy=RetentionPolicy(max_age_seconds=HOUR))
        store.extend(make_series([1, 2, 3, 4]))
        assert store.prune() == 2
        assert len(store) == 2

    def test_prune_without_policy_is_noop(self):
        store = HistoryStore()
        store.extend(make_series([1, 2]))
        assert store.prune() == 0
        assert len(store) == 2

    def test_prune_empty_store(self):
        assert HistoryStore(policy=RetentionPolicy(max_samples=1)).prune() == 0

    def test_clear(self):
        store = HistoryStore()
        store.extend(make_series([1, 2]))
        store.clear()
        assert len(store) == 0


class TestHistoryPersistence:
    """Tests for the JSON-lines backing file."""

    def test_appends_written_to_file(self, temp_dir):
        path = temp_dir / "history.jsonl"
        store = HistoryStore(path=path)
        store.extend(make_series([10, 20]))
        store.append(make_sample(BASE_TS + 5 * HOUR, pct=30))
        records = read_jsonl(path)
        assert [r['usage_percentage'] for r in records] == [10, 20, 30]

    def test_load_restores_samples(self, temp_dir):
        path = temp_dir / "history.jsonl"
        HistoryStore(path=path).extend(make_series([10, 20, 30]))
        restored = HistoryStore.load(path)
        assert len(restored) == 3
        assert restored.last().usage_percentage == 30

    def test_load_skips_corrupt_lines(self, temp_dir):
        path = temp_dir / "history.jsonl"
        HistoryStore(path=path).extend(make_series([10, 20]))
        with open(path, 'a') as f:
            f.write("{not json\n")
            f.write('{"timestamp": 1}\n')
        restored = HistoryStore.load(path)
        assert len(restored) == 2

    def test_load_missing_file_gives_empty_store(self, temp_dir):
        assert len(HistoryStore.load(temp_dir / "absent.jsonl")) == 0

    def test_load_does_not_duplicate_file(self, temp_dir):
        path = temp_dir / "history.jsonl"
        HistoryStore(path=path).extend(make_series([10, 20]))
        HistoryStore.load(path)
        assert len(read_jsonl(path)) == 2

    def test_compact_rewrites_file(self, temp_dir):
        path = temp_dir / "history.jsonl"
        store = HistoryStore(path=path)
        store.extend(make_series([1, 2, 3, 4]))
        store.prune(RetentionPolicy(max_samples=2))
        store.compact()
        assert [r['usage_percentage'] for r in read_jsonl(path)] == [3, 4]

    def test_few_dropped_lines_leave_file_alone(self, temp_dir):
        path = temp_dir / "history.jsonl"
        store = HistoryStore(path=path)
        store.extend(make_series([1, 2, 3, 4]))
        store.prune(RetentionPolicy(max_samples=2))
        assert len(read_jsonl(path)) == 4

    def test_file_compacted_automatically_as_samples_drop(self, temp_dir):
        path = temp_dir / "history.jsonl"
        store = HistoryStore(policy=RetentionPolicy(max_samples=3), path=path, compact_min_stale=5)
        for sample in make_series(list(range(20))):
            store.append(sample)
            assert len(read_jsonl(path)) < 3 + 5

        values = [r['usage_percentage'] for r in read_jsonl(path)]
        assert values[-3:] == [17, 18, 19]
        assert len(HistoryStore.load(path, policy=RetentionPolicy(max_samples=3))) == 3

    def test_age_prune_counts_towards_compaction(self, temp_dir):
        path = temp_dir / "history.jsonl"
        store = HistoryStore(path=path, compact_min_stale=2)
        store.extend(make_series([1, 2, 3, 4]))
        assert store.prune(RetentionPolicy(max_age_seconds=HOUR)) == 2
        assert [r['usage_percentage'] for r in read_jsonl(path)] == [3, 4]


class TestHistoryConcurrency:
    """Tests for concurrent access."""

    def test_concurrent_appends_and_reads(self):
        store = HistoryStore(policy=RetentionPolicy(max_samples=500))
        errors = []

        def writer(offset):
            for i in range(200):
                store.append(make_sample(BASE_TS + offset + i * 4, pct=50))

        def reader():
            for _ in range(200):
                snapshot = store.snapshot()
                stamps = [s.timestamp for s in snapshot]
                if stamps != sorted(stamps):
                    errors.append("unsorted snapshot")

        threads = [threading.Thread(target=writer, args=(k,)) for k in range(4)]
        threads.append(threading.Thread(target=reader))
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert len(store) == 500
