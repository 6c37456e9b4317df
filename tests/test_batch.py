"""Tests for batch recompute, anomaly flagging and daily aggregation."""

import random
from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import pytest

from pallet_delta.config import EngineSettings
from pallet_delta.db import EventStore
from pallet_delta.models import NewBreak, NewEvent

BASE = datetime(2025, 1, 25, 8, 0, tzinfo=timezone.utc)


def ts(clock: str, day: str = "2025-01-25") -> datetime:
    """Helper: time of day on a fixed date, UTC."""
    return datetime.fromisoformat(f"{day}T{clock}+00:00")


def append(store: EventStore, event_id: str, when: datetime, partition_key: str = "line-1") -> None:
    store.append_event(NewEvent(id=event_id, occurred_at=when, partition_key=partition_key))


def snapshot(store: EventStore) -> list[tuple]:
    return sorted(r.comparable() for r in store.get_derived_records())


def random_events(rng: random.Random, count: int, partitions: list[str]) -> list[NewEvent]:
    """Events on a coarse grid so timestamp ties are common."""
    return [
        NewEvent(
            id=f"e{i:03d}",
            occurred_at=BASE + timedelta(seconds=30 * rng.randint(0, 60)),
            partition_key=rng.choice(partitions),
        )
        for i in range(count)
    ]


def random_breaks(rng: random.Random, count: int, partitions: list[str]) -> list[NewBreak]:
    breaks = []
    for i in range(count):
        start = BASE + timedelta(seconds=rng.randint(0, 1800))
        breaks.append(
            NewBreak(
                id=f"b{i}",
                start=start,
                end=start + timedelta(seconds=rng.randint(1, 300)),
                partition_key=rng.choice([None, *partitions]),
            )
        )
    return breaks


class TestIncrementalBatchEquivalence:
    """Incremental output equals a full recompute of the same events."""

    @pytest.mark.parametrize("seed", range(12))
    def test_random_arrival_orders(self, seed):
        rng = random.Random(seed)
        partitions = ["apples", "pears", "plums"]
        store = EventStore.open_in_memory()
        for brk in random_breaks(rng, 6, partitions):
            store.add_break(brk)

        events = random_events(rng, 40, partitions)
        rng.shuffle(events)
        for event in events:
            store.append_event(event)

        incremental = snapshot(store)
        result = store.recompute()
        assert result.records_written == 40
        assert result.partitions_processed == len(store.get_partition_keys())
        assert snapshot(store) == incremental
        assert store.check_consistency() == []

    @pytest.mark.parametrize("seed", range(6))
    def test_matches_direct_computation(self, seed):
        """Every record matches its (time, arrival) predecessor and the breaks in the gap."""
        rng = random.Random(100 + seed)
        store = EventStore.open_in_memory()
        breaks = random_breaks(rng, 8, ["line-1", "other"])
        for brk in breaks:
            store.add_break(brk)
        events = random_events(rng, 30, ["line-1"])
        for event in events:
            store.append_event(event)

        arrival = {event.id: i for i, event in enumerate(events)}
        ordered = sorted(events, key=lambda e: (e.occurred_at, arrival[e.id]))
        records = store.get_derived_records(partition_key="line-1")

        assert [r.event_id for r in records] == [e.id for e in ordered]
        assert records[0].net_delta_seconds is None
        for previous, event, record in zip(ordered, ordered[1:], records[1:]):
            assert record.predecessor_id == previous.id
            gross = round((event.occurred_at - previous.occurred_at).total_seconds())
            assert record.gross_delta_seconds == gross

            # Whole seconds of the gap covered by at least one applicable break
            applicable = [b for b in breaks if b.partition_key in (None, "line-1")]
            covered = 0
            for second in range(gross):
                instant = previous.occurred_at + timedelta(seconds=second)
                if any(b.start <= instant < b.end for b in applicable):
                    covered += 1
            assert record.break_overlap_seconds == covered
            assert record.net_delta_seconds == gross - covered

    def test_occurred_at_non_decreasing(self):
        rng = random.Random(7)
        store = EventStore.open_in_memory()
        for event in random_events(rng, 25, ["line-1"]):
            store.append_event(event)
        stamps = [r.occurred_at for r in store.get_derived_records(partition_key="line-1")]
        assert stamps == sorted(stamps)

    def test_first_in_partition_survives_out_of_order_inserts(self):
        store = EventStore.open_in_memory()
        for minutes in [30, 20, 25, 5, 40, 1]:
            append(store, f"m{minutes}", BASE + timedelta(minutes=minutes))
        records = store.get_derived_records(partition_key="line-1")
        assert records[0].event_id == "m1"
        assert records[0].net_delta_seconds is None
        assert all(r.net_delta_seconds is not None for r in records[1:])


class TestRecompute:
    """Tests for the batch recomputer."""

    def test_recompute_empty_store(self):
        store = EventStore.open_in_memory()
        result = store.recompute()
        assert result.records_written == 0
        assert result.partitions_processed == 0

    def test_recompute_single_partition_leaves_others(self):
        store = EventStore.open_in_memory()
        append(store, "a0", ts("08:00:00"), "apples")
        append(store, "a1", ts("08:10:00"), "apples")
        append(store, "p0", ts("08:00:00"), "pears")
        append(store, "p1", ts("08:10:00"), "pears")
        store.flag_anomalies(300)

        result = store.recompute("apples")
        assert result.records_written == 2
        assert result.partitions_processed == 1
        # Flags are re-derived separately; only the rebuilt partition loses them
        assert store.get_derived_record("a1").is_anomaly is False
        assert store.get_derived_record("p1").is_anomaly is True

    def test_recompute_unknown_partition(self):
        store = EventStore.open_in_memory()
        append(store, "a0", ts("08:00:00"), "apples")
        result = store.recompute("nope")
        assert result.records_written == 0
        assert len(store.get_derived_records()) == 1

    def test_recompute_repairs_missing_record(self):
        store = EventStore.open_in_memory()
        append(store, "t0", ts("08:00:00"))
        append(store, "t1", ts("08:05:00"))
        store._conn.execute("DELETE FROM derived_records WHERE event_id = 't1'")
        assert [f.kind for f in store.check_consistency()] == ["missing_derived"]

        store.recompute("line-1")
        assert store.check_consistency() == []
        assert store.get_derived_record("t1").net_delta_seconds == 300

    def test_recompute_rolls_back_on_failure(self, monkeypatch):
        """A failure mid-partition leaves the previous records in place."""
        store = EventStore.open_in_memory()
        append(store, "t0", ts("08:00:00"))
        append(store, "t1", ts("08:05:00"))
        before = snapshot(store)

        def explode(*args, **kwargs):
            raise RuntimeError("boom")

        monkeypatch.setattr("pallet_delta.db.compute_partition", explode)
        with pytest.raises(RuntimeError):
            store.recompute("line-1")
        assert snapshot(store) == before

    def test_recompute_copies_attributes(self):
        store = EventStore.open_in_memory()
        store.append_event(
            NewEvent(id="t0", occurred_at=ts("08:00:00"), partition_key="line-1", attributes={"producer": "x"})
        )
        store.recompute()
        assert store.get_derived_record("t0").attributes == {"producer": "x"}


class TestFlagAnomalies:
    """Tests for threshold-based anomaly flagging."""

    def make_store(self) -> EventStore:
        store = EventStore.open_in_memory()
        store.add_break(NewBreak(start=ts("08:02:00"), end=ts("08:03:00")))
        append(store, "t0", ts("08:00:00"))
        append(store, "t1", ts("08:05:30"))
        append(store, "t2", ts("08:11:00"))
        return store

    def flags(self, store: EventStore) -> list[bool]:
        return [r.is_anomaly for r in store.get_derived_records(partition_key="line-1")]

    def test_threshold_example(self):
        """Nets [NULL, 270, 330] with threshold 300 flag only the last."""
        store = self.make_store()
        result = store.flag_anomalies(300)
        assert result.updated_count == 1
        assert self.flags(store) == [False, False, True]

    def test_flagging_twice_is_idempotent(self):
        store = self.make_store()
        first = store.flag_anomalies(300)
        flags = self.flags(store)
        second = store.flag_anomalies(300)
        assert second == first
        assert self.flags(store) == flags

    def test_raising_threshold_clears_flags(self):
        store = self.make_store()
        store.flag_anomalies(0)
        assert self.flags(store) == [False, True, True]
        result = store.flag_anomalies(1000)
        assert result.updated_count == 0
        assert self.flags(store) == [False, False, False]

    def test_equal_to_threshold_not_flagged(self):
        store = self.make_store()
        store.flag_anomalies(330)
        assert self.flags(store) == [False, False, False]

    def test_default_threshold_from_settings(self):
        store = EventStore.open_in_memory(settings=EngineSettings(anomaly_threshold_seconds=100))
        append(store, "t0", ts("08:00:00"))
        append(store, "t1", ts("08:02:00"))
        assert store.flag_anomalies().updated_count == 1


class TestAggregateDay:
    """Tests for the daily per-partition rollup."""

    def make_store(self, settings: EngineSettings | None = None) -> EventStore:
        store = EventStore.open_in_memory(settings=settings)
        store.add_break(NewBreak(start=ts("08:02:00"), end=ts("08:03:00"), partition_key="apples"))
        for event_id, clock in [("a0", "08:00:00"), ("a1", "08:05:30"), ("a2", "08:11:00")]:
            append(store, event_id, ts(clock), "apples")
        for event_id, clock in [("p0", "09:00:00"), ("p1", "09:01:40"), ("p2", "09:03:00")]:
            append(store, event_id, ts(clock), "pears")
        append(store, "a3", ts("00:30:00", day="2025-01-26"), "apples")
        store.flag_anomalies(300)
        return store

    def test_summary_values(self):
        store = self.make_store()
        result = store.aggregate_day(date(2025, 1, 25))
        assert result.partitions_processed == 2

        apples, pears = store.get_daily_summaries()
        assert apples.partition_key == "apples"
        assert apples.summary_date == date(2025, 1, 25)
        assert apples.event_count == 2
        assert apples.avg_net_delta_seconds == 300.0
        assert apples.min_net_delta_seconds == 270
        assert apples.max_net_delta_seconds == 330
        assert apples.anomaly_count == 1

        assert pears.event_count == 2
        assert pears.avg_net_delta_seconds == 90.0
        assert pears.min_net_delta_seconds == 80
        assert pears.max_net_delta_seconds == 100
        assert pears.anomaly_count == 0

    def test_first_event_excluded_and_next_day_separate(self):
        store = self.make_store()
        store.aggregate_day(date(2025, 1, 26))
        (summary,) = store.get_daily_summaries()
        assert summary.partition_key == "apples"
        assert summary.event_count == 1
        assert summary.max_net_delta_seconds == 16 * 3600 + 19 * 60

    def test_aggregate_twice_is_idempotent(self):
        store = self.make_store()
        store.aggregate_day(date(2025, 1, 25))
        first = store.get_daily_summaries()
        store.aggregate_day(date(2025, 1, 25))
        assert store.get_daily_summaries() == first

    def test_aggregate_replaces_stale_rows(self):
        store = self.make_store()
        store.aggregate_day(date(2025, 1, 25))
        store.flag_anomalies(1000)
        store.aggregate_day(date(2025, 1, 25))
        assert [s.anomaly_count for s in store.get_daily_summaries()] == [0, 0]

    def test_empty_day(self):
        store = self.make_store()
        result = store.aggregate_day(date(2024, 1, 1))
        assert result.partitions_processed == 0
        assert store.get_daily_summaries(start=date(2024, 1, 1), end=date(2024, 1, 1)) == []

    def test_avg_rounded_to_two_decimals(self):
        store = EventStore.open_in_memory()
        for event_id, clock in [("t0", "08:00:00"), ("t1", "08:00:10"), ("t2", "08:00:20"), ("t3", "08:00:31")]:
            append(store, event_id, ts(clock))
        store.aggregate_day(date(2025, 1, 25))
        (summary,) = store.get_daily_summaries()
        assert summary.avg_net_delta_seconds == 10.33

    def test_summary_timezone_defines_day(self):
        try:
            ZoneInfo("Europe/Berlin")
        except ZoneInfoNotFoundError:
            pytest.skip("tz database not available")

        store = EventStore.open_in_memory(settings=EngineSettings(summary_timezone="Europe/Berlin"))
        # 23:30 UTC on the 25th is 00:30 on the 26th in Berlin
        append(store, "t0", ts("23:00:00"))
        append(store, "t1", ts("23:30:00"))
        assert store.aggregate_day(date(2025, 1, 25)).partitions_processed == 0
        assert store.aggregate_day(date(2025, 1, 26)).partitions_processed == 1

    def test_filter_summaries_by_partition(self):
        store = self.make_store()
        store.aggregate_day(date(2025, 1, 25))
        store.aggregate_day(date(2025, 1, 26))
        rows = store.get_daily_summaries(partition_key="apples")
        assert [s.summary_date for s in rows] == [date(2025, 1, 25), date(2025, 1, 26)]


class TestPartitionSummary:
    """Tests for the ad-hoc partition summary."""

    def test_summary_over_all_time(self):
        store = EventStore.open_in_memory()
        append(store, "t0", ts("08:00:00"))
        append(store, "t1", ts("08:05:30"))
        append(store, "t2", ts("08:11:00"))
        store.flag_anomalies(300)

        summary = store.partition_summary("line-1")
        assert summary.event_count == 2
        assert summary.avg_net_delta_seconds == 330.0
        assert summary.anomaly_count == 2

    def test_summary_window(self):
        store = EventStore.open_in_memory()
        append(store, "t0", ts("08:00:00"))
        append(store, "t1", ts("08:05:00"))
        append(store, "t2", ts("08:15:00"))
        summary = store.partition_summary("line-1", start=ts("08:10:00"), end=ts("08:15:00"))
        assert summary.event_count == 1
        assert summary.min_net_delta_seconds == 600

    def test_summary_without_deltas(self):
        store = EventStore.open_in_memory()
        append(store, "t0", ts("08:00:00"))
        assert store.partition_summary("line-1") is None
        assert store.partition_summary("missing") is None


class TestBreakImpact:
    """Tests for the break impact report."""

    def test_break_percentage(self):
        store = EventStore.open_in_memory()
        store.add_break(NewBreak(start=ts("08:02:00"), end=ts("08:03:00")))
        store.append_event(
            NewEvent(id="t0", occurred_at=ts("08:00:00"), partition_key="line-1", attributes={"operator": "ana"})
        )
        store.append_event(
            NewEvent(id="t1", occurred_at=ts("08:04:00"), partition_key="line-1", attributes={"operator": "ana"})
        )
        append(store, "t2", ts("08:06:00"))

        rows = store.break_impact()
        assert [r.event_id for r in rows] == ["t2", "t1"]
        t2, t1 = rows
        assert t1.operator == "ana"
        assert t1.gross_delta_minutes == 4.0
        assert t1.break_overlap_minutes == 1.0
        assert t1.net_delta_minutes == 3.0
        assert t1.break_percentage == 25.0
        assert t2.operator is None
        assert t2.break_percentage == 0.0

    def test_zero_gross_has_zero_percentage(self):
        store = EventStore.open_in_memory()
        append(store, "a", ts("08:00:00"))
        append(store, "b", ts("08:00:00"))
        (row,) = store.break_impact()
        assert row.gross_delta_seconds == 0
        assert row.break_percentage == 0.0

    def test_limit_and_partition_filter(self):
        store = EventStore.open_in_memory()
        for i in range(5):
            append(store, f"a{i}", ts(f"08:0{i}:00"), "apples")
            append(store, f"p{i}", ts(f"08:0{i}:00"), "pears")
        rows = store.break_impact(partition_key="pears", limit=2)
        assert [r.event_id for r in rows] == ["p4", "p3"]
