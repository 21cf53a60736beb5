"""
Tests for Load Strategies Module

These tests run the full, incremental and delta strategies against real
SQLite endpoints and the in-memory checkpoint store, covering batch sizing,
resume from checkpoints, watermark monotonicity, tombstones and contained
row failures.
"""

from datetime import datetime, timedelta
from decimal import Decimal
import math

import pytest
from table_sync.checkpoint_store import STATUS_COMPLETED, STATUS_IN_PROGRESS, Checkpoint
from table_sync.db_endpoint import RowSet
from table_sync.errors import BatchTransactionError, ConfigurationError, KeysetProgressError
from table_sync.load_strategies import (
    DeltaLoadStrategy,
    FullLoadStrategy,
    IncrementalLoadStrategy,
    LoadContext,
    _advance,
    _next_key,
    build_strategy,
)
from table_sync.mode_detector import SyncMode
from table_sync.resilience import ResilientUnitOfWork

USERS_QUERY = 'SELECT * FROM "users"'
PAIR = ("users", "users")
ITEMS_DDL = "CREATE TABLE items (k INTEGER, name TEXT);"
EVENTS_DDL = "CREATE TABLE events (created_at TEXT PRIMARY KEY, name TEXT);"


@pytest.fixture
def make_context(source, destination, store, make_config):
    def _make(source_query=USERS_QUERY, key="id", src=None, dst=None, **overrides):
        src = source if src is None else src
        dst = destination if dst is None else dst
        return LoadContext(
            config=make_config(**overrides),
            source=src,
            destination=dst,
            store=store,
            unit_of_work=ResilientUnitOfWork(dst),
            source_query=source_query,
            primary_key_column=key,
        )
    return _make


def destination_ids(endpoint):
    return [row[0] for row in endpoint.fetch("SELECT id FROM users ORDER BY id")]


def insert_for_id(record_id):
    return lambda sql, params: sql.startswith("INSERT") and params[0] == record_id


class TestAdvance:
    """Test the keyset advance rule."""

    def test_takes_larger_key(self):
        assert _advance(5, 9) == 9

    def test_never_lowers_key(self):
        assert _advance(9, 5) == 9

    def test_initial_key(self):
        assert _advance(None, 3) == 3

    def test_empty_batch_keeps_key(self):
        assert _advance(7, None) == 7

    def test_incomparable_keys_raise(self):
        with pytest.raises(KeysetProgressError, match="Cannot compare"):
            _advance(7, "abc")


class TestNextKey:
    """Test the cursor move after a fetched keyset batch."""

    def test_moves_to_batch_maximum(self):
        assert _next_key(5, RowSet(["id"], [(6,), (9,), (7,)]), "id", 2) == 9

    def test_first_batch(self):
        assert _next_key(None, RowSet(["id"], [(1,), (2,)]), "id", 1) == 2

    def test_null_keys_are_skipped_for_the_maximum(self):
        assert _next_key(None, RowSet(["id"], [(None,), (4,)]), "id", 1) == 4

    def test_batch_of_null_keys_cannot_advance(self):
        with pytest.raises(KeysetProgressError, match="no non-NULL 'id' values") as exc_info:
            _next_key(None, RowSet(["id"], [(None,), (None,)]), "id", 1)

        assert exc_info.value.batch_number == 1

    def test_batch_behind_cursor_cannot_advance(self):
        with pytest.raises(KeysetProgressError, match="did not advance"):
            _next_key(10, RowSet(["id"], [(4,), (10,)]), "id", 3)

    def test_string_stored_key_against_decimal_batch(self):
        with pytest.raises(KeysetProgressError, match="Cannot compare"):
            _next_key("500", RowSet(["id"], [(Decimal("510"),)]), "id", 1)


class TestFullLoad:
    """Test the full load strategy."""

    def test_loads_all_rows_in_keyset_batches(self, make_context, source, destination, store, seed):
        seed(source, range(1, 2501))

        result = FullLoadStrategy(make_context()).execute()

        assert result.mode == SyncMode.FULL
        assert result.batch_sizes == [1000, 1000, 500]
        assert result.rows_processed == 2500
        assert result.rows_inserted == 2500
        assert result.rows_failed == 0
        assert result.last_key == 2500
        assert destination.count("users") == 2500

        checkpoint = store.checkpoints[PAIR + ("full",)]
        assert checkpoint.status == STATUS_COMPLETED
        assert checkpoint.last_processed_key == 2500
        assert checkpoint.batch_number == 3

    def test_checkpoint_saved_after_each_batch(self, make_context, source, store, seed):
        seed(source, range(1, 2501))

        FullLoadStrategy(make_context()).execute()

        assert [cp.batch_number for cp in store.saved_checkpoints] == [1, 2, 3]
        assert [cp.last_processed_key for cp in store.saved_checkpoints] == [1000, 2000, 2500]
        assert [cp.rows_inserted for cp in store.saved_checkpoints] == [1000, 2000, 2500]

    def test_batch_queries_filter_on_last_key(self, make_context, source, seed):
        seed(source, range(1, 2501))

        FullLoadStrategy(make_context()).execute()

        batch_queries = [sql for sql in source.executed if "ORDER BY" in sql]
        assert batch_queries[0] == 'SELECT * FROM "users" ORDER BY "id" ASC LIMIT 1000'
        assert all('WHERE "id" > ?' in sql for sql in batch_queries[1:])
        assert len(batch_queries) == 4

    def test_seeds_incremental_watermark(self, make_context, source, store, seed):
        seed(source, range(1, 11))

        FullLoadStrategy(make_context()).execute()

        assert store.watermarks[PAIR + ("id",)] == 10

    def test_does_not_lower_existing_watermark(self, make_context, source, store, seed):
        seed(source, range(1, 11))
        store.watermarks[PAIR + ("id",)] = 9999

        FullLoadStrategy(make_context()).execute()

        assert store.watermarks[PAIR + ("id",)] == 9999
        assert store.watermark_updates == []

    def test_empty_source_completes_without_batches(self, make_context, store):
        result = FullLoadStrategy(make_context()).execute()

        assert result.batches == 0
        assert result.rows_inserted == 0
        assert store.watermarks == {}

    def test_resumes_from_in_progress_checkpoint(self, make_context, source, destination, store, seed):
        seed(source, range(1, 2501))
        seed(destination, range(1, 1001))
        store.save_checkpoint(Checkpoint(
            source_table="users",
            destination_table="users",
            mode="full",
            primary_key_column="id",
            last_processed_key=1000,
            batch_number=1,
            rows_processed=1000,
            rows_inserted=1000,
        ))
        store.saved_checkpoints.clear()

        result = FullLoadStrategy(make_context()).execute()

        assert result.batch_sizes == [1000, 500]
        assert result.rows_inserted == 2500
        assert result.rows_failed == 0
        assert [cp.batch_number for cp in store.saved_checkpoints] == [2, 3]
        assert destination_ids(destination) == list(range(1, 2501))

    def test_checkpoint_for_other_key_is_discarded(self, make_context, source, destination, store, seed):
        seed(source, range(1, 11))
        store.save_checkpoint(Checkpoint(
            source_table="users",
            destination_table="users",
            mode="full",
            primary_key_column="legacy_id",
            last_processed_key=5,
            batch_number=1,
        ))

        result = FullLoadStrategy(make_context(batch_size=5)).execute()

        assert result.rows_inserted == 10
        assert destination.count("users") == 10

    def test_offset_pagination_without_key_column(self, make_context, source, destination, store, seed):
        seed(source, range(1, 11))

        result = FullLoadStrategy(
            make_context(source_query='SELECT "name", "is_deleted" FROM "users"', batch_size=4)
        ).execute()

        assert result.batch_sizes == [4, 4, 2]
        assert result.rows_inserted == 10
        assert destination.count("users") == 10
        assert store.saved_checkpoints[-1].primary_key_column is None
        assert store.watermarks == {}

    def test_offset_pagination_discards_old_checkpoint(self, make_context, source, destination, store, seed):
        seed(source, range(1, 11))
        store.save_checkpoint(Checkpoint(
            source_table="users",
            destination_table="users",
            mode="full",
            primary_key_column="id",
            last_processed_key=4,
            batch_number=1,
        ))

        result = FullLoadStrategy(
            make_context(source_query='SELECT "name", "is_deleted" FROM "users"', batch_size=4)
        ).execute()

        assert result.rows_inserted == 10
        assert destination.count("users") == 10

    def test_row_failure_is_contained(self, make_context, source, destination, seed):
        seed(source, range(1, 11))
        seed(destination, [5])

        result = FullLoadStrategy(make_context()).execute()

        assert result.rows_processed == 10
        assert result.rows_inserted == 9
        assert result.rows_failed == 1
        assert result.errors[0].ref == 5
        assert "UNIQUE" in str(result.errors[0])
        assert destination.count("users") == 10

    def test_transient_error_recovers_within_retries(self, make_context, source, destination, seed):
        seed(source, range(1, 11))
        destination.fail_when(insert_for_id(7), ConnectionError("connection reset by peer"), times=2)

        result = FullLoadStrategy(make_context()).execute()

        assert result.rows_inserted == 10
        assert result.rows_failed == 0
        inserts = [sql for sql in destination.executed if sql.startswith("INSERT")]
        assert len(inserts) == 12

    def test_persistent_transient_error_rolls_back_batch(self, make_context, source, destination, store, seed):
        seed(source, range(1, 11))
        destination.fail_when(insert_for_id(7), ConnectionError("connection reset by peer"))

        with pytest.raises(BatchTransactionError) as exc_info:
            FullLoadStrategy(make_context(batch_size=5)).execute()

        assert exc_info.value.batch_number == 2
        assert destination_ids(destination) == [1, 2, 3, 4, 5]
        checkpoint = store.checkpoints[PAIR + ("full",)]
        assert checkpoint.status == STATUS_IN_PROGRESS
        assert checkpoint.last_processed_key == 5
        assert checkpoint.batch_number == 1


class TestIncrementalLoad:
    """Test the incremental load strategy."""

    def test_loads_rows_above_watermark(self, make_context, source, destination, store, seed):
        seed(source, range(1, 511))
        seed(destination, range(1, 501))
        store.watermarks[PAIR + ("id",)] = 500

        result = IncrementalLoadStrategy(make_context()).execute()

        assert result.mode == SyncMode.INCREMENTAL
        assert result.rows_inserted == 10
        assert result.batch_sizes == [10]
        assert result.last_key == 510
        assert store.watermarks[PAIR + ("id",)] == 510
        assert destination_ids(destination) == list(range(1, 511))

    def test_watermark_advances_after_each_batch(self, make_context, source, store, seed):
        seed(source, range(1, 11))

        result = IncrementalLoadStrategy(make_context(batch_size=3)).execute()

        assert result.batch_sizes == [3, 3, 3, 1]
        assert store.watermark_updates == [3, 6, 9, 10]
        assert store.checkpoints[PAIR + ("incremental",)].status == STATUS_COMPLETED

    def test_no_new_rows_leaves_watermark_untouched(self, make_context, source, store, seed):
        seed(source, range(1, 511))
        store.watermarks[PAIR + ("id",)] = 600

        result = IncrementalLoadStrategy(make_context()).execute()

        assert result.batches == 0
        assert result.last_key == 600
        assert store.watermark_updates == []
        assert store.checkpoints == {}

    def test_failed_row_does_not_hold_back_watermark(self, make_context, source, destination, store, seed):
        seed(source, range(501, 511))
        seed(destination, [505])
        store.watermarks[PAIR + ("id",)] = 500

        result = IncrementalLoadStrategy(make_context()).execute()

        assert result.rows_processed == 10
        assert result.rows_inserted == 9
        assert [err.ref for err in result.errors] == [505]
        assert store.watermarks[PAIR + ("id",)] == 510

    def test_requires_key_in_query(self, make_context):
        context = make_context(source_query='SELECT "name" FROM "users"')

        with pytest.raises(ConfigurationError, match="not returned by the source query"):
            IncrementalLoadStrategy(context).execute()


class TestDeltaLoad:
    """Test the delta (deletion) strategy."""

    def test_deletes_flagged_rows(self, make_context, source, destination, store, seed):
        seed(source, range(1, 13), deleted=(7, 9, 12))
        seed(destination, range(1, 13))

        result = DeltaLoadStrategy(make_context()).execute()

        assert result.mode == SyncMode.DELTA
        assert result.rows_deleted == 3
        assert result.rows_failed == 0
        assert destination_ids(destination) == [1, 2, 3, 4, 5, 6, 8, 10, 11]
        assert store.get_unprocessed_deleted_records(*PAIR) == []
        assert sorted(rid for (_, _, rid) in store.tombstones) == [7, 9, 12]

    def test_deletes_in_chunks_of_batch_size(self, make_context, source, destination, seed):
        seed(source, range(1, 13), deleted=(7, 9, 12))
        seed(destination, range(1, 13))

        result = DeltaLoadStrategy(make_context(batch_size=2)).execute()

        assert result.batch_sizes == [2, 1]
        assert result.rows_deleted == 3

    def test_counts_rows_actually_deleted(self, make_context, source, destination, seed):
        seed(source, range(1, 13), deleted=(7, 9, 12))
        seed(destination, [1, 2, 7])

        result = DeltaLoadStrategy(make_context()).execute()

        assert result.rows_processed == 3
        assert result.rows_deleted == 1
        assert destination_ids(destination) == [1, 2]

    def test_retries_pending_tombstones(self, make_context, source, destination, store, seed):
        seed(source, range(1, 11), deleted=(7,))
        seed(destination, range(1, 11))
        store.add_deleted_records("users", "users", [3])

        result = DeltaLoadStrategy(make_context()).execute()

        assert result.rows_deleted == 2
        assert destination_ids(destination) == [1, 2, 4, 5, 6, 8, 9, 10]
        assert store.get_unprocessed_deleted_records(*PAIR) == []

    def test_failed_delete_is_recorded_and_marked_processed(self, make_context, source, destination, store, seed):
        seed(source, range(1, 13), deleted=(7, 9, 12))
        seed(destination, range(1, 13))
        destination.fail_when(
            lambda sql, params: sql.startswith("DELETE") and params == (9,),
            ValueError("permission denied for table users"),
        )

        result = DeltaLoadStrategy(make_context()).execute()

        assert result.rows_deleted == 2
        assert [err.ref for err in result.errors] == [9]
        assert 9 in destination_ids(destination)
        assert store.get_unprocessed_deleted_records(*PAIR) == []

    def test_nothing_flagged(self, make_context, source, destination, store, seed):
        seed(source, range(1, 6))
        seed(destination, range(1, 6))

        result = DeltaLoadStrategy(make_context()).execute()

        assert result.batches == 0
        assert result.rows_deleted == 0
        assert store.tombstones == {}
        assert destination.count("users") == 5

    def test_requires_flag_column(self, make_context):
        with pytest.raises(ConfigurationError, match="deleted flag column"):
            DeltaLoadStrategy(make_context(deleted_flag_column=None)).execute()


class TestBatching:
    """Test batch counts and ordering for keyset loads."""

    @pytest.mark.parametrize("strategy_class", [FullLoadStrategy, IncrementalLoadStrategy])
    @pytest.mark.parametrize("rows,batch_size", [
        (0, 3),
        (1, 1),
        (5, 1),
        (6, 3),
        (7, 3),
        (3, 10),
        (10, 10),
    ])
    def test_moves_every_row_in_ceil_batches(
        self, make_context, source, destination, seed, strategy_class, rows, batch_size
    ):
        seed(source, range(1, rows + 1))

        result = strategy_class(make_context(batch_size=batch_size)).execute()

        assert result.batches == math.ceil(rows / batch_size)
        assert result.rows_inserted == rows
        assert all(size == batch_size for size in result.batch_sizes[:-1])
        assert destination_ids(destination) == list(range(1, rows + 1))

    def test_batch_key_ranges_do_not_overlap(self, make_context, source, store, seed):
        seed(source, [3, 1, 8, 5, 13, 2, 21, 34, 55, 89])
        batches = []
        context = make_context(batch_size=3)
        apply = context.unit_of_work.apply

        def recording_apply(statements, batch_number=None):
            batches.append([statement.ref for statement in statements])
            return apply(statements, batch_number)

        context.unit_of_work.apply = recording_apply
        FullLoadStrategy(context).execute()

        assert [len(keys) for keys in batches] == [3, 3, 3, 1]
        for earlier, later in zip(batches, batches[1:]):
            assert max(earlier) < min(later)
        keys = [cp.last_processed_key for cp in store.saved_checkpoints]
        assert keys == sorted(set(keys))


class TestKeysetProgress:
    """Test that a keyset load never re-reads a batch it already wrote."""

    @pytest.fixture
    def items_context(self, sqlite_endpoint, store, make_config):
        source = sqlite_endpoint("source", ddl=ITEMS_DDL)
        destination = sqlite_endpoint("destination", ddl=ITEMS_DDL)
        source.insert_rows("items", ["k", "name"], [
            (None, "a"), (None, "b"), (None, "c"), (1, "d"), (2, "e"),
        ])
        context = LoadContext(
            config=make_config(
                source_table="items", destination_table="items", primary_key_column="k", batch_size=2
            ),
            source=source,
            destination=destination,
            store=store,
            unit_of_work=ResilientUnitOfWork(destination),
            source_query='SELECT * FROM "items"',
            primary_key_column="k",
        )
        return context

    @pytest.mark.parametrize("strategy_class", [FullLoadStrategy, IncrementalLoadStrategy])
    def test_batch_of_null_keys_aborts_before_writing(self, items_context, store, strategy_class):
        with pytest.raises(KeysetProgressError, match="no non-NULL 'k' values"):
            strategy_class(items_context).execute()

        assert items_context.destination.count("items") == 0
        assert store.saved_checkpoints == []
        assert store.watermark_updates == []

    def test_failed_run_keeps_partial_counts(self, make_context, source, destination, seed):
        seed(source, range(1, 11))
        destination.fail_when(insert_for_id(7), ConnectionError("connection reset by peer"))
        strategy = FullLoadStrategy(make_context(batch_size=3))

        with pytest.raises(BatchTransactionError):
            strategy.execute()

        assert strategy.result.batches == 2
        assert strategy.result.rows_inserted == 6
        assert strategy.result.rows_processed == 6


def event_times(count):
    start = datetime(2025, 3, 1, 8, 0)
    return [start + timedelta(minutes=15 * i) for i in range(count)]


class TestDriverTypedKeys:
    """Test Decimal and datetime keys through the stored checkpoint encoding."""

    @pytest.fixture
    def decimal_source(self, driver_typed_endpoint):
        return driver_typed_endpoint("source", "id", Decimal)

    @pytest.fixture
    def decimal_destination(self, driver_typed_endpoint):
        return driver_typed_endpoint("destination", "id", Decimal)

    def test_incremental_advances_decimal_watermark(
        self, make_context, decimal_source, decimal_destination, store, seed
    ):
        seed(decimal_source, range(1, 511))
        seed(decimal_destination, range(1, 501))
        store.update_last_processed_value("users", "users", "id", Decimal("500"))
        store.watermark_updates.clear()

        result = IncrementalLoadStrategy(
            make_context(src=decimal_source, dst=decimal_destination, batch_size=4)
        ).execute()

        assert result.batch_sizes == [4, 4, 2]
        assert result.rows_failed == 0
        assert store.watermark_updates == [Decimal("504"), Decimal("508"), Decimal("510")]
        assert all(isinstance(value, Decimal) for value in store.watermark_updates)
        assert destination_ids(decimal_destination) == list(range(1, 511))

    def test_next_incremental_run_finds_nothing(
        self, make_context, decimal_source, decimal_destination, store, seed
    ):
        seed(decimal_source, range(1, 11))
        IncrementalLoadStrategy(make_context(src=decimal_source, dst=decimal_destination)).execute()

        rerun = IncrementalLoadStrategy(make_context(src=decimal_source, dst=decimal_destination)).execute()

        assert rerun.batches == 0
        assert rerun.last_key == Decimal("10")
        assert decimal_destination.count("users") == 10

    def test_decimal_keys_stay_monotonic_across_interrupted_run(
        self, make_context, decimal_source, decimal_destination, store, seed
    ):
        seed(decimal_source, range(1, 11))
        decimal_destination.fail_when(
            lambda sql, params: sql.startswith("INSERT") and params[0] == Decimal("7"),
            ConnectionError("connection reset by peer"),
        )

        with pytest.raises(BatchTransactionError):
            FullLoadStrategy(make_context(src=decimal_source, dst=decimal_destination, batch_size=3)).execute()
        decimal_destination.clear_failures()
        resumed = FullLoadStrategy(
            make_context(src=decimal_source, dst=decimal_destination, batch_size=3)
        ).execute()

        keys = [cp.last_processed_key for cp in store.saved_checkpoints]
        assert keys == [Decimal("3"), Decimal("6"), Decimal("9"), Decimal("10")]
        assert all(isinstance(key, Decimal) for key in keys)
        assert resumed.batch_sizes == [3, 1]
        assert destination_ids(decimal_destination) == list(range(1, 11))
        assert store.watermarks[PAIR + ("id",)] == Decimal("10")

    def test_full_load_resumes_from_datetime_checkpoint(self, driver_typed_endpoint, store, make_config):
        source = driver_typed_endpoint("source", "created_at", datetime.fromisoformat, ddl=EVENTS_DDL)
        destination = driver_typed_endpoint("destination", "created_at", datetime.fromisoformat, ddl=EVENTS_DDL)
        times = event_times(10)
        source.insert_rows(
            "events", ["created_at", "name"], [(t.isoformat(), f"event-{i}") for i, t in enumerate(times)]
        )
        store.save_checkpoint(Checkpoint(
            source_table="events",
            destination_table="events",
            mode="full",
            primary_key_column="created_at",
            last_processed_key=times[3],
            batch_number=2,
            rows_processed=4,
            rows_inserted=4,
        ))
        store.saved_checkpoints.clear()
        context = LoadContext(
            config=make_config(
                source_table="events",
                destination_table="events",
                primary_key_column="created_at",
                batch_size=3,
            ),
            source=source,
            destination=destination,
            store=store,
            unit_of_work=ResilientUnitOfWork(destination),
            source_query='SELECT * FROM "events"',
            primary_key_column="created_at",
        )

        result = FullLoadStrategy(context).execute()

        assert result.batch_sizes == [3, 3]
        assert result.rows_inserted == 10
        assert [cp.last_processed_key for cp in store.saved_checkpoints] == [times[6], times[9]]
        assert all(isinstance(cp.last_processed_key, datetime) for cp in store.saved_checkpoints)
        assert destination.count("events") == 6
        assert store.watermarks[("events", "events", "created_at")] == times[9]


class TestBuildStrategy:
    """Test strategy lookup by mode."""

    @pytest.mark.parametrize("mode,expected", [
        ("full", FullLoadStrategy),
        ("INCREMENTAL", IncrementalLoadStrategy),
        (SyncMode.DELTA, DeltaLoadStrategy),
    ])
    def test_returns_strategy_for_mode(self, make_context, mode, expected):
        assert isinstance(build_strategy(mode, make_context()), expected)

    def test_rejects_unknown_mode(self, make_context):
        with pytest.raises(ConfigurationError, match="Invalid mode"):
            build_strategy("upsert", make_context())
