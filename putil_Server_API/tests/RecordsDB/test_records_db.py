# test_records_db.py
# Description: Tests for the record store: schema, server clock, guarded writes and scanner bookkeeping.
#
# Imports
import sqlite3
from datetime import datetime, timedelta, timezone
#
# 3rd-party Libraries
import pytest
#
# Local Imports
from putil_Server_API.app.core.DB_Management.Records_DB import (
    ConflictError,
    InputError,
    RecordsDB,
    RecordsDBError,
    format_db_timestamp,
    parse_db_timestamp,
)
#
########################################################################################################################

OWNER = 1
OTHER_OWNER = 2
T0 = datetime(2024, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


def _insert_task(db: RecordsDB, client_key: str = "task-1", owner_id: int = OWNER, **fields) -> int:
    fields.setdefault("title", "Write report")
    with db.transaction(immediate=True) as conn:
        ts = db.next_transaction_timestamp(conn, T0)
        return db.insert_record(conn, "tasks", owner_id, client_key, fields, ts, "device-a")


def _row(db: RecordsDB, table: str, record_id: int, owner_id: int = OWNER):
    return db.get_record(db.get_connection(), table, owner_id, record_id)


class TestSchema:

    def test_schema_version_recorded(self, records_db):
        cursor = records_db.execute_query("SELECT version FROM db_schema_version WHERE schema_name = ?",
                                          ("putil_records_schema",))
        assert cursor.fetchone()["version"] == 1

    def test_reopen_existing_file_keeps_data(self, records_db):
        record_id = _insert_task(records_db)
        reopened = RecordsDB(records_db.db_path, client_id="second-instance")
        try:
            assert _row(reopened, "tasks", record_id)["title"] == "Write report"
        finally:
            reopened.close_all_connections()

    def test_payload_columns_exclude_server_managed(self, records_db):
        columns = records_db.payload_columns("tasks")
        assert "title" in columns and "due_date" in columns
        for managed in ("id", "owner_id", "revision", "changed_at", "deleted", "reminder_notified_at"):
            assert managed not in columns

    def test_empty_client_id_rejected(self, tmp_path):
        with pytest.raises(ValueError, match="Client ID cannot be empty"):
            RecordsDB(tmp_path / "x.db", client_id="")

    def test_unknown_table_rejected(self, records_db):
        with pytest.raises(InputError):
            records_db.get_record(records_db.get_connection(), "users", OWNER, 1)


class TestServerClock:

    def test_timestamps_strictly_increase_when_host_clock_steps_back(self, records_db):
        with records_db.transaction(immediate=True) as conn:
            first = records_db.next_transaction_timestamp(conn, T0)
            second = records_db.next_transaction_timestamp(conn, T0 - timedelta(minutes=5))
            third = records_db.next_transaction_timestamp(conn, T0)
        assert first < second < third
        assert parse_db_timestamp(second) - parse_db_timestamp(first) == timedelta(microseconds=1)

    def test_clock_follows_host_when_ahead(self, records_db):
        with records_db.transaction(immediate=True) as conn:
            records_db.next_transaction_timestamp(conn, T0)
            later = records_db.next_transaction_timestamp(conn, T0 + timedelta(hours=1))
        assert later == format_db_timestamp(T0 + timedelta(hours=1))

    def test_clock_survives_restart(self, records_db):
        with records_db.transaction(immediate=True) as conn:
            first = records_db.next_transaction_timestamp(conn, T0)
        reopened = RecordsDB(records_db.db_path, client_id="restarted")
        try:
            with reopened.transaction(immediate=True) as conn:
                after_restart = reopened.next_transaction_timestamp(conn, T0 - timedelta(days=1))
        finally:
            reopened.close_all_connections()
        assert after_restart > first


class TestGuardedWrites:

    def test_insert_starts_at_revision_one(self, records_db):
        row = _row(records_db, "tasks", _insert_task(records_db))
        assert row["revision"] == 1
        assert row["deleted"] == 0
        assert row["created_at"] == row["changed_at"]
        assert row["client_device_id"] == "device-a"

    def test_duplicate_client_key_is_conflict(self, records_db):
        _insert_task(records_db, "dup")
        with pytest.raises(ConflictError):
            _insert_task(records_db, "dup")

    def test_same_client_key_allowed_for_other_owner(self, records_db):
        _insert_task(records_db, "shared")
        other_id = _insert_task(records_db, "shared", owner_id=OTHER_OWNER)
        assert _row(records_db, "tasks", other_id, OTHER_OWNER)["owner_id"] == OTHER_OWNER

    def test_update_bumps_revision_and_changed_at(self, records_db):
        record_id = _insert_task(records_db)
        with records_db.transaction(immediate=True) as conn:
            ts = records_db.next_transaction_timestamp(conn, T0 + timedelta(seconds=1))
            new_revision = records_db.update_record(conn, "tasks", OWNER, record_id, 1, {"title": "Edited"}, ts,
                                                    "device-b")
        row = _row(records_db, "tasks", record_id)
        assert new_revision == 2
        assert row["revision"] == 2
        assert row["title"] == "Edited"
        assert row["changed_at"] == ts
        assert row["client_device_id"] == "device-b"

    def test_update_with_stale_revision_raises_conflict(self, records_db):
        record_id = _insert_task(records_db)
        with pytest.raises(ConflictError):
            with records_db.transaction(immediate=True) as conn:
                ts = records_db.next_transaction_timestamp(conn)
                records_db.update_record(conn, "tasks", OWNER, record_id, 5, {"title": "x"}, ts, None)
        assert _row(records_db, "tasks", record_id)["revision"] == 1

    def test_update_rejects_server_managed_column(self, records_db):
        record_id = _insert_task(records_db)
        with pytest.raises(InputError):
            with records_db.transaction(immediate=True) as conn:
                ts = records_db.next_transaction_timestamp(conn)
                records_db.update_record(conn, "tasks", OWNER, record_id, 1, {"revision": 9}, ts, None)

    def test_update_clears_requested_stamp(self, records_db):
        record_id = _insert_task(records_db, reminder_time=format_db_timestamp(T0))
        with records_db.transaction(immediate=True) as conn:
            assert records_db.mark_notified(conn, "tasks", "reminder_notified_at", record_id, format_db_timestamp(T0))
            ts = records_db.next_transaction_timestamp(conn)
            records_db.update_record(conn, "tasks", OWNER, record_id, 1,
                                     {"reminder_time": format_db_timestamp(T0 + timedelta(days=1))}, ts, None,
                                     clear_columns=("reminder_notified_at",))
        assert _row(records_db, "tasks", record_id)["reminder_notified_at"] is None

    def test_tombstone_is_permanent(self, records_db):
        record_id = _insert_task(records_db)
        with records_db.transaction(immediate=True) as conn:
            ts = records_db.next_transaction_timestamp(conn)
            assert records_db.tombstone_record(conn, "tasks", OWNER, record_id, 1, ts, "device-a") == 2

        row = _row(records_db, "tasks", record_id)
        assert row["deleted"] == 1
        assert row["deleted_at"] == row["changed_at"]

        # Guarded writes refuse the tombstone...
        with pytest.raises(ConflictError):
            with records_db.transaction(immediate=True) as conn:
                ts = records_db.next_transaction_timestamp(conn)
                records_db.update_record(conn, "tasks", OWNER, record_id, 2, {"title": "revive"}, ts, None)
        # ...and the SQL trigger refuses a raw undelete.
        with pytest.raises(RecordsDBError, match="tombstone is permanent"):
            with records_db.transaction() as conn:
                records_db._execute(conn, "UPDATE tasks SET deleted = 0 WHERE id = ?", (record_id,))
        assert _row(records_db, "tasks", record_id)["deleted"] == 1

    def test_revision_cannot_decrease(self, records_db):
        record_id = _insert_task(records_db)
        with pytest.raises(RecordsDBError, match="revision must not decrease"):
            with records_db.transaction() as conn:
                records_db._execute(conn, "UPDATE tasks SET revision = 0 WHERE id = ?", (record_id,))

    def test_failed_transaction_rolls_back_every_write(self, records_db):
        with pytest.raises(RuntimeError):
            with records_db.transaction(immediate=True) as conn:
                ts = records_db.next_transaction_timestamp(conn, T0)
                records_db.insert_record(conn, "tasks", OWNER, "rolled-back", {"title": "x"}, ts, None)
                raise RuntimeError("boom")
        assert records_db.get_record_by_client_key(records_db.get_connection(), "tasks", OWNER, "rolled-back") is None


class TestChangesSince:

    def test_lists_rows_after_watermark_oldest_first(self, records_db):
        first = _insert_task(records_db, "a")
        with records_db.transaction() as conn:
            watermark = records_db._execute(conn, "SELECT changed_at FROM tasks WHERE id = ?",
                                            (first,)).fetchone()["changed_at"]
        second = _insert_task(records_db, "b")
        third = _insert_task(records_db, "c")
        conn = records_db.get_connection()

        all_rows = records_db.list_changes_since(conn, "tasks", OWNER, None)
        assert [r["id"] for r in all_rows] == [first, second, third]

        after = records_db.list_changes_since(conn, "tasks", OWNER, watermark)
        assert [r["id"] for r in after] == [second, third]

        excluded = records_db.list_changes_since(conn, "tasks", OWNER, watermark, exclude_ids={third})
        assert [r["id"] for r in excluded] == [second]

    def test_scoped_to_owner(self, records_db):
        _insert_task(records_db, "mine")
        _insert_task(records_db, "theirs", owner_id=OTHER_OWNER)
        rows = records_db.list_changes_since(records_db.get_connection(), "tasks", OWNER, None)
        assert [r["client_key"] for r in rows] == ["mine"]


class TestTriggerBookkeeping:

    def test_mark_notified_only_once(self, records_db):
        record_id = _insert_task(records_db, reminder_time=format_db_timestamp(T0))
        with records_db.transaction(immediate=True) as conn:
            assert records_db.mark_notified(conn, "tasks", "reminder_notified_at", record_id, "stamp-1")
            assert not records_db.mark_notified(conn, "tasks", "reminder_notified_at", record_id, "stamp-2")
        assert _row(records_db, "tasks", record_id)["reminder_notified_at"] == "stamp-1"

    def test_mark_notified_requires_stamp_column(self, records_db):
        record_id = _insert_task(records_db)
        with pytest.raises(InputError):
            with records_db.transaction() as conn:
                records_db.mark_notified(conn, "tasks", "title", record_id, "x")

    def test_select_due_one_shot_is_half_open(self, records_db):
        start, end = T0, T0 + timedelta(minutes=1)
        at_start = _insert_task(records_db, "start", reminder_time=format_db_timestamp(start))
        _insert_task(records_db, "end", reminder_time=format_db_timestamp(end))
        rows = records_db.select_due_one_shot(records_db.get_connection(), "tasks", "reminder_time",
                                              "reminder_notified_at", format_db_timestamp(start),
                                              format_db_timestamp(end))
        assert [r["id"] for r in rows] == [at_start]

    def test_advance_event_date_is_compare_and_set(self, records_db):
        with records_db.transaction(immediate=True) as conn:
            ts = records_db.next_transaction_timestamp(conn, T0)
            event_id = records_db.insert_record(conn, "events", OWNER, "ev", {
                "title": "Standup", "event_date": format_db_timestamp(T0), "is_recurring": 1,
                "recurrence_pattern": "daily"}, ts, "device-a")
        old_date = format_db_timestamp(T0)
        new_date = format_db_timestamp(T0 + timedelta(days=1))
        with records_db.transaction(immediate=True) as conn:
            ts = records_db.next_transaction_timestamp(conn)
            assert records_db.advance_event_date(conn, event_id, old_date, new_date, ts)
            assert not records_db.advance_event_date(conn, event_id, old_date, new_date, ts)
        row = _row(records_db, "events", event_id)
        assert row["event_date"] == new_date
        assert row["revision"] == 2
        assert row["client_device_id"] == records_db.client_id

    def test_scan_state_upsert(self, records_db):
        with records_db.transaction(immediate=True) as conn:
            assert records_db.get_scan_state(conn, "reminder") is None
            records_db.set_scan_state(conn, "reminder", "2024-03-01T12:00:00.000000Z")
            records_db.set_scan_state(conn, "reminder", "2024-03-01T12:01:00.000000Z")
        assert records_db.list_scan_state() == {"reminder": "2024-03-01T12:01:00.000000Z"}


class TestSyncLogAndSettings:

    def test_sync_log_round_trip(self, records_db):
        with records_db.transaction() as conn:
            records_db.append_sync_log(conn, OWNER, "tasks", 7, "k1", "update", "device-a", "conflict", "ts-1",
                                       conflict_data={"reason": "stale"})
            records_db.append_sync_log(conn, OWNER, "events", 8, "k2", "create", "device-a", "success", "ts-2")
            records_db.append_sync_log(conn, OTHER_OWNER, "tasks", 9, "k3", "create", None, "success", "ts-3")

        entries = records_db.get_sync_log_entries(OWNER)
        assert [e["client_key"] for e in entries] == ["k2", "k1"]
        assert entries[1]["conflict_data"] == {"reason": "stale"}
        assert entries[0]["conflict_data"] is None
        assert [e["client_key"] for e in records_db.get_sync_log_entries(OWNER, table="tasks")] == ["k1"]

    def test_sync_log_rejects_unknown_action(self, records_db):
        with pytest.raises(RecordsDBError):
            with records_db.transaction() as conn:
                records_db.append_sync_log(conn, OWNER, "tasks", 1, "k", "merge", None, "success", "ts")

    def test_owner_timezone(self, records_db):
        assert records_db.get_owner_timezone(OWNER) is None
        records_db.set_owner_timezone(OWNER, "Europe/Berlin")
        records_db.set_owner_timezone(OWNER, "America/New_York")
        assert records_db.get_owner_timezone(OWNER) == "America/New_York"
        assert records_db.get_owner_timezone(OTHER_OWNER) is None

    def test_raw_sqlite_error_is_wrapped(self, records_db):
        with pytest.raises(RecordsDBError):
            records_db.execute_query("SELECT * FROM no_such_table")
        assert issubclass(ConflictError, RecordsDBError)
        assert not issubclass(RecordsDBError, sqlite3.Error)

#
# End of test_records_db.py
########################################################################################################################
