"""
Unit tests for JSON storage.

Tests cover:
- Document creation and loading
- Appending executions (ids, statistics, package usage)
- Queries (filters, ordering, paging)
- Crash safety of the write path
- Backup, restore and retention cleanup
- Read-only and closed stores
"""

import json
import threading
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from diu.errors import (
    StorageClosedError,
    StorageLoadError,
    StorageNotFoundError,
    StorageRestoreError,
    StorageWriteError,
)
from diu.schema import ExecutionRecord, PackageInfo, QueryFilters
from diu.store import ReadWriteLock
from diu.store import json_store as json_store_module
from diu.store.json_store import JSONStore, generate_execution_id, most_active_day

RecordFactory = Callable[..., ExecutionRecord]

BASE_TIME = datetime(2024, 1, 15, 9, 30, tzinfo=UTC)


# =============================================================================
# Test Fixtures
# =============================================================================


@pytest.fixture
def store_path(temp_dir: Path) -> Path:
    return temp_dir / "data" / "executions.json"


@pytest.fixture
def store(store_path: Path) -> JSONStore:
    """Create a store instance."""
    s = JSONStore(store_path)
    yield s
    s.close()


# =============================================================================
# Utility Function Tests
# =============================================================================


class TestUtilityFunctions:
    def test_execution_id_format(self) -> None:
        execution_id = generate_execution_id(datetime(2024, 1, 15, 9, 30, 5, tzinfo=UTC))
        prefix, date, time_part, suffix = execution_id.split("_")
        assert prefix == "exec"
        assert date == "20240115"
        assert time_part == "093005"
        assert len(suffix) == 6
        int(suffix, 16)

    def test_execution_ids_unique(self) -> None:
        assert len({generate_execution_id() for _ in range(100)}) == 100

    def test_most_active_day_empty(self) -> None:
        assert most_active_day([]) == ""

    def test_most_active_day_tie_goes_to_first(self, make_record: RecordFactory) -> None:
        records = [
            make_record(timestamp=BASE_TIME + timedelta(days=1)),
            make_record(timestamp=BASE_TIME),
            make_record(timestamp=BASE_TIME + timedelta(days=1, hours=1)),
            make_record(timestamp=BASE_TIME + timedelta(hours=1)),
        ]
        assert most_active_day(records) == "2024-01-16"

    def test_most_active_day_counts(self, make_record: RecordFactory) -> None:
        records = [
            make_record(timestamp=BASE_TIME),
            make_record(timestamp=BASE_TIME + timedelta(days=1)),
            make_record(timestamp=BASE_TIME + timedelta(days=1, hours=2)),
        ]
        assert most_active_day(records) == "2024-01-16"


# =============================================================================
# Loading Tests
# =============================================================================


class TestLoading:
    def test_creates_file(self, store: JSONStore, store_path: Path) -> None:
        assert store_path.exists()
        data = json.loads(store_path.read_text())
        assert data["version"] == "1.0.0"
        assert data["executions"] == []
        assert data["metadata"]["diu_version"]

    def test_last_updated_advances(self, store: JSONStore, make_record: RecordFactory) -> None:
        before = store.metadata()
        store.append(make_record())
        after = store.metadata()
        assert after.created == before.created
        assert after.last_updated >= before.last_updated

    def test_reload(self, store_path: Path, make_record: RecordFactory) -> None:
        with JSONStore(store_path) as first:
            first.append(make_record())
        with JSONStore(store_path) as second:
            assert second.count() == 1
            assert second.statistics().total_executions == 1

    def test_corrupt_file(self, store_path: Path) -> None:
        store_path.parent.mkdir(parents=True)
        store_path.write_text("{not json")
        with pytest.raises(StorageLoadError) as exc_info:
            JSONStore(store_path)
        assert exc_info.value.path == str(store_path)

    def test_invalid_document(self, store_path: Path) -> None:
        store_path.parent.mkdir(parents=True)
        store_path.write_text('{"executions": [{"command": "no tool"}]}')
        with pytest.raises(StorageLoadError):
            JSONStore(store_path)


# =============================================================================
# Append Tests
# =============================================================================


class TestAppend:
    def test_assigns_id(self, store: JSONStore, make_record: RecordFactory) -> None:
        stored = store.append(make_record())
        assert stored.id.startswith("exec_")
        assert store.get_execution(stored.id) == stored

    def test_keeps_existing_id(self, store: JSONStore, make_record: RecordFactory) -> None:
        stored = store.append(make_record(id="exec_custom"))
        assert stored.id == "exec_custom"

    def test_statistics(self, store: JSONStore, make_record: RecordFactory) -> None:
        store.append(make_record(tool="npm"))
        store.append(make_record(tool="go", command="go mod tidy"))
        store.append(make_record(tool="npm"))

        stats = store.statistics()
        assert stats.total_executions == 3
        assert stats.tools_used == ["npm", "go"]
        assert stats.execution_frequency == {"npm": 2, "go": 1}

    def test_total_matches_stored_count(self, store: JSONStore, make_record: RecordFactory) -> None:
        for i in range(25):
            store.append(make_record(tool=["npm", "go", "pip"][i % 3]))
        stats = store.statistics()
        assert stats.total_executions == store.count() == len(store.query()) == 25
        assert sum(stats.execution_frequency.values()) == 25

    def test_package_created(self, store: JSONStore, make_record: RecordFactory) -> None:
        store.append(make_record(packages_affected=["express"], timestamp=BASE_TIME))
        info = store.get_package("npm", "express")
        assert info is not None
        assert info.usage_count == 1
        assert info.install_date == BASE_TIME
        assert info.last_used == BASE_TIME

    def test_package_usage_counts(self, store: JSONStore, make_record: RecordFactory) -> None:
        store.append(make_record(packages_affected=["express", "lodash"]))
        store.append(make_record(packages_affected=["express"]))
        store.append(make_record(packages_affected=["express", "express"]))
        store.append(make_record(tool="pip", packages_affected=["express"]))

        assert store.get_package("npm", "express").usage_count == 3
        assert store.get_package("npm", "lodash").usage_count == 1
        assert store.get_package("pip", "express").usage_count == 1

    def test_usage_count_equals_naming_records(self, store: JSONStore, make_record: RecordFactory) -> None:
        names = ["a", "b", "c"]
        for i in range(12):
            store.append(make_record(packages_affected=names[: i % 3 + 1]))
        for name in names:
            naming = len(store.query(QueryFilters(package=name)))
            assert store.get_package("npm", name).usage_count == naming

    def test_version_from_metadata(self, store: JSONStore, make_record: RecordFactory) -> None:
        store.append(make_record(
            packages_affected=["express", "@types/node"],
            metadata={"versions": ["express@4.18.0", "@types/node@18"]},
        ))
        assert store.get_package("npm", "express").version == "4.18.0"
        assert store.get_package("npm", "@types/node").version == "18"

        store.append(make_record(packages_affected=["express"]))
        assert store.get_package("npm", "express").version == "4.18.0"

    def test_persisted_immediately(self, store: JSONStore, store_path: Path, make_record: RecordFactory) -> None:
        stored = store.append(make_record())
        data = json.loads(store_path.read_text())
        assert [e["id"] for e in data["executions"]] == [stored.id]
        assert data["statistics"]["total_executions"] == 1

    def test_concurrent_appends(self, store: JSONStore, make_record: RecordFactory) -> None:
        def worker() -> None:
            for _ in range(10):
                store.append(make_record(packages_affected=["express"]))

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert store.count() == 40
        assert store.statistics().total_executions == 40
        assert store.get_package("npm", "express").usage_count == 40


# =============================================================================
# Crash Safety Tests
# =============================================================================


class TestCrashSafety:
    def test_failed_rename_keeps_prior_document(
        self,
        store: JSONStore,
        store_path: Path,
        make_record: RecordFactory,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        first = store.append(make_record())
        before = store_path.read_text()

        def failing_replace(src, dst):
            raise OSError("simulated crash before rename")

        monkeypatch.setattr(json_store_module.os, "replace", failing_replace)
        with pytest.raises(StorageWriteError):
            store.append(make_record(command="npm install lodash"))

        assert store_path.read_text() == before
        assert not store.tmp_path.exists()
        assert [r.id for r in store.query()] == [first.id]
        assert store.statistics().total_executions == 1

        monkeypatch.undo()
        store.append(make_record(command="npm install lodash"))
        assert store.count() == 2

    def test_failed_write_removes_tmp(
        self,
        store: JSONStore,
        make_record: RecordFactory,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        def failing_fsync(fd):
            raise OSError("disk full")

        monkeypatch.setattr(json_store_module.os, "fsync", failing_fsync)
        with pytest.raises(StorageWriteError) as exc_info:
            store.append(make_record())
        assert exc_info.value.operation == "append"
        assert not store.tmp_path.exists()
        assert store.count() == 0


# =============================================================================
# Query Tests
# =============================================================================


class TestQuery:
    @pytest.fixture
    def populated(self, store: JSONStore, make_record: RecordFactory) -> JSONStore:
        for hours, tool, packages in [
            (0, "npm", ["express"]),
            (1, "go", ["github.com/spf13/cobra"]),
            (2, "npm", ["lodash"]),
            (3, "npm", ["express"]),
            (4, "pip", ["requests"]),
        ]:
            store.append(make_record(
                tool=tool,
                command=f"{tool} install",
                timestamp=BASE_TIME + timedelta(hours=hours),
                packages_affected=packages,
            ))
        return store

    def test_newest_first(self, populated: JSONStore) -> None:
        timestamps = [r.timestamp for r in populated.query()]
        assert timestamps == sorted(timestamps, reverse=True)

    def test_equal_timestamps_keep_insertion_order(self, store: JSONStore, make_record: RecordFactory) -> None:
        ids = [store.append(make_record(timestamp=BASE_TIME)).id for _ in range(3)]
        assert [r.id for r in store.query()] == ids

    def test_tool_filter(self, populated: JSONStore) -> None:
        assert {r.tool for r in populated.query(QueryFilters(tool="npm"))} == {"npm"}
        assert len(populated.query(QueryFilters(tool="npm"))) == 3

    def test_package_filter(self, populated: JSONStore) -> None:
        results = populated.query(QueryFilters(package="express"))
        assert len(results) == 2
        assert all("express" in r.packages_affected for r in results)

    def test_since_inclusive_until_exclusive(self, populated: JSONStore) -> None:
        filters = QueryFilters(since=BASE_TIME + timedelta(hours=1), until=BASE_TIME + timedelta(hours=3))
        results = populated.query(filters)
        assert [r.timestamp for r in results] == [
            BASE_TIME + timedelta(hours=2),
            BASE_TIME + timedelta(hours=1),
        ]

    def test_since_and_until_compose(self, populated: JSONStore) -> None:
        since = BASE_TIME + timedelta(hours=1)
        until = BASE_TIME + timedelta(hours=4)
        both = {r.id for r in populated.query(QueryFilters(since=since, until=until))}
        only_since = {r.id for r in populated.query(QueryFilters(since=since))}
        only_until = {r.id for r in populated.query(QueryFilters(until=until))}
        assert both == only_since & only_until

    def test_limit_and_offset(self, populated: JSONStore) -> None:
        everything = populated.query()
        assert populated.query(QueryFilters(limit=2)) == everything[:2]
        assert populated.query(QueryFilters(offset=1, limit=2)) == everything[1:3]
        assert populated.query(QueryFilters(limit=0)) == everything
        assert populated.query(QueryFilters(offset=10)) == []

    def test_get_execution_missing(self, store: JSONStore) -> None:
        with pytest.raises(StorageNotFoundError):
            store.get_execution("exec_missing")


# =============================================================================
# Package Tests
# =============================================================================


class TestPackages:
    def test_sorted_by_tool_then_name(self, store: JSONStore, make_record: RecordFactory) -> None:
        store.append(make_record(tool="pip", packages_affected=["requests"]))
        store.append(make_record(tool="npm", packages_affected=["lodash", "express"]))
        assert [(p.tool, p.name) for p in store.get_packages()] == [
            ("npm", "express"),
            ("npm", "lodash"),
            ("pip", "requests"),
        ]
        assert [p.name for p in store.get_packages("pip")] == ["requests"]
        assert set(store.get_all_packages()) == {"npm", "pip"}

    def test_record_installed(self, store: JSONStore, make_record: RecordFactory) -> None:
        store.append(make_record(packages_affected=["express"], timestamp=BASE_TIME))
        discovered_at = BASE_TIME + timedelta(days=1)
        added = store.record_installed(
            PackageInfo(name="express", version="4.19.2", tool="npm",
                        install_date=discovered_at, last_used=discovered_at, usage_count=99),
            PackageInfo(name="typescript", version="5.3.3", tool="npm",
                        install_date=discovered_at, last_used=discovered_at, usage_count=99),
        )
        assert added == 1

        express = store.get_package("npm", "express")
        assert express.usage_count == 1
        assert express.version == "4.19.2"
        assert express.install_date == BASE_TIME

        typescript = store.get_package("npm", "typescript")
        assert typescript.usage_count == 0
        assert store.statistics().total_executions == 1

    def test_record_installed_nothing(self, store: JSONStore) -> None:
        assert store.record_installed() == 0


# =============================================================================
# Statistics Tests
# =============================================================================


class TestMostActiveDay:
    def test_recompute_persists(self, store: JSONStore, store_path: Path, make_record: RecordFactory) -> None:
        store.append(make_record(timestamp=BASE_TIME))
        store.append(make_record(timestamp=BASE_TIME + timedelta(days=2)))
        store.append(make_record(timestamp=BASE_TIME + timedelta(days=2, hours=1)))
        assert store.statistics().most_active_day == ""

        assert store.recompute_most_active_day() == "2024-01-17"
        assert store.statistics().most_active_day == "2024-01-17"
        assert json.loads(store_path.read_text())["statistics"]["most_active_day"] == "2024-01-17"

    def test_recompute_read_only(self, store_path: Path, make_record: RecordFactory) -> None:
        with JSONStore(store_path) as writer:
            writer.append(make_record(timestamp=BASE_TIME))
        before = store_path.read_text()

        with JSONStore(store_path, read_only=True) as reader:
            assert reader.recompute_most_active_day() == "2024-01-15"
            assert reader.statistics().most_active_day == "2024-01-15"
        assert store_path.read_text() == before


# =============================================================================
# Backup / Restore Tests
# =============================================================================


class TestBackupRestore:
    def test_round_trip(self, store: JSONStore, make_record: RecordFactory) -> None:
        store.append(make_record(packages_affected=["express"]))
        store.append(make_record(tool="go", command="go get x", packages_affected=["x"]))
        snapshot_records = store.query()
        snapshot_packages = store.get_packages()
        snapshot_stats = store.statistics()

        backup_path = store.backup()
        assert backup_path.name.startswith("executions.json.backup.")
        assert backup_path.exists()

        store.append(make_record(packages_affected=["lodash"]))
        store.restore(backup_path)

        assert store.query() == snapshot_records
        assert store.get_packages() == snapshot_packages
        assert store.statistics() == snapshot_stats

    def test_restore_into_fresh_store(
        self, store: JSONStore, temp_dir: Path, make_record: RecordFactory
    ) -> None:
        store.append(make_record(packages_affected=["express"], metadata={"versions": ["express@4.18.2"]}))
        store.append(make_record(tool="go", command="go get x", packages_affected=["x"]))
        store.recompute_most_active_day()
        backup_path = store.backup()

        other_path = temp_dir / "other" / "executions.json"
        with JSONStore(other_path) as fresh:
            assert fresh.count() == 0
            fresh.restore(backup_path)
            assert fresh.query() == store.query()
            assert fresh.statistics() == store.statistics()
            assert fresh.get_all_packages() == store.get_all_packages()

        with JSONStore(other_path, read_only=True) as reloaded:
            assert reloaded.query() == store.query()
            assert reloaded.statistics() == store.statistics()

    def test_backup_leaves_live_file(self, store: JSONStore, store_path: Path, make_record: RecordFactory) -> None:
        store.append(make_record())
        before = store_path.read_text()
        store.backup()
        assert store_path.read_text() == before

    def test_restore_missing(self, store: JSONStore, temp_dir: Path) -> None:
        with pytest.raises(StorageRestoreError):
            store.restore(temp_dir / "missing.json")

    def test_restore_invalid(self, store: JSONStore, temp_dir: Path, make_record: RecordFactory) -> None:
        store.append(make_record())
        bad = temp_dir / "bad.json"
        bad.write_text("[1, 2, 3]")
        with pytest.raises(StorageRestoreError):
            store.restore(bad)
        assert store.count() == 1


# =============================================================================
# Cleanup Tests
# =============================================================================


class TestCleanup:
    def test_removes_old_records(self, store: JSONStore, make_record: RecordFactory) -> None:
        now = datetime.now(UTC)
        store.append(make_record(timestamp=now - timedelta(hours=48), packages_affected=["old"]))
        store.append(make_record(timestamp=now - timedelta(hours=30)))
        recent = store.append(make_record(timestamp=now - timedelta(hours=1)))

        removed = store.cleanup(now - timedelta(hours=24))
        assert removed == 2
        assert [r.id for r in store.query()] == [recent.id]
        assert store.statistics().total_executions == 1
        assert store.get_package("npm", "old") is not None

    def test_cutoff_is_inclusive(self, store: JSONStore, make_record: RecordFactory) -> None:
        store.append(make_record(timestamp=BASE_TIME))
        assert store.cleanup(BASE_TIME) == 1

    def test_nothing_to_remove(self, store: JSONStore, make_record: RecordFactory) -> None:
        store.append(make_record(timestamp=BASE_TIME))
        assert store.cleanup(BASE_TIME - timedelta(days=1)) == 0
        assert store.count() == 1


# =============================================================================
# Read-only / Closed Tests
# =============================================================================


class TestReadOnlyAndClosed:
    def test_read_only_missing_file(self, store_path: Path) -> None:
        with JSONStore(store_path, read_only=True) as store:
            assert store.query() == []
        assert not store_path.exists()

    def test_read_only_rejects_mutation(self, store_path: Path, make_record: RecordFactory) -> None:
        store = JSONStore(store_path, read_only=True)
        with pytest.raises(StorageClosedError):
            store.append(make_record())
        with pytest.raises(StorageClosedError):
            store.cleanup(BASE_TIME)

    def test_closed_rejects_mutation(self, store_path: Path, make_record: RecordFactory) -> None:
        store = JSONStore(store_path)
        store.close()
        assert store.closed
        with pytest.raises(StorageClosedError):
            store.append(make_record())

    def test_close_is_idempotent(self, store_path: Path) -> None:
        store = JSONStore(store_path)
        store.close()
        store.close()

    def test_reads_after_close(self, store_path: Path, make_record: RecordFactory) -> None:
        store = JSONStore(store_path)
        store.append(make_record())
        store.close()
        assert store.count() == 1


# =============================================================================
# Lock Tests
# =============================================================================


class TestReadWriteLock:
    def test_readers_share(self) -> None:
        lock = ReadWriteLock()
        inside = threading.Barrier(2, timeout=2)

        def reader() -> None:
            with lock.read_lock():
                inside.wait()

        threads = [threading.Thread(target=reader) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=3)
        assert not any(t.is_alive() for t in threads)

    def test_writer_excludes_readers(self) -> None:
        lock = ReadWriteLock()
        events: list[str] = []
        lock.acquire_write()

        def reader() -> None:
            with lock.read_lock():
                events.append("read")

        t = threading.Thread(target=reader)
        t.start()
        t.join(timeout=0.2)
        assert events == []

        events.append("write-done")
        lock.release_write()
        t.join(timeout=2)
        assert events == ["write-done", "read"]
