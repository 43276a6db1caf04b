"""
JSON storage for diu.

This module provides persistent storage for executions, packages and
statistics. Everything lives in a single JSON document.

Design Principles:
    - Append-only: Executions are only removed by retention cleanup
    - Crash-safe: Every write goes to <file>.tmp, is fsynced, then renamed
    - Consistent: Memory switches to a new document only after it is on disk
    - Single writer: Mutations hold the exclusive lock, reads share it

The document is small at personal scale, so every mutation rewrites the
whole file.
"""

import getpass
import logging
import os
import socket
import uuid
from collections.abc import Iterable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from diu import __version__
from diu.errors import (
    StorageClosedError,
    StorageLoadError,
    StorageNotFoundError,
    StorageRestoreError,
    StorageWriteError,
)
from diu.schema import (
    ExecutionRecord,
    PackageInfo,
    QueryFilters,
    Statistics,
    StorageDocument,
    StorageMetadata,
    as_utc,
)
from diu.store.locks import ReadWriteLock

logger = logging.getLogger(__name__)

DAY_FORMAT = "%Y-%m-%d"


def generate_execution_id(now: datetime | None = None) -> str:
    """Generate an execution id like exec_20240115_093000_a1b2c3."""
    now = now or datetime.now(UTC)
    return f"exec_{now.strftime('%Y%m%d_%H%M%S')}_{uuid.uuid4().hex[:6]}"


def _current_user() -> str:
    try:
        return getpass.getuser()
    except (OSError, KeyError):
        return ""


def empty_document() -> StorageDocument:
    """A fresh document stamped with this host and user."""
    now = datetime.now(UTC)
    return StorageDocument(
        metadata=StorageMetadata(
            created=now,
            last_updated=now,
            hostname=socket.gethostname(),
            user=_current_user(),
            diu_version=__version__,
        ),
    )


def most_active_day(executions: Iterable[ExecutionRecord]) -> str:
    """
    Busiest UTC calendar day as YYYY-MM-DD, or "" without executions.

    Ties go to the day that appears first in execution order.
    """
    counts: dict[str, int] = {}
    for record in executions:
        day = record.timestamp.strftime(DAY_FORMAT)
        counts[day] = counts.get(day, 0) + 1

    best_day = ""
    best_count = 0
    for day, count in counts.items():
        if count > best_count:
            best_day, best_count = day, count
    return best_day


def _matches(record: ExecutionRecord, filters: QueryFilters) -> bool:
    if filters.tool and record.tool != filters.tool:
        return False
    if filters.package and filters.package not in record.packages_affected:
        return False
    if filters.since is not None and record.timestamp < filters.since:
        return False
    if filters.until is not None and record.timestamp >= filters.until:
        return False
    return True


def _versions_by_name(versions: Any) -> dict[str, str]:
    """Map package name to version from metadata["versions"] entries."""
    if not isinstance(versions, list):
        return {}
    result = {}
    for entry in versions:
        name, sep, version = str(entry).rpartition("@")
        if sep and name and version:
            result[name] = version
    return result


class JSONStore:
    """
    JSON document storage for executions and package usage.

    Usage:
        store = JSONStore("~/.local/share/diu/executions.json")
        store.append(record)
        recent = store.query(QueryFilters(tool="npm", limit=10))
        store.close()

    Or use as context manager:
        with JSONStore(path, read_only=True) as store:
            ...
    """

    def __init__(self, path: str | Path, read_only: bool = False) -> None:
        """
        Load the document, creating it when it doesn't exist.

        Args:
            path: Path of the JSON document
            read_only: Never create or write the file; mutations raise

        Raises:
            StorageLoadError: If the file exists but can't be read or validated
        """
        self.path = Path(path).expanduser()
        self.read_only = read_only
        self._lock = ReadWriteLock()
        self._closed = False
        self._doc = self._load()

    @property
    def tmp_path(self) -> Path:
        return self.path.with_name(f"{self.path.name}.tmp")

    @property
    def closed(self) -> bool:
        return self._closed

    def _load(self) -> StorageDocument:
        if not self.path.exists():
            doc = empty_document()
            if not self.read_only:
                self._write_file(self.path, doc, "create")
                logger.info("Created storage file %s", self.path)
            return doc

        try:
            content = self.path.read_text(encoding="utf-8")
            return StorageDocument.model_validate_json(content)
        except (OSError, UnicodeDecodeError, ValidationError) as e:
            raise StorageLoadError(
                operation="load",
                path=str(self.path),
                underlying_error=str(e),
            ) from e

    def _write_file(self, target: Path, doc: StorageDocument, operation: str) -> None:
        """Write doc to target through a fsynced temporary file and a rename."""
        tmp = target.with_name(f"{target.name}.tmp")
        data = doc.model_dump_json(indent=2)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            with tmp.open("w", encoding="utf-8") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, target)
        except OSError as e:
            try:
                tmp.unlink(missing_ok=True)
            except OSError as cleanup_error:
                logger.warning("Could not remove %s: %s", tmp, cleanup_error)
            raise StorageWriteError(operation=operation, underlying_error=str(e)) from e

    def _check_writable(self, operation: str) -> None:
        if self.read_only or self._closed:
            raise StorageClosedError(operation=operation)

    def _commit(self, doc: StorageDocument, operation: str) -> None:
        """Persist doc, then make it the live document. Caller holds the write lock."""
        metadata = doc.metadata.model_copy(update={"last_updated": datetime.now(UTC)})
        doc = doc.model_copy(update={"metadata": metadata})
        self._write_file(self.path, doc, operation)
        self._doc = doc

    def close(self) -> None:
        """Flush the document a final time. Later mutations raise StorageClosedError."""
        with self._lock.write_lock():
            if self._closed:
                return
            try:
                if not self.read_only:
                    self._commit(self._doc, "close")
            finally:
                self._closed = True

    def __enter__(self) -> "JSONStore":
        """Enter context manager."""
        return self

    def __exit__(self, *args: Any) -> None:
        """Exit context manager."""
        self.close()

    # =========================================================================
    # Execution Operations
    # =========================================================================

    def append(self, record: ExecutionRecord) -> ExecutionRecord:
        """
        Store an execution and update statistics and package usage.

        Args:
            record: The execution; an id is assigned when it has none

        Returns:
            The stored record (with its id)

        Raises:
            StorageWriteError: If the document could not be written
            StorageClosedError: If the store is closed or read-only
        """
        with self._lock.write_lock():
            self._check_writable("append")
            if not record.id:
                record = record.model_copy(update={"id": generate_execution_id()})

            doc = self._doc
            executions = [*doc.executions, record]
            self._commit(
                doc.model_copy(update={
                    "executions": executions,
                    "packages": self._updated_packages(doc.packages, record),
                    "statistics": self._updated_statistics(doc.statistics, record, len(executions)),
                }),
                "append",
            )

        logger.debug("Stored %s (%s)", record.id, record.tool)
        return record

    @staticmethod
    def _updated_statistics(stats: Statistics, record: ExecutionRecord, total: int) -> Statistics:
        frequency = dict(stats.execution_frequency)
        frequency[record.tool] = frequency.get(record.tool, 0) + 1
        tools_used = stats.tools_used
        if record.tool not in tools_used:
            tools_used = [*tools_used, record.tool]
        return stats.model_copy(update={
            "total_executions": total,
            "tools_used": tools_used,
            "execution_frequency": frequency,
        })

    @staticmethod
    def _updated_packages(
        packages: dict[str, dict[str, PackageInfo]],
        record: ExecutionRecord,
    ) -> dict[str, dict[str, PackageInfo]]:
        names = [name for name in dict.fromkeys(record.packages_affected) if name]
        if not names:
            return packages

        versions = _versions_by_name(record.metadata.get("versions"))
        tool_packages = dict(packages.get(record.tool, {}))
        when = record.timestamp
        for name in names:
            existing = tool_packages.get(name)
            if existing is None:
                tool_packages[name] = PackageInfo(
                    name=name,
                    version=versions.get(name, ""),
                    tool=record.tool,
                    install_date=when,
                    last_used=when,
                    usage_count=1,
                )
            else:
                tool_packages[name] = existing.model_copy(update={
                    "version": versions.get(name, existing.version),
                    "last_used": max(existing.last_used, when),
                    "usage_count": existing.usage_count + 1,
                })

        return {**packages, record.tool: tool_packages}

    def query(self, filters: QueryFilters | None = None) -> list[ExecutionRecord]:
        """
        Query executions, newest first.

        Records with equal timestamps keep their insertion order.
        """
        filters = filters or QueryFilters()
        with self._lock.read_lock():
            results = [r for r in self._doc.executions if _matches(r, filters)]

        results.sort(key=lambda r: r.timestamp, reverse=True)
        results = results[filters.offset:]
        if filters.limit:
            results = results[:filters.limit]
        return results

    def get_execution(self, execution_id: str) -> ExecutionRecord:
        """
        Get one execution by id.

        Raises:
            StorageNotFoundError: If no execution has that id
        """
        with self._lock.read_lock():
            for record in self._doc.executions:
                if record.id == execution_id:
                    return record
        raise StorageNotFoundError(operation="get_execution", key=execution_id)

    def count(self) -> int:
        with self._lock.read_lock():
            return len(self._doc.executions)

    # =========================================================================
    # Package Operations
    # =========================================================================

    def get_package(self, tool: str, name: str) -> PackageInfo | None:
        with self._lock.read_lock():
            return self._doc.packages.get(tool, {}).get(name)

    def get_packages(self, tool: str | None = None) -> list[PackageInfo]:
        """List packages sorted by tool then name, optionally for one tool."""
        with self._lock.read_lock():
            packages = [
                info
                for tool_name, tool_packages in self._doc.packages.items()
                if tool is None or tool_name == tool
                for info in tool_packages.values()
            ]
        return sorted(packages, key=lambda p: (p.tool, p.name))

    def get_all_packages(self) -> dict[str, dict[str, PackageInfo]]:
        with self._lock.read_lock():
            return {tool: dict(packages) for tool, packages in self._doc.packages.items()}

    def record_installed(self, *packages: PackageInfo) -> int:
        """
        Merge discovered packages without touching usage counts.

        New entries start with a usage count of 0. Existing entries keep
        their count and their earliest install date.

        Returns:
            Number of packages that were not known before
        """
        if not packages:
            return 0

        with self._lock.write_lock():
            self._check_writable("record_installed")
            merged = {tool: dict(entries) for tool, entries in self._doc.packages.items()}
            added = 0
            for package in packages:
                tool_packages = merged.setdefault(package.tool, {})
                existing = tool_packages.get(package.name)
                if existing is None:
                    tool_packages[package.name] = package.model_copy(update={"usage_count": 0})
                    added += 1
                else:
                    tool_packages[package.name] = existing.model_copy(update={
                        "version": package.version or existing.version,
                        "install_date": min(existing.install_date, package.install_date),
                        "path": package.path or existing.path,
                        "dependencies": package.dependencies or existing.dependencies,
                    })
            self._commit(self._doc.model_copy(update={"packages": merged}), "record_installed")

        return added

    # =========================================================================
    # Statistics
    # =========================================================================

    def statistics(self) -> Statistics:
        with self._lock.read_lock():
            return self._doc.statistics

    def metadata(self) -> StorageMetadata:
        with self._lock.read_lock():
            return self._doc.metadata

    def recompute_most_active_day(self) -> str:
        """
        Recompute statistics.most_active_day from the executions.

        Read-only stores only update their in-memory copy.
        """
        with self._lock.write_lock():
            day = most_active_day(self._doc.executions)
            stats = self._doc.statistics.model_copy(update={"most_active_day": day})
            doc = self._doc.model_copy(update={"statistics": stats})
            if self.read_only:
                self._doc = doc
            else:
                self._check_writable("recompute_most_active_day")
                self._commit(doc, "recompute_most_active_day")
        return day

    # =========================================================================
    # Maintenance
    # =========================================================================

    def backup(self) -> Path:
        """
        Write a copy of the current document next to the live file.

        Returns:
            Path of the backup (<file>.backup.<YYYYmmdd_HHMMSS_ffffff>)
        """
        stamp = datetime.now(UTC).strftime("%Y%m%d_%H%M%S_%f")
        target = self.path.with_name(f"{self.path.name}.backup.{stamp}")
        with self._lock.read_lock():
            self._write_file(target, self._doc, "backup")
        logger.info("Backup written to %s", target)
        return target

    def restore(self, backup_path: str | Path) -> None:
        """
        Replace the whole document with the content of a backup.

        Raises:
            StorageRestoreError: If the backup is missing or invalid
        """
        backup_path = Path(backup_path).expanduser()
        if not backup_path.is_file():
            raise StorageRestoreError(
                operation="restore",
                path=str(backup_path),
                underlying_error="file not found",
            )
        try:
            doc = StorageDocument.model_validate_json(backup_path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, ValidationError) as e:
            raise StorageRestoreError(
                operation="restore",
                path=str(backup_path),
                underlying_error=str(e),
            ) from e

        with self._lock.write_lock():
            self._check_writable("restore")
            self._commit(doc, "restore")
        logger.info("Restored %d executions from %s", len(doc.executions), backup_path)

    def cleanup(self, before: datetime) -> int:
        """
        Remove executions at or before a cutoff.

        Only total_executions is recomputed; package aggregates and
        per-tool counters describe all history and are kept.

        Returns:
            Number of executions removed
        """
        before = as_utc(before)
        with self._lock.write_lock():
            self._check_writable("cleanup")
            kept = [r for r in self._doc.executions if r.timestamp > before]
            removed = len(self._doc.executions) - len(kept)
            if removed:
                stats = self._doc.statistics.model_copy(update={"total_executions": len(kept)})
                self._commit(
                    self._doc.model_copy(update={"executions": kept, "statistics": stats}),
                    "cleanup",
                )

        if removed:
            logger.info("Removed %d executions older than %s", removed, before.isoformat())
        return removed
