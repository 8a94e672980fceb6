"""
In-process progress reporting for long-running sync passes.

The orchestrator only depends on the ``ProgressReporter`` methods; any failure
inside a reporter is logged and ignored so progress never affects a pass.
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections import OrderedDict
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Dict, Protocol

from flask import current_app

logger = logging.getLogger(__name__)

MAX_FINISHED_SNAPSHOTS = 100


class ProgressReporter(Protocol):
    def start_sync(self, mapping_id: int, label: str, total: int, *, connection_id: int | None = None) -> str: ...

    def report_progress(self, sync_id: str, processed: int, message: str | None = None) -> None: ...

    def report_success(self, sync_id: str) -> None: ...

    def report_failure(self, sync_id: str, error_message: str | None = None) -> None: ...

    def complete_sync(self, sync_id: str, success: bool, message: str | None = None) -> None: ...


@dataclass
class SyncProgress:
    sync_id: str
    mapping_id: int
    connection_id: int | None
    label: str
    total_records: int
    current_record: int = 0
    percent_complete: int = 0
    status: str = "InProgress"
    success_count: int = 0
    failed_count: int = 0
    current_operation: str | None = None
    error_message: str | None = None
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: datetime | None = None

    def as_dict(self) -> dict[str, object]:
        payload = asdict(self)
        payload["started_at"] = self.started_at.isoformat()
        payload["completed_at"] = self.completed_at.isoformat() if self.completed_at else None
        return payload


class SyncProgressTracker:
    """Thread-safe registry of active passes keyed by a short sync id."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._active: Dict[str, SyncProgress] = {}
        self._finished: "OrderedDict[str, SyncProgress]" = OrderedDict()

    def start_sync(self, mapping_id: int, label: str, total: int, *, connection_id: int | None = None) -> str:
        sync_id = uuid.uuid4().hex[:8]
        progress = SyncProgress(
            sync_id=sync_id,
            mapping_id=mapping_id,
            connection_id=connection_id,
            label=label,
            total_records=max(0, int(total)),
            current_operation=f"Starting sync for {label}...",
        )
        with self._lock:
            self._active[sync_id] = progress
        logger.info(
            "Started sync %s for %s with %s records",
            sync_id,
            label,
            total,
            extra={"crm_sync_id": sync_id, "crm_mapping_id": mapping_id},
        )
        return sync_id

    def report_progress(self, sync_id: str, processed: int, message: str | None = None) -> None:
        with self._lock:
            progress = self._active.get(sync_id)
            if progress is None:
                return
            progress.current_record = processed
            progress.current_operation = message
            if progress.total_records > 0:
                progress.percent_complete = min(100, round(processed / progress.total_records * 100))
            else:
                progress.percent_complete = 0

    def report_success(self, sync_id: str) -> None:
        with self._lock:
            progress = self._active.get(sync_id)
            if progress is not None:
                progress.success_count += 1

    def report_failure(self, sync_id: str, error_message: str | None = None) -> None:
        with self._lock:
            progress = self._active.get(sync_id)
            if progress is None:
                return
            progress.failed_count += 1
            if error_message is not None:
                progress.error_message = error_message

    def complete_sync(self, sync_id: str, success: bool, message: str | None = None) -> None:
        with self._lock:
            progress = self._active.pop(sync_id, None)
            if progress is None:
                return
            progress.status = "Completed" if success else "Failed"
            progress.percent_complete = 100
            progress.current_operation = message
            progress.completed_at = datetime.now(timezone.utc)
            self._finished[sync_id] = progress
            while len(self._finished) > MAX_FINISHED_SNAPSHOTS:
                self._finished.popitem(last=False)
        logger.debug(
            "Completed sync %s: success=%s processed=%s failed=%s",
            sync_id,
            success,
            progress.success_count,
            progress.failed_count,
        )

    def get(self, sync_id: str) -> dict[str, object] | None:
        with self._lock:
            progress = self._active.get(sync_id) or self._finished.get(sync_id)
            return progress.as_dict() if progress else None

    def active(self) -> list[dict[str, object]]:
        with self._lock:
            return [progress.as_dict() for progress in self._active.values()]


PROGRESS_EXTENSION_KEY = "crm_sync_progress"


def get_progress_tracker() -> SyncProgressTracker:
    """Return the app-wide tracker, creating it on first use."""

    return current_app.extensions.setdefault(PROGRESS_EXTENSION_KEY, SyncProgressTracker())


def should_report(processed: int, total: int, interval: int) -> bool:
    """Tick on the first record, every ``interval`` records, and the last one."""

    interval = max(1, int(interval))
    return processed == 1 or processed % interval == 0 or processed == total


class SafeReporter:
    """Wraps a reporter so its failures are logged and never propagate."""

    def __init__(self, reporter: ProgressReporter | None) -> None:
        self.reporter = reporter

    def start_sync(self, mapping_id: int, label: str, total: int, *, connection_id: int | None = None) -> str | None:
        if self.reporter is None:
            return None
        try:
            return self.reporter.start_sync(mapping_id, label, total, connection_id=connection_id)
        except Exception as exc:
            logger.warning("Progress reporter failed to start sync for %s: %s", label, exc)
            return None

    def _call(self, name: str, sync_id: str | None, *args) -> None:
        if self.reporter is None or sync_id is None:
            return
        try:
            getattr(self.reporter, name)(sync_id, *args)
        except Exception as exc:
            logger.warning("Progress reporter %s failed for %s: %s", name, sync_id, exc)

    def report_progress(self, sync_id: str | None, processed: int, message: str | None = None) -> None:
        self._call("report_progress", sync_id, processed, message)

    def report_success(self, sync_id: str | None) -> None:
        self._call("report_success", sync_id)

    def report_failure(self, sync_id: str | None, error_message: str | None = None) -> None:
        self._call("report_failure", sync_id, error_message)

    def complete_sync(self, sync_id: str | None, success: bool, message: str | None = None) -> None:
        self._call("complete_sync", sync_id, success, message)


__all__ = [
    "ProgressReporter",
    "SyncProgress",
    "SyncProgressTracker",
    "SafeReporter",
    "get_progress_tracker",
    "should_report",
]
