"""Transient aggregates returned from sync passes."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import List


@dataclass
class SyncStats:
    """Per-pass record counters."""

    processed: int = 0
    created: int = 0
    updated: int = 0
    deleted: int = 0
    unchanged: int = 0
    failed: int = 0
    skipped: int = 0
    inbound: int = 0
    outbound: int = 0

    def merge(self, other: "SyncStats") -> None:
        for name in self.__dataclass_fields__:
            setattr(self, name, getattr(self, name) + getattr(other, name))

    def to_dict(self) -> dict[str, int]:
        return {name: getattr(self, name) for name in self.__dataclass_fields__}


@dataclass
class SyncResult:
    """Outcome of one orchestration run; never persisted."""

    message: str = ""
    stats: SyncStats = field(default_factory=SyncStats)
    errors: List[str] = field(default_factory=list)
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: datetime | None = None
    sync_id: str | None = None
    cancelled: bool = False

    @property
    def success(self) -> bool:
        return not self.errors

    @property
    def duration(self) -> timedelta:
        end = self.completed_at or datetime.now(timezone.utc)
        return end - self.started_at

    @classmethod
    def failure(cls, message: str) -> "SyncResult":
        result = cls(message=message, errors=[message])
        result.complete()
        return result

    def add_error(self, message: str) -> None:
        self.errors.append(message)

    def absorb(self, other: "SyncResult") -> None:
        self.stats.merge(other.stats)
        self.errors.extend(other.errors)
        self.cancelled = self.cancelled or other.cancelled

    def complete(self, message: str | None = None) -> "SyncResult":
        if message is not None:
            self.message = message
        self.completed_at = datetime.now(timezone.utc)
        return self

    def as_dict(self) -> dict[str, object]:
        return {
            "success": self.success,
            "message": self.message,
            "stats": self.stats.to_dict(),
            "errors": list(self.errors),
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_seconds": round(self.duration.total_seconds(), 3),
            "sync_id": self.sync_id,
            "cancelled": self.cancelled,
        }


__all__ = ["SyncStats", "SyncResult"]
