"""
Correlation store backed by ``crm_external_ids``.

The only source of truth for "is this local record already linked to a remote
record". Writes are flushed immediately so a link created earlier in a pass is
visible to later lookups in the same pass.
"""

from __future__ import annotations

from datetime import datetime
from typing import List, Sequence

from sqlalchemy.orm import Session

from crm_sync.models.crm.schema import CorrelationEntry, LocalEntityType, SyncDirection

from .errors import ConflictError


class CorrelationStore:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get_by_local(
        self,
        connection_id: int,
        local_entity_type: LocalEntityType,
        local_entity_id: int,
    ) -> CorrelationEntry | None:
        return (
            self.session.query(CorrelationEntry)
            .filter_by(
                connection_id=connection_id,
                local_entity_type=local_entity_type,
                local_entity_id=local_entity_id,
            )
            .first()
        )

    def get_by_remote(
        self,
        connection_id: int,
        remote_entity_name: str,
        remote_entity_id: str,
        *,
        local_entity_type: LocalEntityType | None = None,
    ) -> CorrelationEntry | None:
        """
        Return the entry linked to a remote record.

        More than one entry for the same remote record is an invariant violation
        and surfaces as ``ConflictError`` so callers skip the record.
        """

        query = self.session.query(CorrelationEntry).filter_by(
            connection_id=connection_id,
            remote_entity_name=remote_entity_name,
            remote_entity_id=remote_entity_id,
        )
        if local_entity_type is not None:
            query = query.filter_by(local_entity_type=local_entity_type)
        entries = query.order_by(CorrelationEntry.id).limit(2).all()
        if len(entries) > 1:
            raise ConflictError(
                f"Remote {remote_entity_name} {remote_entity_id} is linked to more than one local record",
                remote_entity_id=remote_entity_id,
                local_entity_id=entries[0].local_entity_id,
                existing_counterpart=str(entries[1].local_entity_id),
            )
        return entries[0] if entries else None

    def find_remote_id(
        self,
        connection_id: int,
        local_entity_type: LocalEntityType,
        local_entity_id: int,
        remote_entity_name: str,
    ) -> str | None:
        entry = (
            self.session.query(CorrelationEntry)
            .filter_by(
                connection_id=connection_id,
                local_entity_type=local_entity_type,
                local_entity_id=local_entity_id,
                remote_entity_name=remote_entity_name,
            )
            .first()
        )
        return entry.remote_entity_id if entry else None

    def find_local_id(
        self,
        connection_id: int,
        local_entity_type: LocalEntityType,
        remote_entity_name: str,
        remote_entity_id: str,
    ) -> int | None:
        entry = (
            self.session.query(CorrelationEntry)
            .filter_by(
                connection_id=connection_id,
                local_entity_type=local_entity_type,
                remote_entity_name=remote_entity_name,
                remote_entity_id=remote_entity_id,
            )
            .order_by(CorrelationEntry.id)
            .first()
        )
        return entry.local_entity_id if entry else None

    def upsert(
        self,
        connection_id: int,
        local_entity_type: LocalEntityType,
        local_entity_id: int,
        remote_entity_name: str,
        remote_entity_id: str,
        *,
        direction: SyncDirection,
        synced_at: datetime | None = None,
    ) -> CorrelationEntry:
        entry = self.get_by_local(connection_id, local_entity_type, local_entity_id)
        if entry is None:
            entry = CorrelationEntry(
                connection_id=connection_id,
                local_entity_type=local_entity_type,
                local_entity_id=local_entity_id,
                remote_entity_name=remote_entity_name,
                remote_entity_id=remote_entity_id,
            )
            self.session.add(entry)
        else:
            entry.remote_entity_name = remote_entity_name
            entry.remote_entity_id = remote_entity_id
        entry.mark_synced(direction=direction, synced_at=synced_at)
        self.session.flush()
        return entry

    def delete_by_local(
        self,
        connection_id: int,
        local_entity_type: LocalEntityType,
        local_entity_id: int,
    ) -> int:
        deleted = (
            self.session.query(CorrelationEntry)
            .filter_by(
                connection_id=connection_id,
                local_entity_type=local_entity_type,
                local_entity_id=local_entity_id,
            )
            .delete(synchronize_session=False)
        )
        self.session.flush()
        return deleted

    def delete_by_remote(self, connection_id: int, remote_entity_name: str, remote_entity_id: str) -> int:
        deleted = (
            self.session.query(CorrelationEntry)
            .filter_by(
                connection_id=connection_id,
                remote_entity_name=remote_entity_name,
                remote_entity_id=remote_entity_id,
            )
            .delete(synchronize_session=False)
        )
        self.session.flush()
        return deleted

    def list_for(
        self,
        connection_id: int,
        local_entity_type: LocalEntityType | None = None,
        *,
        remote_entity_name: str | None = None,
        limit: int | None = None,
    ) -> List[CorrelationEntry]:
        query = self.session.query(CorrelationEntry).filter_by(connection_id=connection_id)
        if local_entity_type is not None:
            query = query.filter_by(local_entity_type=local_entity_type)
        if remote_entity_name is not None:
            query = query.filter_by(remote_entity_name=remote_entity_name)
        query = query.order_by(CorrelationEntry.last_synced_at.desc(), CorrelationEntry.id.desc())
        if limit is not None:
            query = query.limit(limit)
        return query.all()

    def count_for(
        self,
        connection_id: int,
        local_entity_type: LocalEntityType,
        remote_entity_names: Sequence[str] | None = None,
    ) -> int:
        query = self.session.query(CorrelationEntry).filter_by(
            connection_id=connection_id, local_entity_type=local_entity_type
        )
        if remote_entity_names:
            query = query.filter(CorrelationEntry.remote_entity_name.in_(list(remote_entity_names)))
        return query.count()


__all__ = ["CorrelationStore"]
