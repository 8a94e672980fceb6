"""
Sync orchestrator.

Drives full, incremental, single-mapping, single-record and relationship-only
passes against one connection. Records are processed sequentially; each record
is committed (or rolled back) on its own and leaves one ``SyncLog`` row behind.
None of the public entry points raise: every failure is folded into the
returned ``SyncResult``.
"""

from __future__ import annotations

import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Sequence

from flask import current_app, has_app_context
from sqlalchemy import inspect
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from crm_sync.models import db
from crm_sync.models.crm.schema import (
    CrmConnection,
    EntityMapping,
    LocalEntityType,
    RelationshipMapping,
    SyncAction,
    SyncDirection,
    SyncLog,
    SyncStatus,
)

from .cancellation import CancellationToken
from .correlation import CorrelationStore
from .errors import AuthError, ConfigurationError, ConflictError, ValidationError
from .identity import IdentityMatcher
from .local_store import LocalStore
from .lookup import LookupResolver
from .mapping import apply_builtin_projections, map_inbound, map_outbound, payload_hash, to_wire
from .metrics import record_pass_duration, record_sync_record
from .progress import ProgressReporter, SafeReporter, get_progress_tracker, should_report
from .providers.base import CrmProvider, WebhookEvent
from .registry import ProviderFactory, default_provider_factory
from .results import SyncResult
from .values import Record

logger = logging.getLogger(__name__)

DEFAULT_PROGRESS_INTERVAL = 10

OUTBOUND_DIRECTIONS = (SyncDirection.OUTBOUND, SyncDirection.BIDIRECTIONAL)
INBOUND_DIRECTIONS = (SyncDirection.INBOUND, SyncDirection.BIDIRECTIONAL)

CONNECTION_UNAVAILABLE = "Connection not found or disabled"
MAPPING_NOT_FOUND = "Entity mapping not found"
MAPPING_DISABLED = "Entity mapping is disabled"
SYNC_CANCELLED = "Sync cancelled"

# Connection columns the provider rewrites while authenticating
TOKEN_FIELDS = ("access_token", "refresh_token", "token_expiry")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class SyncPass:
    """State shared by every record of one pass against one connection."""

    connection: CrmConnection
    connection_id: int
    provider: CrmProvider
    resolver: LookupResolver
    matcher: IdentityMatcher
    cancel_token: CancellationToken | None = None
    sync_id: str | None = None
    total: int = 0
    processed: int = 0

    @property
    def cancelled(self) -> bool:
        return self.cancel_token is not None and self.cancel_token.cancelled


class SyncService:
    """Entry points for every kind of sync pass."""

    def __init__(
        self,
        session: Session | None = None,
        *,
        provider_factory: ProviderFactory | None = None,
        progress: ProgressReporter | None = None,
        progress_interval: int | None = None,
    ) -> None:
        self.session: Session = session or db.session
        self.provider_factory = provider_factory or default_provider_factory()
        if progress is None and has_app_context():
            progress = get_progress_tracker()
        self.reporter = SafeReporter(progress)
        if progress_interval is None:
            progress_interval = (
                current_app.config.get("CRM_SYNC_PROGRESS_INTERVAL", DEFAULT_PROGRESS_INTERVAL)
                if has_app_context()
                else DEFAULT_PROGRESS_INTERVAL
            )
        self.progress_interval = max(1, int(progress_interval))
        self.correlation = CorrelationStore(self.session)
        self.local_store = LocalStore(self.session)

    # ------------------------------------------------------------------
    # Public entry points
    # ------------------------------------------------------------------

    def sync_all(self, connection_id: int, *, cancel_token: CancellationToken | None = None) -> SyncResult:
        """Full sync of every enabled mapping; inbound listing ignores last sync time."""

        return self._guarded(
            "full",
            f"full sync for connection {connection_id}",
            lambda: self._sync_connection(connection_id, incremental=False, cancel_token=cancel_token),
        )

    def sync_incremental(self, connection_id: int, *, cancel_token: CancellationToken | None = None) -> SyncResult:
        """Same traversal as ``sync_all`` with inbound listing filtered by ``last_sync_at``."""

        return self._guarded(
            "incremental",
            f"incremental sync for connection {connection_id}",
            lambda: self._sync_connection(connection_id, incremental=True, cancel_token=cancel_token),
        )

    def sync_entity_mapping(
        self,
        mapping_id: int,
        is_full_sync: bool = True,
        *,
        cancel_token: CancellationToken | None = None,
    ) -> SyncResult:
        return self._guarded(
            "mapping",
            f"sync for entity mapping {mapping_id}",
            lambda: self._sync_entity_mapping(mapping_id, is_full_sync, cancel_token),
        )

    def sync_outbound(
        self,
        connection_id: int,
        entity_type: LocalEntityType | str,
        entity_id: int,
        *,
        cancel_token: CancellationToken | None = None,
    ) -> SyncResult:
        """Push one local record to every enabled outbound mapping for its type."""

        return self._guarded(
            "outbound",
            f"outbound sync for {entity_type} {entity_id}",
            lambda: self._sync_outbound(connection_id, entity_type, entity_id, cancel_token),
        )

    def sync_inbound(
        self,
        connection_id: int,
        remote_entity_name: str,
        remote_id: str,
        *,
        cancel_token: CancellationToken | None = None,
    ) -> SyncResult:
        """Pull one remote record through the first matching inbound mapping."""

        return self._guarded(
            "inbound",
            f"inbound sync for {remote_entity_name} {remote_id}",
            lambda: self._sync_inbound(connection_id, remote_entity_name, remote_id, cancel_token),
        )

    def sync_relationships(
        self,
        mapping_id: int,
        *,
        cancel_token: CancellationToken | None = None,
    ) -> SyncResult:
        """Re-write only relationship fields for every correlated record of a mapping."""

        return self._guarded(
            "relationships",
            f"relationship sync for entity mapping {mapping_id}",
            lambda: self._sync_relationships(mapping_id, cancel_token),
        )

    def trigger_outbound_sync(
        self,
        entity_type: LocalEntityType | str,
        entity_id: int,
        *,
        cancel_token: CancellationToken | None = None,
    ) -> SyncResult:
        """Save-triggered push of one local record to every interested connection."""

        return self._guarded(
            "outbound",
            f"triggered outbound sync for {entity_type} {entity_id}",
            lambda: self._trigger_outbound_sync(entity_type, entity_id, cancel_token),
        )

    def process_webhook(
        self,
        connection_id: int,
        event: WebhookEvent,
        *,
        cancel_token: CancellationToken | None = None,
    ) -> SyncResult:
        logger.info(
            "Processing webhook for %s %s (%s)",
            event.entity_name,
            event.record_id,
            event.event_type,
            extra={
                "crm_connection_id": connection_id,
                "crm_entity": event.entity_name,
                "crm_record_id": event.record_id,
            },
        )
        if event.is_delete:
            return self._guarded(
                "inbound",
                f"webhook delete for {event.entity_name} {event.record_id}",
                lambda: self._process_remote_delete(connection_id, event),
            )
        return self.sync_inbound(connection_id, event.entity_name, event.record_id, cancel_token=cancel_token)

    # ------------------------------------------------------------------
    # Pass drivers
    # ------------------------------------------------------------------

    def _sync_connection(
        self,
        connection_id: int,
        *,
        incremental: bool,
        cancel_token: CancellationToken | None,
    ) -> SyncResult:
        connection = self._require_connection(connection_id)
        result = SyncResult()
        pass_started_at = _utcnow()
        modified_since = connection.last_sync_at if incremental else None
        mappings = [mapping for mapping in connection.entity_mappings if mapping.is_enabled]
        halted = False

        logger.info(
            "Starting %s sync for connection %s across %s mappings",
            "incremental" if incremental else "full",
            connection_id,
            len(mappings),
            extra={"crm_connection_id": connection_id},
        )
        try:
            ctx = self._open_pass(connection, cancel_token)
            for mapping in mappings:
                if self._check_cancelled(ctx, result):
                    break
                self._sync_mapping(ctx, mapping, result, modified_since=modified_since)
        except AuthError as exc:
            self._rollback()
            halted = True
            logger.error(
                "Authentication failed for connection %s; halting pass: %s",
                connection_id,
                exc,
                extra={"crm_connection_id": connection_id},
            )
            result.add_error(f"Authentication failed: {exc}")
        except ConfigurationError as exc:
            self._rollback()
            halted = True
            result.add_error(str(exc))

        prefix = "Incremental sync" if incremental else "Sync"
        self._finish(
            result,
            f"{prefix} completed successfully",
            f"{prefix} completed with errors",
        )
        # Cancelled and halted passes keep the previous watermark.
        self._record_connection_outcome(
            connection_id,
            result,
            last_sync_at=None if (halted or result.cancelled) else pass_started_at,
        )
        logger.info(
            "%s for connection %s: %s",
            result.message,
            connection_id,
            result.stats.to_dict(),
            extra={"crm_connection_id": connection_id},
        )
        return result

    def _sync_entity_mapping(
        self,
        mapping_id: int,
        is_full_sync: bool,
        cancel_token: CancellationToken | None,
    ) -> SyncResult:
        mapping = self.session.get(EntityMapping, mapping_id)
        if mapping is None:
            raise ConfigurationError(MAPPING_NOT_FOUND)
        connection = self._require_connection(mapping.connection_id)
        if not mapping.is_enabled:
            raise ConfigurationError(MAPPING_DISABLED)

        logger.info(
            "Starting sync for entity mapping %s: %s -> %s",
            mapping_id,
            mapping.remote_entity_name,
            mapping.local_entity_type.value,
            extra={"crm_connection_id": connection.id, "crm_mapping_id": mapping_id},
        )
        remote_entity_name = mapping.remote_entity_name
        ctx = self._open_pass(connection, cancel_token)
        modified_since = None if is_full_sync else connection.last_sync_at

        total, prefetched = self._count_targets(ctx, mapping, modified_since)
        ctx.total = total
        ctx.sync_id = self.reporter.start_sync(mapping_id, remote_entity_name, total, connection_id=connection.id)

        result = SyncResult(sync_id=ctx.sync_id)
        try:
            self._sync_mapping(ctx, mapping, result, modified_since=modified_since, prefetched=prefetched)
        except AuthError as exc:
            self._rollback(ctx)
            logger.error(
                "Authentication failed during sync for entity mapping %s: %s",
                mapping_id,
                exc,
                extra={"crm_mapping_id": mapping_id},
            )
            result.add_error(f"Authentication failed: {exc}")

        self._finish(
            result,
            f"Sync completed successfully for {remote_entity_name}",
            f"Sync completed with errors for {remote_entity_name}",
        )
        self.reporter.complete_sync(ctx.sync_id, result.success, result.message)
        return result

    def _sync_outbound(
        self,
        connection_id: int,
        entity_type: LocalEntityType | str,
        entity_id: int,
        cancel_token: CancellationToken | None,
    ) -> SyncResult:
        local_type = self._coerce_entity_type(entity_type)
        connection = self._require_connection(connection_id)
        mappings = (
            self.session.query(EntityMapping)
            .filter_by(connection_id=connection.id, local_entity_type=local_type, is_enabled=True)
            .filter(EntityMapping.sync_direction.in_(OUTBOUND_DIRECTIONS))
            .order_by(EntityMapping.id)
            .all()
        )
        result = SyncResult()
        ctx = self._open_pass(connection, cancel_token)
        for mapping in mappings:
            if self._check_cancelled(ctx, result):
                break
            self._process_outbound(ctx, mapping, entity_id, result)
        return self._finish(result, "Outbound sync completed successfully", "Outbound sync completed with errors")

    def _sync_inbound(
        self,
        connection_id: int,
        remote_entity_name: str,
        remote_id: str,
        cancel_token: CancellationToken | None,
    ) -> SyncResult:
        connection = self._require_connection(connection_id)
        mapping = (
            self.session.query(EntityMapping)
            .filter_by(connection_id=connection.id, remote_entity_name=remote_entity_name, is_enabled=True)
            .filter(EntityMapping.sync_direction.in_(INBOUND_DIRECTIONS))
            .order_by(EntityMapping.id)
            .first()
        )
        if mapping is None:
            raise ConfigurationError(f"No mapping found for entity {remote_entity_name}")

        result = SyncResult()
        ctx = self._open_pass(connection, cancel_token)
        if self._check_cancelled(ctx, result):
            return self._finish(result, "", "")

        record = ctx.provider.get_record(connection, remote_entity_name, remote_id)
        if record is None:
            logger.warning(
                "CRM record %s %s not found; skipping",
                remote_entity_name,
                remote_id,
                extra={"crm_connection_id": connection_id, "crm_record_id": remote_id},
            )
            result.stats.processed += 1
            result.stats.inbound += 1
            result.stats.skipped += 1
            record_sync_record(SyncDirection.INBOUND.value, "skipped")
        else:
            self._process_inbound(ctx, mapping, record, result)
        return self._finish(result, "Inbound sync completed successfully", "Inbound sync completed with errors")

    def _sync_relationships(self, mapping_id: int, cancel_token: CancellationToken | None) -> SyncResult:
        mapping = self.session.get(EntityMapping, mapping_id)
        if mapping is None:
            raise ConfigurationError(MAPPING_NOT_FOUND)
        connection = self._require_connection(mapping.connection_id)
        if not mapping.is_enabled:
            raise ConfigurationError(MAPPING_DISABLED)

        relationships = self._relationships(mapping, outbound=True)
        if not relationships:
            return SyncResult().complete("No enabled relationship mappings found")

        local_type = mapping.local_entity_type
        remote_entity_name = mapping.remote_entity_name
        ctx = self._open_pass(connection, cancel_token)
        entries = [
            (entry.local_entity_id, entry.remote_entity_id)
            for entry in self.correlation.list_for(connection.id, local_type, remote_entity_name=remote_entity_name)
        ]
        logger.info(
            "Starting relationship sync for entity mapping %s: %s records, %s relationships",
            mapping_id,
            len(entries),
            len(relationships),
            extra={"crm_connection_id": connection.id, "crm_mapping_id": mapping_id},
        )
        ctx.total = len(entries)
        ctx.sync_id = self.reporter.start_sync(
            mapping_id, f"{remote_entity_name} Relationships", len(entries), connection_id=connection.id
        )
        result = SyncResult(sync_id=ctx.sync_id)

        try:
            for local_id, remote_id in entries:
                if self._check_cancelled(ctx, result):
                    break
                self._process_relationships(ctx, mapping, local_id, remote_id, result)
        except AuthError as exc:
            self._rollback(ctx)
            logger.error("Authentication failed during relationship sync for mapping %s: %s", mapping_id, exc)
            result.add_error(f"Authentication failed: {exc}")

        stats = result.stats
        parts: List[str] = []
        if stats.updated:
            parts.append(f"{stats.updated} updated")
        if stats.skipped:
            parts.append(f"{stats.skipped} skipped (related entities not synced)")
        if stats.failed:
            parts.append(f"{stats.failed} failed")
        summary = (
            f"Relationship sync completed: {', '.join(parts)}"
            if parts
            else "Relationship sync completed: no records to process"
        )
        self._finish(result, summary, summary)
        self.reporter.complete_sync(ctx.sync_id, result.success, result.message)
        return result

    def _trigger_outbound_sync(
        self,
        entity_type: LocalEntityType | str,
        entity_id: int,
        cancel_token: CancellationToken | None,
    ) -> SyncResult:
        local_type = self._coerce_entity_type(entity_type)
        connection_ids = [
            row[0]
            for row in (
                self.session.query(CrmConnection.id)
                .join(EntityMapping, EntityMapping.connection_id == CrmConnection.id)
                .filter(
                    CrmConnection.is_enabled.is_(True),
                    EntityMapping.local_entity_type == local_type,
                    EntityMapping.is_enabled.is_(True),
                    EntityMapping.sync_direction.in_(OUTBOUND_DIRECTIONS),
                )
                .distinct()
                .order_by(CrmConnection.id)
                .all()
            )
        ]
        if not connection_ids:
            logger.debug("No active CRM connections found for %s", local_type.value)
            return SyncResult().complete("No CRM connections configured for this entity type")

        logger.info(
            "Triggering outbound sync for %s %s to %s connections",
            local_type.value,
            entity_id,
            len(connection_ids),
        )
        result = SyncResult()
        for connection_id in connection_ids:
            if cancel_token is not None and cancel_token.cancelled:
                result.cancelled = True
                break
            result.absorb(self.sync_outbound(connection_id, local_type, entity_id, cancel_token=cancel_token))
        return self._finish(
            result,
            f"Synced to {len(connection_ids)} CRM connection(s)",
            f"Sync completed with {len(result.errors)} error(s)",
        )

    def _process_remote_delete(self, connection_id: int, event: WebhookEvent) -> SyncResult:
        connection = self._require_connection(connection_id)
        started = time.monotonic()
        result = SyncResult()
        result.stats.processed += 1
        result.stats.inbound += 1

        try:
            entry = self.correlation.get_by_remote(connection.id, event.entity_name, event.record_id)
        except ConflictError:
            entry = None
        local_type = entry.local_entity_type if entry else None
        local_id = entry.local_entity_id if entry else None
        mapping = (
            self.session.query(EntityMapping)
            .filter_by(connection_id=connection.id, remote_entity_name=event.entity_name)
            .order_by(EntityMapping.id)
            .first()
        )

        removed = self.correlation.delete_by_remote(connection.id, event.entity_name, event.record_id)
        if not removed:
            result.stats.skipped += 1
            record_sync_record(SyncDirection.INBOUND.value, "skipped")
            self.session.commit()
            return result.complete("No linked record for deleted CRM record")

        self.session.add(
            SyncLog(
                connection_id=connection.id,
                entity_mapping_id=mapping.id if mapping else None,
                local_entity_type=local_type,
                local_entity_id=local_id,
                remote_entity_name=event.entity_name,
                remote_entity_id=event.record_id,
                direction=SyncDirection.INBOUND,
                action=SyncAction.DELETE,
                status=SyncStatus.SUCCESS,
                duration_ms=self._elapsed_ms(started),
                synced_at=_utcnow(),
            )
        )
        self.session.commit()
        result.stats.deleted += removed
        record_sync_record(SyncDirection.INBOUND.value, "deleted")
        logger.info(
            "Removed %s correlation entries for deleted %s %s",
            removed,
            event.entity_name,
            event.record_id,
            extra={"crm_connection_id": connection.id, "crm_record_id": event.record_id},
        )
        return result.complete("Removed link for deleted CRM record")

    # ------------------------------------------------------------------
    # Mapping traversal
    # ------------------------------------------------------------------

    def _sync_mapping(
        self,
        ctx: SyncPass,
        mapping: EntityMapping,
        result: SyncResult,
        *,
        modified_since: datetime | None,
        prefetched: Sequence[Record] | None = None,
    ) -> None:
        direction = mapping.sync_direction
        if direction.allows_outbound():
            self._run_outbound(ctx, mapping, result)
        if direction.allows_inbound() and not result.cancelled:
            self._run_inbound(ctx, mapping, result, modified_since=modified_since, prefetched=prefetched)

    def _run_outbound(self, ctx: SyncPass, mapping: EntityMapping, result: SyncResult) -> None:
        local_type = mapping.local_entity_type
        try:
            entity_ids = self.local_store.list_ids(local_type)
        except SQLAlchemyError as exc:
            self._rollback(ctx)
            result.add_error(f"Outbound sync error: {exc}")
            return
        for entity_id in entity_ids:
            if self._check_cancelled(ctx, result):
                return
            ok = self._process_outbound(ctx, mapping, entity_id, result)
            self._tick(ctx, f"Syncing {local_type.value} {entity_id} to CRM", ok)

    def _run_inbound(
        self,
        ctx: SyncPass,
        mapping: EntityMapping,
        result: SyncResult,
        *,
        modified_since: datetime | None,
        prefetched: Sequence[Record] | None,
    ) -> None:
        remote_entity_name = mapping.remote_entity_name
        records = prefetched
        if records is None:
            logger.info(
                "Syncing inbound for %s: modified_since=%s",
                remote_entity_name,
                modified_since,
                extra={"crm_connection_id": ctx.connection_id, "crm_mapping_id": mapping.id},
            )
            try:
                records = ctx.provider.list_records(
                    ctx.connection,
                    remote_entity_name,
                    modified_since=modified_since,
                    filter_expression=mapping.filter_expression,
                )
            except AuthError:
                raise
            except Exception as exc:
                logger.error("Inbound sync error for %s: %s", remote_entity_name, exc)
                result.add_error(f"Inbound sync error: {exc}")
                return
        for record in records:
            if self._check_cancelled(ctx, result):
                return
            ok = self._process_inbound(ctx, mapping, record, result)
            self._tick(ctx, f"Syncing {record.id} from CRM", ok)

    def _count_targets(
        self,
        ctx: SyncPass,
        mapping: EntityMapping,
        modified_since: datetime | None,
    ) -> tuple[int, List[Record] | None]:
        """
        Estimate the number of records a mapping pass will touch.

        Best effort only: any failure is logged and the estimate is zero. On an
        inbound-only mapping the remote records listed here are handed back so the
        inbound phase can reuse them. Mappings that also push outbound list again
        after their outbound phase has written.
        """

        total = 0
        prefetched: List[Record] | None = None
        try:
            if mapping.sync_direction.allows_outbound():
                total += self.local_store.count(mapping.local_entity_type)
            if mapping.sync_direction.allows_inbound():
                records = list(
                    ctx.provider.list_records(
                        ctx.connection,
                        mapping.remote_entity_name,
                        modified_since=modified_since,
                        filter_expression=mapping.filter_expression,
                    )
                )
                total += len(records)
                if not mapping.sync_direction.allows_outbound():
                    prefetched = records
        except Exception as exc:
            self._rollback(ctx)
            logger.warning(
                "Error counting records for sync progress: %s",
                exc,
                extra={"crm_mapping_id": mapping.id},
            )
            return 0, None
        return total, prefetched

    # ------------------------------------------------------------------
    # Per-record processing
    # ------------------------------------------------------------------

    def _process_outbound(self, ctx: SyncPass, mapping: EntityMapping, entity_id: int, result: SyncResult) -> bool:
        started = time.monotonic()
        stats = result.stats
        stats.processed += 1
        stats.outbound += 1
        mapping_id = mapping.id
        local_type = mapping.local_entity_type
        remote_entity_name = mapping.remote_entity_name
        remote_id: str | None = None
        action = SyncAction.UPDATE
        direction = SyncDirection.OUTBOUND

        try:
            snapshot = self.local_store.snapshot(local_type, entity_id)
            if snapshot is None:
                stats.skipped += 1
                record_sync_record(direction.value, "skipped")
                return True

            payload = self._outbound_payload(ctx, mapping, snapshot)
            digest = payload_hash(payload)
            entry = self.correlation.get_by_local(ctx.connection_id, local_type, entity_id)

            if entry is not None:
                remote_id = entry.remote_entity_id
                if entry.last_outbound_hash == digest:
                    stats.unchanged += 1
                    self._append_log(
                        ctx,
                        mapping_id,
                        local_type,
                        entity_id,
                        remote_entity_name,
                        remote_id,
                        direction=direction,
                        action=action,
                        status=SyncStatus.SKIPPED,
                        started=started,
                    )
                    self.session.commit()
                    record_sync_record(direction.value, "unchanged")
                    return True
                ctx.provider.update_record(ctx.connection, remote_entity_name, remote_id, payload)
                stats.updated += 1
                outcome = "updated"
            else:
                match = ctx.matcher.match_remote(ctx.connection, mapping, snapshot)
                if match is not None:
                    remote_id = match.remote_id
                    ctx.provider.update_record(ctx.connection, remote_entity_name, remote_id, payload)
                    stats.updated += 1
                    outcome = "updated"
                else:
                    action = SyncAction.CREATE
                    remote_id = ctx.provider.create_record(ctx.connection, remote_entity_name, payload)
                    stats.created += 1
                    outcome = "created"

            entry = self.correlation.upsert(
                ctx.connection_id,
                local_type,
                entity_id,
                remote_entity_name,
                remote_id,
                direction=direction,
            )
            entry.last_outbound_hash = digest
            self._append_log(
                ctx,
                mapping_id,
                local_type,
                entity_id,
                remote_entity_name,
                remote_id,
                direction=direction,
                action=action,
                status=SyncStatus.SUCCESS,
                started=started,
                changed_fields=list(payload.keys()),
            )
            self.session.commit()
            record_sync_record(direction.value, outcome)
            return True
        except AuthError:
            self._rollback(ctx)
            raise
        except Exception as exc:
            self._rollback(ctx)
            self._record_failure(
                ctx,
                result,
                exc,
                message=f"Outbound sync error: {exc}",
                mapping_id=mapping_id,
                local_type=local_type,
                local_id=entity_id,
                remote_entity_name=remote_entity_name,
                remote_id=remote_id,
                direction=direction,
                action=action,
                started=started,
            )
            return False

    def _process_inbound(self, ctx: SyncPass, mapping: EntityMapping, record: Record, result: SyncResult) -> bool:
        started = time.monotonic()
        stats = result.stats
        stats.processed += 1
        stats.inbound += 1
        mapping_id = mapping.id
        local_type = mapping.local_entity_type
        remote_entity_name = mapping.remote_entity_name
        local_id: int | None = None
        action = SyncAction.UPDATE
        direction = SyncDirection.INBOUND

        try:
            if not record.id:
                raise ValidationError(f"{remote_entity_name} record has no identifier")

            values = map_inbound(record, mapping.field_mappings)
            apply_builtin_projections(local_type, record, values)
            nullable_fields = self._apply_inbound_relationships(ctx, mapping, record, values)

            entry = self.correlation.get_by_remote(
                ctx.connection_id, remote_entity_name, record.id, local_entity_type=local_type
            )
            entity = None
            if entry is not None:
                entity = self.local_store.get(local_type, entry.local_entity_id)
                if entity is None:
                    logger.info(
                        "Dropping stale link from %s %s to missing %s %s",
                        remote_entity_name,
                        record.id,
                        local_type.value,
                        entry.local_entity_id,
                    )
                    self.correlation.delete_by_local(ctx.connection_id, local_type, entry.local_entity_id)
                    entry = None
            if entity is None:
                entity = ctx.matcher.match_local(ctx.connection, mapping, record, values)

            if entity is None:
                entity, created = self.local_store.create(local_type, values)
                if created:
                    action = SyncAction.CREATE
                else:
                    self._ensure_unlinked(ctx, local_type, entity.id, record.id)
            else:
                created = False

            local_id = entity.id
            changed_fields: List[str] = []
            if created:
                stats.created += 1
                outcome = "created"
                changed_fields = sorted(values.keys())
            else:
                changes = self.local_store.diff(local_type, entity, values, nullable_fields=nullable_fields)
                changed_fields = sorted(changes.keys())
                if changes:
                    self.local_store.apply(entity, changes)
                if changes or entry is None:
                    stats.updated += 1
                    outcome = "updated"
                else:
                    stats.unchanged += 1
                    self._append_log(
                        ctx,
                        mapping_id,
                        local_type,
                        local_id,
                        remote_entity_name,
                        record.id,
                        direction=direction,
                        action=action,
                        status=SyncStatus.SKIPPED,
                        started=started,
                    )
                    self.session.commit()
                    record_sync_record(direction.value, "unchanged")
                    return True

            entry = self.correlation.upsert(
                ctx.connection_id,
                local_type,
                local_id,
                remote_entity_name,
                record.id,
                direction=direction,
            )
            entry.last_inbound_hash = payload_hash({key: to_wire(value) for key, value in values.items()})
            if mapping.sync_direction.allows_outbound():
                # Remote already holds these values.
                snapshot = self.local_store.snapshot_of(entity)
                entry.last_outbound_hash = payload_hash(self._outbound_payload(ctx, mapping, snapshot))
            self._append_log(
                ctx,
                mapping_id,
                local_type,
                local_id,
                remote_entity_name,
                record.id,
                direction=direction,
                action=action,
                status=SyncStatus.SUCCESS,
                started=started,
                changed_fields=changed_fields,
            )
            self.session.commit()
            record_sync_record(direction.value, outcome)
            return True
        except AuthError:
            self._rollback(ctx)
            raise
        except Exception as exc:
            self._rollback(ctx)
            self._record_failure(
                ctx,
                result,
                exc,
                message=f"Inbound sync error for CRM record {record.id}: {exc}",
                mapping_id=mapping_id,
                local_type=local_type,
                local_id=local_id,
                remote_entity_name=remote_entity_name,
                remote_id=record.id,
                direction=direction,
                action=action,
                started=started,
            )
            return False

    def _process_relationships(
        self,
        ctx: SyncPass,
        mapping: EntityMapping,
        local_id: int,
        remote_id: str,
        result: SyncResult,
    ) -> bool:
        started = time.monotonic()
        stats = result.stats
        stats.processed += 1
        stats.outbound += 1
        mapping_id = mapping.id
        local_type = mapping.local_entity_type
        remote_entity_name = mapping.remote_entity_name
        direction = SyncDirection.OUTBOUND

        try:
            snapshot = self.local_store.snapshot(local_type, local_id)
            payload: "OrderedDict[str, Any]" = OrderedDict()
            if snapshot is not None:
                self._apply_outbound_relationships(
                    ctx, mapping, snapshot, payload, self._relationships(mapping, outbound=True)
                )
            if not payload:
                stats.skipped += 1
                logger.debug(
                    "Skipped %s %s: no relationship values could be resolved",
                    local_type.value,
                    local_id,
                )
                self._append_log(
                    ctx,
                    mapping_id,
                    local_type,
                    local_id,
                    remote_entity_name,
                    remote_id,
                    direction=direction,
                    action=SyncAction.UPDATE,
                    status=SyncStatus.SKIPPED,
                    started=started,
                )
                self.session.commit()
                record_sync_record(direction.value, "skipped")
                self._tick(ctx, f"Processing record {ctx.processed + 1} of {ctx.total}", True)
                return True

            ctx.provider.update_record(ctx.connection, remote_entity_name, remote_id, payload)
            stats.updated += 1
            self._append_log(
                ctx,
                mapping_id,
                local_type,
                local_id,
                remote_entity_name,
                remote_id,
                direction=direction,
                action=SyncAction.UPDATE,
                status=SyncStatus.SUCCESS,
                started=started,
                changed_fields=list(payload.keys()),
            )
            self.session.commit()
            record_sync_record(direction.value, "updated")
            self._tick(ctx, f"Processing record {ctx.processed + 1} of {ctx.total}", True)
            return True
        except AuthError:
            self._rollback(ctx)
            raise
        except Exception as exc:
            self._rollback(ctx)
            self._record_failure(
                ctx,
                result,
                exc,
                message=f"Failed to update {remote_id}: {exc}",
                mapping_id=mapping_id,
                local_type=local_type,
                local_id=local_id,
                remote_entity_name=remote_entity_name,
                remote_id=remote_id,
                direction=direction,
                action=SyncAction.UPDATE,
                started=started,
            )
            self._tick(ctx, f"Processing record {ctx.processed + 1} of {ctx.total} (with errors)", False)
            return False

    # ------------------------------------------------------------------
    # Relationship resolution
    # ------------------------------------------------------------------

    @staticmethod
    def _relationships(mapping: EntityMapping, *, outbound: bool) -> List[RelationshipMapping]:
        return [
            relationship
            for relationship in mapping.relationship_mappings
            if relationship.is_enabled
            and (
                relationship.sync_direction.allows_outbound()
                if outbound
                else relationship.sync_direction.allows_inbound()
            )
        ]

    def _outbound_payload(
        self, ctx: SyncPass, mapping: EntityMapping, snapshot: Mapping[str, Any]
    ) -> "OrderedDict[str, Any]":
        payload = map_outbound(snapshot, mapping.field_mappings)
        self._apply_outbound_relationships(ctx, mapping, snapshot, payload, self._relationships(mapping, outbound=True))
        return payload

    def _apply_outbound_relationships(
        self,
        ctx: SyncPass,
        mapping: EntityMapping,
        snapshot: Mapping[str, Any],
        payload: Dict[str, Any],
        relationships: Sequence[RelationshipMapping],
    ) -> None:
        """
        Add relationship bindings to an outbound payload.

        An absent local value clears the remote lookup only when
        ``sync_null_values`` is set. A present value whose related record has no
        correlation yet is skipped, leaving the remote lookup untouched.
        """

        for relationship in relationships:
            lookup_field = ctx.resolver.resolve(
                mapping.remote_entity_name,
                relationship.remote_related_entity,
                relationship.remote_lookup_field,
            )
            if lookup_field is None:
                logger.warning(
                    "Could not resolve lookup field for relationship %s -> %s on %s",
                    relationship.local_field,
                    relationship.remote_related_entity,
                    mapping.remote_entity_name,
                    extra={"crm_connection_id": ctx.connection_id, "crm_mapping_id": mapping.id},
                )
                continue
            if relationship.local_field not in snapshot:
                logger.warning(
                    "Local field '%s' does not exist on %s",
                    relationship.local_field,
                    mapping.local_entity_type.value,
                )
                continue

            local_value = snapshot.get(relationship.local_field)
            if local_value is None:
                if relationship.sync_null_values:
                    key, value = ctx.provider.format_lookup_binding(
                        lookup_field, relationship.remote_related_entity, None
                    )
                    payload[key] = value
                continue

            try:
                related_local_id = int(local_value)
            except (TypeError, ValueError):
                logger.warning(
                    "Relationship field '%s' holds a non-identifier value %r",
                    relationship.local_field,
                    local_value,
                )
                continue
            remote_id = self.correlation.find_remote_id(
                ctx.connection_id,
                relationship.related_local_type,
                related_local_id,
                relationship.remote_related_entity,
            )
            if remote_id is None:
                logger.warning(
                    "Unresolved relationship %s: %s %s has not been synced to %s yet",
                    relationship.local_field,
                    relationship.related_local_type.value,
                    related_local_id,
                    relationship.remote_related_entity,
                    extra={"crm_connection_id": ctx.connection_id, "crm_mapping_id": mapping.id},
                )
                continue
            key, value = ctx.provider.format_lookup_binding(
                lookup_field, relationship.remote_related_entity, remote_id
            )
            payload[key] = value

    def _apply_inbound_relationships(
        self,
        ctx: SyncPass,
        mapping: EntityMapping,
        record: Record,
        values: Dict[str, Any],
    ) -> frozenset[str]:
        """
        Translate remote lookup values into local identifiers, in place.

        Returns the local fields that may be explicitly cleared. A lookup the
        record does not carry at all is left alone.
        """

        nullable: set[str] = set()
        for relationship in self._relationships(mapping, outbound=False):
            lookup_field = (relationship.remote_lookup_field or "").strip()
            if not lookup_field:
                info = ctx.resolver.resolve_field(mapping.remote_entity_name, relationship.remote_related_entity)
                lookup_field = info.logical_name if info else ""
            if not lookup_field:
                logger.warning(
                    "Could not resolve lookup field for relationship %s -> %s on %s",
                    relationship.local_field,
                    relationship.remote_related_entity,
                    mapping.remote_entity_name,
                )
                continue
            if not ctx.provider.has_lookup_value(record, lookup_field):
                continue

            remote_id = ctx.provider.read_lookup_value(record, lookup_field)
            local_id = None
            if remote_id:
                local_id = self.correlation.find_local_id(
                    ctx.connection_id,
                    relationship.related_local_type,
                    relationship.remote_related_entity,
                    remote_id,
                )
                if local_id is None:
                    logger.debug(
                        "Related %s %s is not linked to a local %s",
                        relationship.remote_related_entity,
                        remote_id,
                        relationship.related_local_type.value,
                    )
            if local_id is not None:
                values[relationship.local_field] = local_id
            elif relationship.sync_null_values:
                values[relationship.local_field] = None
                nullable.add(relationship.local_field)
        return frozenset(nullable)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _guarded(self, kind: str, label: str, operation: Callable[[], SyncResult]) -> SyncResult:
        started = time.monotonic()
        try:
            result = operation()
        except ConfigurationError as exc:
            self._rollback()
            logger.warning("Cannot start %s: %s", label, exc)
            result = SyncResult.failure(str(exc))
        except AuthError as exc:
            self._rollback()
            logger.error("Authentication failed during %s: %s", label, exc)
            result = SyncResult.failure(f"Authentication failed: {exc}")
        except Exception as exc:
            self._rollback()
            logger.exception("Error during %s", label)
            result = SyncResult.failure(str(exc))
        record_pass_duration(kind, time.monotonic() - started)
        return result

    def _require_connection(self, connection_id: int) -> CrmConnection:
        connection = self.session.get(CrmConnection, connection_id)
        if connection is None or not connection.is_enabled:
            raise ConfigurationError(CONNECTION_UNAVAILABLE)
        return connection

    def _open_pass(self, connection: CrmConnection, cancel_token: CancellationToken | None) -> SyncPass:
        provider = self.provider_factory.get_provider(connection)
        return SyncPass(
            connection=connection,
            connection_id=connection.id,
            provider=provider,
            resolver=LookupResolver(provider, connection),
            matcher=IdentityMatcher(provider, self.correlation, self.local_store),
            cancel_token=cancel_token,
        )

    @staticmethod
    def _coerce_entity_type(entity_type: LocalEntityType | str) -> LocalEntityType:
        try:
            return LocalEntityType(entity_type)
        except ValueError as exc:
            raise ConfigurationError(f"Unknown local entity type '{entity_type}'") from exc

    def _ensure_unlinked(self, ctx: SyncPass, local_type: LocalEntityType, local_id: int, remote_id: str) -> None:
        existing = self.correlation.get_by_local(ctx.connection_id, local_type, local_id)
        if existing is not None and existing.remote_entity_id != remote_id:
            raise ConflictError(
                f"Local {local_type.value} {local_id} is already linked to "
                f"{existing.remote_entity_name} {existing.remote_entity_id}",
                local_entity_id=local_id,
                remote_entity_id=remote_id,
                existing_counterpart=existing.remote_entity_id,
            )

    def _check_cancelled(self, ctx: SyncPass, result: SyncResult) -> bool:
        if result.cancelled:
            return True
        if ctx.cancelled:
            result.cancelled = True
            logger.warning(
                "Sync for connection %s cancelled after %s records (%s)",
                ctx.connection_id,
                result.stats.processed,
                ctx.cancel_token.reason if ctx.cancel_token else None,
            )
            return True
        return False

    def _tick(self, ctx: SyncPass, message: str, ok: bool) -> None:
        ctx.processed += 1
        if ctx.sync_id is None:
            return
        if ok:
            self.reporter.report_success(ctx.sync_id)
        else:
            self.reporter.report_failure(ctx.sync_id)
        if should_report(ctx.processed, ctx.total, self.progress_interval):
            self.reporter.report_progress(ctx.sync_id, ctx.processed, message)

    @staticmethod
    def _finish(result: SyncResult, success_message: str, failure_message: str) -> SyncResult:
        if result.cancelled:
            if SYNC_CANCELLED not in result.errors:
                result.add_error(SYNC_CANCELLED)
            return result.complete(f"Sync cancelled after {result.stats.processed} records")
        return result.complete(success_message if result.success else failure_message)

    def _record_failure(
        self,
        ctx: SyncPass,
        result: SyncResult,
        exc: Exception,
        *,
        message: str,
        mapping_id: int | None,
        local_type: LocalEntityType,
        local_id: int | None,
        remote_entity_name: str,
        remote_id: str | None,
        direction: SyncDirection,
        action: SyncAction,
        started: float,
    ) -> None:
        """Count, log and audit one failed record according to its error class."""

        stats = result.stats
        if isinstance(exc, ConflictError):
            stats.skipped += 1
            status = SyncStatus.CONFLICT
            outcome = "conflict"
            logger.warning("Conflict: %s", exc, extra={"crm_connection_id": ctx.connection_id})
        elif isinstance(exc, ValidationError):
            stats.skipped += 1
            status = SyncStatus.SKIPPED
            outcome = "skipped"
            logger.warning("Skipping record: %s", exc, extra={"crm_connection_id": ctx.connection_id})
        else:
            stats.failed += 1
            status = SyncStatus.FAILED
            outcome = "failed"
            logger.error(
                "%s",
                message,
                extra={
                    "crm_connection_id": ctx.connection_id,
                    "crm_mapping_id": mapping_id,
                    "crm_record_id": remote_id,
                },
            )
        result.add_error(message)
        record_sync_record(direction.value, outcome)

        details = None
        if isinstance(exc, ConflictError) and exc.existing_counterpart:
            details = f"existing counterpart: {exc.existing_counterpart}"
        self._append_log(
            ctx,
            mapping_id,
            local_type,
            local_id,
            remote_entity_name,
            remote_id,
            direction=direction,
            action=action,
            status=status,
            started=started,
            error=str(exc),
            details=details,
        )
        try:
            self.session.commit()
        except SQLAlchemyError:
            self.session.rollback()
            logger.exception("Failed to write sync log for %s %s", local_type.value, local_id)

    def _append_log(
        self,
        ctx: SyncPass,
        mapping_id: int | None,
        local_type: LocalEntityType | None,
        local_id: int | None,
        remote_entity_name: str | None,
        remote_id: str | None,
        *,
        direction: SyncDirection,
        action: SyncAction,
        status: SyncStatus,
        started: float,
        error: str | None = None,
        details: str | None = None,
        changed_fields: List[str] | None = None,
    ) -> None:
        self.session.add(
            SyncLog(
                connection_id=ctx.connection_id,
                entity_mapping_id=mapping_id,
                local_entity_type=local_type,
                local_entity_id=local_id,
                remote_entity_name=remote_entity_name,
                remote_entity_id=remote_id,
                direction=direction,
                action=action,
                status=status,
                error_message=error,
                error_details=details,
                changed_fields=changed_fields,
                duration_ms=self._elapsed_ms(started),
                synced_at=_utcnow(),
            )
        )

    def _record_connection_outcome(
        self, connection_id: int, result: SyncResult, *, last_sync_at: datetime | None
    ) -> None:
        connection = self.session.get(CrmConnection, connection_id)
        if connection is None:
            return
        if last_sync_at is not None:
            connection.last_sync_at = last_sync_at
        connection.last_sync_error = "; ".join(result.errors[:3]) if result.errors else None
        self.session.commit()

    @staticmethod
    def _elapsed_ms(started: float) -> int:
        return int((time.monotonic() - started) * 1000)

    def _rollback(self, ctx: SyncPass | None = None) -> None:
        """
        Discard the current unit of work.

        Given a pass, any token the provider obtained during that unit of work is
        written back and committed, so the remaining records keep using it and a
        rotated refresh token is not lost.
        """

        tokens = None
        if ctx is not None:
            # Expired attributes were never touched since the last commit.
            loaded = inspect(ctx.connection).dict
            tokens = {name: loaded[name] for name in TOKEN_FIELDS if name in loaded}
        try:
            self.session.rollback()
        except SQLAlchemyError:  # pragma: no cover - connection already gone
            logger.exception("Session rollback failed")
            return
        if not tokens:
            return
        connection = ctx.connection
        changed = {name: value for name, value in tokens.items() if getattr(connection, name) != value}
        if not changed:
            return
        try:
            for name, value in changed.items():
                setattr(connection, name, value)
            self.session.commit()
        except SQLAlchemyError:
            self.session.rollback()
            logger.exception(
                "Failed to keep refreshed credentials for connection %s",
                ctx.connection_id,
                extra={"crm_connection_id": ctx.connection_id},
            )


__all__ = ["SyncService", "SyncPass"]
