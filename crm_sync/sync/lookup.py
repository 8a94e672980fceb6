"""
Lookup resolver: picks the wire-level field used to write a relationship.

One resolver lives for one sync pass against one connection. Its cache is never
invalidated mid-pass; discard the resolver to pick up schema changes.
"""

from __future__ import annotations

import logging
import threading
from typing import Dict, Sequence, Set, Tuple

from crm_sync.models.crm.schema import CrmConnection

from .errors import ProviderError
from .providers.base import CrmProvider, LookupFieldInfo


def choose_lookup_field(
    candidates: Sequence[LookupFieldInfo], target_entity: str, hint: str | None
) -> LookupFieldInfo | None:
    """
    Pick one candidate deterministically.

    A single candidate wins outright. With several, the first whose logical or
    binding name starts with the configured hint (case-insensitive) wins, else
    the first candidate in discovery order.
    """

    if not candidates:
        return None
    if len(candidates) == 1:
        return candidates[0]
    hint = (hint or "").strip().lower()
    if hint:
        for candidate in candidates:
            if matches_hint(candidate, target_entity, hint):
                return candidate
    return candidates[0]


def matches_hint(candidate: LookupFieldInfo, target_entity: str, hint: str) -> bool:
    hint = hint.strip().lower()
    names = (candidate.logical_name.lower(), candidate.binding_name(target_entity).lower())
    return any(name.startswith(hint) for name in names)


class LookupResolver:
    """Per-pass cache of (source entity, target entity) -> lookup field."""

    def __init__(
        self,
        provider: CrmProvider,
        connection: CrmConnection,
        *,
        logger: logging.Logger | None = None,
    ) -> None:
        self.provider = provider
        self.connection = connection
        self.logger = logger or logging.getLogger(__name__)
        self._cache: Dict[str, LookupFieldInfo | None] = {}
        self._ignored_hints: Set[Tuple[str, str]] = set()
        self._lock = threading.Lock()

    @staticmethod
    def cache_key(source_entity: str, target_entity: str) -> str:
        # The hint is not part of the key; the first resolution serves every later caller.
        return f"{source_entity.lower()}:{target_entity.lower()}"

    def resolve_field(
        self, source_entity: str, target_entity: str, hint: str | None = None
    ) -> LookupFieldInfo | None:
        key = self.cache_key(source_entity, target_entity)
        with self._lock:
            if key in self._cache:
                cached = self._cache[key]
                self._note_ignored_hint(key, cached, target_entity, hint)
                return cached

        self.logger.info(
            "Discovering lookup field on '%s' that targets '%s'",
            source_entity,
            target_entity,
            extra={"crm_connection_id": self.connection.id, "crm_entity": source_entity},
        )
        try:
            candidates = list(self.provider.discover_lookup_fields(self.connection, source_entity, target_entity))
        except ProviderError as exc:
            # Failures are not cached.
            self.logger.warning(
                "Error discovering lookup field on '%s' targeting '%s': %s", source_entity, target_entity, exc
            )
            return None

        chosen = choose_lookup_field(candidates, target_entity, hint)
        if chosen is None:
            self.logger.warning("No lookup field found on '%s' that targets '%s'", source_entity, target_entity)
        elif len(candidates) > 1:
            self.logger.info(
                "Multiple lookup fields on '%s' target '%s': [%s]. Using '%s'",
                source_entity,
                target_entity,
                ", ".join(candidate.logical_name for candidate in candidates),
                chosen.binding_name(target_entity),
            )

        with self._lock:
            # First writer wins.
            return self._cache.setdefault(key, chosen)

    def _note_ignored_hint(
        self, key: str, cached: LookupFieldInfo | None, target_entity: str, hint: str | None
    ) -> None:
        hint = (hint or "").strip()
        if cached is None or not hint or matches_hint(cached, target_entity, hint):
            return
        if (key, hint.lower()) in self._ignored_hints:
            return
        self._ignored_hints.add((key, hint.lower()))
        self.logger.warning(
            "Lookup hint '%s' for %s does not match the cached field '%s'; keeping '%s'",
            hint,
            key,
            cached.logical_name,
            cached.binding_name(target_entity),
            extra={"crm_connection_id": self.connection.id},
        )

    def resolve(self, source_entity: str, target_entity: str, hint: str | None = None) -> str | None:
        """Return the wire-level binding name, or None when unresolved."""

        info = self.resolve_field(source_entity, target_entity, hint)
        if info is None:
            return None
        return info.binding_name(target_entity)

    def snapshot(self) -> Dict[str, Tuple[str, str] | None]:
        with self._lock:
            return {
                key: (info.logical_name, info.binding_name(key.split(":", 1)[1])) if info else None
                for key, info in self._cache.items()
            }

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()
            self._ignored_hints.clear()


__all__ = ["LookupResolver", "choose_lookup_field", "matches_hint"]
