"""
Materialized view of one entity collection.

The view is an explicit two-layer arena:
- baseline: last confirmed remote value per entity id
- overlay: pending local mutations per entity id, in FIFO order

Reads compose the two layers (baseline, then each pending mutation) and
recompute derived fields through an optional per-collection hook. Nothing
is mutated in place on read, so the composed value can be recomputed at
any time from the layers alone.

Writers must hold the entity's lock (lock(entity_id)) while changing
either layer; the Reconciler is the only writer. A lock is dropped once
nobody holds or waits for it and the entity has neither layer left.
"""

import asyncio
import contextlib
import copy
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any, Callable

from helpdesk_sync.sync.payload import merge_payload, replace_id
from helpdesk_sync.sync.types import MutationKind, PendingMutation
from helpdesk_sync.types import EntityType

DeriveHook = Callable[[dict[str, Any]], dict[str, Any]]


@dataclass
class _EntityLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    # Coroutines holding or waiting for the lock
    users: int = 0


class MaterializedView:
    """
    Baseline + overlay arena for one collection.

    Example:
        view = MaterializedView(EntityType.TICKETS, derive=derive_ticket_fields)
        async with view.lock("T-1"):
            view.set_baseline("T-1", remote_value)
            view.set_overlay("T-1", pending_for_t1)
        ticket = view.get("T-1")
    """

    def __init__(self, entity_type: EntityType, derive: DeriveHook | None = None) -> None:
        self.entity_type = entity_type
        self.derive = derive
        self._baseline: dict[str, dict[str, Any]] = {}
        self._overlay: dict[str, list[PendingMutation]] = {}
        self._locks: dict[str, _EntityLock] = {}

    @contextlib.asynccontextmanager
    async def lock(self, entity_id: str) -> AsyncIterator[None]:
        """Mutual-exclusion boundary for writes to one entity."""
        entry = self._locks.setdefault(entity_id, _EntityLock())
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            self._prune_lock(entity_id, entry)

    def _prune_lock(self, entity_id: str, entry: _EntityLock) -> None:
        if entry.users or self._locks.get(entity_id) is not entry:
            return
        if entity_id not in self._baseline and entity_id not in self._overlay:
            del self._locks[entity_id]

    def lock_count(self) -> int:
        """Number of per-entity locks currently kept."""
        return len(self._locks)

    # Layers

    def baseline(self, entity_id: str) -> dict[str, Any] | None:
        return self._baseline.get(entity_id)

    def overlay(self, entity_id: str) -> list[PendingMutation]:
        return list(self._overlay.get(entity_id, []))

    def pending_count(self, entity_id: str) -> int:
        return len(self._overlay.get(entity_id, []))

    def overlay_fields(self, entity_id: str) -> set[str]:
        """Fields written by any pending mutation of the entity."""
        fields: set[str] = set()
        for mutation in self._overlay.get(entity_id, []):
            fields.update(mutation.payload)
        return fields

    def set_baseline(self, entity_id: str, value: dict[str, Any]) -> None:
        self._baseline[entity_id] = copy.deepcopy(value)

    def remove_baseline(self, entity_id: str) -> None:
        self._baseline.pop(entity_id, None)

    def baseline_ids(self) -> list[str]:
        return list(self._baseline)

    def set_overlay(self, entity_id: str, mutations: list[PendingMutation]) -> None:
        """Replace the pending overlay of an entity (FIFO order)."""
        if mutations:
            self._overlay[entity_id] = [m.model_copy(deep=True) for m in mutations]
        else:
            self._overlay.pop(entity_id, None)

    def rekey(self, old_id: str, new_id: str) -> None:
        """
        Replace a temporary id with the remote id in both layers.

        Moves the entity's own entries and rewrites any reference to the
        old id inside other entities and pending payloads.
        """
        if old_id in self._baseline:
            self._baseline[new_id] = self._baseline.pop(old_id)
        if old_id in self._overlay:
            self._overlay[new_id] = self._overlay.pop(old_id)
        if old_id in self._locks:
            self._locks.setdefault(new_id, self._locks.pop(old_id))

        for entity_id, value in self._baseline.items():
            self._baseline[entity_id] = replace_id(value, old_id, new_id)
        for mutations in self._overlay.values():
            for mutation in mutations:
                if mutation.target_entity_id == old_id:
                    mutation.target_entity_id = new_id
                mutation.payload = replace_id(mutation.payload, old_id, new_id)

    # Composition

    def get(self, entity_id: str) -> dict[str, Any] | None:
        """
        Compose the visible value of an entity.

        Returns None if the entity is unknown or deleted by a pending
        mutation. Pending updates to an entity not yet seen in the
        baseline stay invisible until the baseline arrives.
        """
        value = copy.deepcopy(self._baseline.get(entity_id))
        for mutation in self._overlay.get(entity_id, []):
            if mutation.kind == MutationKind.DELETE:
                value = None
            elif mutation.kind == MutationKind.CREATE:
                value = merge_payload(value or {}, mutation.payload)
            elif value is not None:
                value = merge_payload(value, mutation.payload)

        if value is not None:
            value["id"] = entity_id
            if self.derive:
                value = self.derive(value)
        return value

    def snapshot(self) -> dict[str, dict[str, Any]]:
        """Composed value of every visible entity, keyed by id."""
        ids = list(self._baseline)
        ids.extend(entity_id for entity_id in self._overlay if entity_id not in self._baseline)

        result = {}
        for entity_id in ids:
            value = self.get(entity_id)
            if value is not None:
                result[entity_id] = value
        return result
