"""
Optimistic in-memory mirror of action plans.

Callers that render plans (dashboards, bulk editors) keep a PlanMirror,
apply their edit locally for responsiveness, then run the authoritative write
against the store. The store row that comes back replaces the local copy
wholesale. If the write fails, the entry is re-fetched and replaced; local
changes are never patched on top of store state.

Every entry remembers the store version it was last confirmed at. A row with
a lower version than that (a slow response overtaken by a newer one) is
ignored.
"""

from __future__ import annotations

import copy
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)

PlanRow = Dict[str, Any]


@dataclass
class MirrorEntry:
    confirmed: PlanRow
    current: PlanRow
    pending: int = 0

    @property
    def version(self) -> int:
        return int(self.confirmed.get("version") or 0)


class PlanMirror:
    def __init__(self, fetch: Callable[[str], Optional[PlanRow]]) -> None:
        self._fetch = fetch
        self._entries: Dict[str, MirrorEntry] = {}
        self._lock = threading.Lock()

    def load(self, rows: Iterable[PlanRow]) -> None:
        with self._lock:
            self._entries = {
                row["id"]: MirrorEntry(confirmed=copy.deepcopy(row), current=copy.deepcopy(row))
                for row in rows
            }

    def get(self, plan_id: str) -> Optional[PlanRow]:
        with self._lock:
            entry = self._entries.get(plan_id)
            return copy.deepcopy(entry.current) if entry else None

    def items(self) -> List[PlanRow]:
        with self._lock:
            return [copy.deepcopy(entry.current) for entry in self._entries.values()]

    def version(self, plan_id: str) -> Optional[int]:
        with self._lock:
            entry = self._entries.get(plan_id)
            return entry.version if entry else None

    def is_pending(self, plan_id: str) -> bool:
        with self._lock:
            entry = self._entries.get(plan_id)
            return bool(entry and entry.pending)

    def apply_optimistic(self, plan_id: str, changes: Dict[str, Any]) -> PlanRow:
        with self._lock:
            entry = self._entries.get(plan_id)
            if entry is None:
                raise KeyError(plan_id)
            entry.current = {**entry.current, **copy.deepcopy(changes)}
            entry.pending += 1
            return copy.deepcopy(entry.current)

    def confirm(self, row: PlanRow) -> bool:
        """Replace the entry with an authoritative row. False when the row is stale."""
        plan_id = row["id"]
        with self._lock:
            entry = self._entries.get(plan_id)
            if entry is not None:
                entry.pending = max(0, entry.pending - 1)
                if int(row.get("version") or 0) < entry.version:
                    logger.info(
                        "Ignoring stale row for plan %s (v%s < v%s)",
                        plan_id,
                        row.get("version"),
                        entry.version,
                    )
                    if not entry.pending:
                        entry.current = copy.deepcopy(entry.confirmed)
                    return False
            self._entries[plan_id] = MirrorEntry(
                confirmed=copy.deepcopy(row),
                current=copy.deepcopy(row),
                pending=entry.pending if entry else 0,
            )
            return True

    def reconcile(self, plan_id: str) -> Optional[PlanRow]:
        """Drop local state for the plan and take whatever the store holds now."""
        row = self._fetch(plan_id)
        with self._lock:
            entry = self._entries.get(plan_id)
            if row is None:
                self._entries.pop(plan_id, None)
                return None
            if entry is not None and int(row.get("version") or 0) < entry.version:
                entry.current = copy.deepcopy(entry.confirmed)
                entry.pending = 0
                return copy.deepcopy(entry.current)
            self._entries[plan_id] = MirrorEntry(confirmed=copy.deepcopy(row), current=copy.deepcopy(row))
            return copy.deepcopy(row)

    def write(
        self,
        plan_id: str,
        changes: Dict[str, Any],
        operation: Callable[[], PlanRow],
    ) -> PlanRow:
        """
        Optimistic write: local change first, then the store call.

        On failure the entry is reconciled against the store and the error
        is re-raised for the caller to surface.
        """
        self.apply_optimistic(plan_id, changes)
        try:
            row = operation()
        except Exception:
            logger.warning("Write to plan %s failed; reconciling from store", plan_id)
            self.reconcile(plan_id)
            raise
        self.confirm(row)
        return self.get(plan_id) or row
