"""Durable session records and the registry that owns them."""

from __future__ import annotations

import json
import os
import threading
import time
from dataclasses import asdict, dataclass, fields, replace
from pathlib import Path
from typing import Any

from attofleet.logger import get_logger

log = get_logger(__name__)


@dataclass(slots=True)
class SessionRecord:
    """One agent session bound to a git worktree and branch."""

    id: str
    repo_path: str = ""
    worktree: str = ""
    branch: str = ""
    base_branch: str = ""
    name: str = ""
    created_at: float = 0.0
    started: bool = False  # agent process has been launched at least once

    autonomous: bool = False
    is_supervisor: bool = False
    supervisor_id: str = ""
    parent_id: str = ""
    broadcast_group_id: str = ""

    pr_created: bool = False
    pr_merged: bool = False
    pr_comments_addressed_count: int = 0
    merged_to_parent: bool = False  # child branch merged into its supervisor

    @property
    def display_name(self) -> str:
        return self.branch or self.name or self.id

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> SessionRecord:
        allowed = {f.name for f in fields(cls)}
        record = cls(**{k: v for k, v in raw.items() if k in allowed})
        if record.pr_merged:
            record.pr_created = True
        record.pr_comments_addressed_count = max(int(record.pr_comments_addressed_count), 0)
        return record


class SessionRegistry:
    """Thread-safe collection of :class:`SessionRecord` with JSON persistence.

    Readers get copies; every mutation goes through a named method so the
    record invariants (merged implies created, monotonic comment count) hold
    at all times.
    """

    def __init__(self, records: list[SessionRecord] | None = None) -> None:
        self._lock = threading.RLock()
        self._records: dict[str, SessionRecord] = {}
        for record in records or []:
            self.add(record)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, session_id: str) -> SessionRecord | None:
        with self._lock:
            record = self._records.get(session_id)
            return replace(record) if record is not None else None

    def all(self) -> list[SessionRecord]:
        with self._lock:
            return [replace(r) for r in self._records.values()]

    def by_broadcast_group(self, group_id: str) -> list[SessionRecord]:
        if not group_id:
            return []
        with self._lock:
            return [replace(r) for r in self._records.values() if r.broadcast_group_id == group_id]

    def children_of(self, supervisor_id: str) -> list[SessionRecord]:
        if not supervisor_id:
            return []
        with self._lock:
            return [replace(r) for r in self._records.values() if r.supervisor_id == supervisor_id]

    def __contains__(self, session_id: object) -> bool:
        with self._lock:
            return session_id in self._records

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def add(self, record: SessionRecord) -> None:
        stored = replace(record)
        if not stored.created_at:
            stored.created_at = time.time()
        if stored.pr_merged:
            stored.pr_created = True
        with self._lock:
            self._records[stored.id] = stored

    def remove(self, session_id: str) -> bool:
        with self._lock:
            return self._records.pop(session_id, None) is not None

    def clear_orphaned_parent_ids(self, deleted_ids: list[str]) -> None:
        """Drop parent links that point at deleted sessions."""
        gone = set(deleted_ids)
        with self._lock:
            for record in self._records.values():
                if record.parent_id in gone:
                    record.parent_id = ""
                if record.supervisor_id in gone:
                    record.supervisor_id = ""

    def mark_started(self, session_id: str) -> bool:
        return self._update(session_id, started=True)

    def mark_pr_created(self, session_id: str) -> bool:
        return self._update(session_id, pr_created=True)

    def mark_pr_merged(self, session_id: str) -> bool:
        return self._update(session_id, pr_created=True, pr_merged=True)

    def mark_merged_to_parent(self, session_id: str) -> bool:
        return self._update(session_id, merged_to_parent=True)

    def set_autonomous(self, session_id: str, autonomous: bool) -> bool:
        return self._update(session_id, autonomous=autonomous)

    def update_pr_comments_addressed_count(self, session_id: str, count: int) -> bool:
        """Raise the addressed-comment high-water mark; never lowers it."""
        with self._lock:
            record = self._records.get(session_id)
            if record is None:
                return False
            record.pr_comments_addressed_count = max(record.pr_comments_addressed_count, count)
            return True

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def save(self, path: str | Path) -> None:
        with self._lock:
            data = {"sessions": [r.to_dict() for r in self._records.values()]}
        _write_json_atomic(Path(path), data)

    @classmethod
    def load(cls, path: str | Path) -> SessionRegistry:
        p = Path(path)
        if not p.exists():
            return cls()
        try:
            raw = json.loads(p.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            log.warning("session registry unreadable, starting empty", path=str(p), error=str(exc))
            return cls()
        items = raw.get("sessions", []) if isinstance(raw, dict) else []
        records = [SessionRecord.from_dict(item) for item in items if isinstance(item, dict) and item.get("id")]
        return cls(records)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _update(self, session_id: str, **changes: Any) -> bool:
        with self._lock:
            record = self._records.get(session_id)
            if record is None:
                return False
            for key, value in changes.items():
                setattr(record, key, value)
            return True


def _write_json_atomic(path: Path, data: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    payload = json.dumps(data, indent=2, sort_keys=False) + "\n"
    with tmp.open("w", encoding="utf-8") as handle:
        handle.write(payload)
        handle.flush()
        os.fsync(handle.fileno())
    os.replace(tmp, path)
