"""Append-only join event log — the recovery record for confirmed joins.

Once the chain confirms a join, the store still has to nullify the two old
commitments and record the new one. A crash between those two moments
would leave the store behind the chain. The saga therefore appends a
JOIN_CONFIRMED event holding everything needed to redo the store updates
before touching the store, and a POST_COMMIT_APPLIED event afterwards.
Any confirmed join without a matching applied event can be replayed.

Events are immutable once written. Each one carries the SHA-256 of its
canonical JSON; the JSONL file is verified on load and duplicate ids are
rejected.
"""

from __future__ import annotations

import enum
import hashlib
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional


class JoinEventKind(str, enum.Enum):
    """Classification of join events."""
    JOIN_CONFIRMED = "join_confirmed"
    POST_COMMIT_APPLIED = "post_commit_applied"


def _canonical_digest(
    event_id: str,
    event_kind: str,
    join_id: str,
    timestamp_utc: str,
    payload: dict[str, Any],
) -> str:
    canonical = json.dumps(
        {
            "event_id": event_id,
            "event_kind": event_kind,
            "join_id": join_id,
            "timestamp_utc": timestamp_utc,
            "payload": payload,
        },
        sort_keys=True,
        ensure_ascii=False,
    ).encode("utf-8")
    return f"sha256:{hashlib.sha256(canonical).hexdigest()}"


@dataclass(frozen=True)
class JoinEventRecord:
    """A single immutable event in the join log."""
    event_id: str
    event_kind: JoinEventKind
    join_id: str
    timestamp_utc: str
    payload: dict[str, Any]
    event_hash: str

    @staticmethod
    def create(
        event_kind: JoinEventKind,
        join_id: str,
        payload: dict[str, Any],
        timestamp_utc: Optional[datetime] = None,
    ) -> JoinEventRecord:
        """Create a new event record with computed hash."""
        ts = timestamp_utc or datetime.now(timezone.utc)
        ts_str = ts.strftime("%Y-%m-%dT%H:%M:%SZ")
        event_id = f"{join_id}:{event_kind.value}"
        return JoinEventRecord(
            event_id=event_id,
            event_kind=event_kind,
            join_id=join_id,
            timestamp_utc=ts_str,
            payload=payload,
            event_hash=_canonical_digest(event_id, event_kind.value, join_id, ts_str, payload),
        )


class JoinEventLog:
    """Append-only join log with optional JSONL persistence."""

    def __init__(self, storage_path: Optional[Path] = None) -> None:
        self._events: list[JoinEventRecord] = []
        self._event_ids: set[str] = set()
        self._storage_path = storage_path

        if storage_path and storage_path.exists():
            self._load_from_file(storage_path)

    def append(self, event: JoinEventRecord) -> None:
        """Append an event. Raises ValueError on a duplicate event id."""
        if event.event_id in self._event_ids:
            raise ValueError(f"Duplicate event ID: {event.event_id}")
        self._events.append(event)
        self._event_ids.add(event.event_id)
        if self._storage_path:
            self._append_to_file(event)

    def events(self, kind: Optional[JoinEventKind] = None) -> list[JoinEventRecord]:
        if kind is None:
            return list(self._events)
        return [e for e in self._events if e.event_kind == kind]

    def pending(self) -> list[JoinEventRecord]:
        """Confirmed joins whose store updates were never recorded as applied."""
        applied = {
            e.join_id for e in self._events
            if e.event_kind == JoinEventKind.POST_COMMIT_APPLIED
        }
        return [
            e for e in self._events
            if e.event_kind == JoinEventKind.JOIN_CONFIRMED and e.join_id not in applied
        ]

    def is_applied(self, join_id: str) -> bool:
        return f"{join_id}:{JoinEventKind.POST_COMMIT_APPLIED.value}" in self._event_ids

    @property
    def count(self) -> int:
        return len(self._events)

    def _append_to_file(self, event: JoinEventRecord) -> None:
        record = {
            "event_id": event.event_id,
            "event_kind": event.event_kind.value,
            "join_id": event.join_id,
            "timestamp_utc": event.timestamp_utc,
            "payload": event.payload,
            "event_hash": event.event_hash,
        }
        self._storage_path.parent.mkdir(parents=True, exist_ok=True)
        with self._storage_path.open("a", encoding="utf-8") as f:
            f.write(json.dumps(record, sort_keys=True, ensure_ascii=False) + "\n")

    def _load_from_file(self, path: Path) -> None:
        """Load events, failing on tampered records or duplicate ids."""
        with path.open("r", encoding="utf-8") as f:
            for line_num, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                data = json.loads(line)
                event_id = data["event_id"]
                if event_id in self._event_ids:
                    raise ValueError(
                        f"Duplicate event ID on recovery (line {line_num}): {event_id}"
                    )
                expected_hash = _canonical_digest(
                    event_id,
                    data["event_kind"],
                    data["join_id"],
                    data["timestamp_utc"],
                    data["payload"],
                )
                if data["event_hash"] != expected_hash:
                    raise ValueError(
                        f"Integrity check failed (line {line_num}): event {event_id} "
                        f"stored hash {data['event_hash']} != computed {expected_hash}"
                    )
                event = JoinEventRecord(
                    event_id=event_id,
                    event_kind=JoinEventKind(data["event_kind"]),
                    join_id=data["join_id"],
                    timestamp_utc=data["timestamp_utc"],
                    payload=data["payload"],
                    event_hash=data["event_hash"],
                )
                self._events.append(event)
                self._event_ids.add(event_id)
