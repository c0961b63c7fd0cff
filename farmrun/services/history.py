from __future__ import annotations

import logging
import time
import warnings
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Iterable, List, Optional, Tuple, TypeVar

from pydantic import ValidationError

from farmrun.constants import COMPLETED_RUN_STATUS, DEFAULT_HISTORY_KEY, DEFAULT_HISTORY_LIMIT
from farmrun.errors import HistoryConflictError, HistoryStoreRaceWarning, VersionConflictError
from farmrun.schemas import HistoryEntry, HistoryEntryCreate, RunRecord
from farmrun.services.devicefarm import run_id_from_handle
from farmrun.services.storage import ObjectStore

LOGGER = logging.getLogger("farmrun.history")

T = TypeVar("T")

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


def _parse(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _sort_key(entry: HistoryEntry) -> datetime:
    return _parse(entry.created_at) or _EPOCH


def duration_seconds(run: RunRecord) -> Optional[int]:
    started = _parse(run.started_at)
    stopped = _parse(run.stopped_at)
    if started is None or stopped is None:
        return None
    return round((stopped - started).total_seconds())


def entry_from_run(run: RunRecord) -> HistoryEntry:
    name = run.name or ""
    platform = (run.platform or "").upper()
    return HistoryEntry(
        id=run_id_from_handle(run.run_handle),
        name="Device Farm Test" if not name or "Test Run" in name else name,
        status=run.status or "UNKNOWN",
        result=run.result,
        created_at=run.created_at or _utcnow(),
        duration_seconds=duration_seconds(run),
        platform="android" if platform == "ANDROID_APP" else "ios",
        is_remote_run=True,
        run_handle=run.run_handle,
        device="AWS Device Farm",
        has_report=run.status == COMPLETED_RUN_STATUS,
    )


def new_entry(payload: HistoryEntryCreate) -> HistoryEntry:
    fields = payload.model_dump(exclude_none=True)
    fields.setdefault("id", f"entry-{int(time.time() * 1000)}")
    fields.setdefault("created_at", _utcnow())
    return HistoryEntry(**fields)


@dataclass
class ReconcileResult:
    history: List[HistoryEntry]
    synced: int
    added: int
    completed: int
    total: int


def _matches(entry: HistoryEntry, candidate: HistoryEntry) -> bool:
    if candidate.run_handle and entry.run_handle == candidate.run_handle:
        return True
    return entry.id == candidate.id


class HistoryStore:
    """Newest-first, capped run log kept in a single JSON document.

    Writes are conditional on the version read; a lost race re-reads and
    recomputes the merge.
    """

    def __init__(
        self,
        store: ObjectStore,
        key: str = DEFAULT_HISTORY_KEY,
        limit: int = DEFAULT_HISTORY_LIMIT,
        max_attempts: int = 3,
    ) -> None:
        self._store = store
        self._key = key
        self._limit = limit
        self._max_attempts = max_attempts

    def _read(self) -> Tuple[List[HistoryEntry], Optional[str]]:
        payload, version = self._store.get_json(self._key)
        if payload is None:
            return [], None
        if not isinstance(payload, list):
            LOGGER.warning("History document %s is not a list; starting empty", self._key)
            return [], version
        entries: List[HistoryEntry] = []
        for item in payload:
            try:
                entries.append(HistoryEntry.model_validate(item))
            except ValidationError as exc:
                LOGGER.warning("Dropping malformed history entry: %s", exc.errors()[:1])
        return entries, version

    def _normalize(self, entries: List[HistoryEntry]) -> List[HistoryEntry]:
        ordered = sorted(entries, key=_sort_key, reverse=True)
        return ordered[: self._limit]

    def _update(self, mutate: Callable[[List[HistoryEntry]], T]) -> Tuple[List[HistoryEntry], T]:
        for attempt in range(1, self._max_attempts + 1):
            entries, version = self._read()
            outcome = mutate(entries)
            entries = self._normalize(entries)
            payload = [entry.model_dump(by_alias=True) for entry in entries]
            try:
                if version is None:
                    self._store.put_json(self._key, payload, if_absent=True)
                else:
                    self._store.put_json(self._key, payload, if_version=version)
            except VersionConflictError as exc:
                message = f"History write lost a race (attempt {attempt}/{self._max_attempts}): {exc}"
                LOGGER.warning("%s", message)
                warnings.warn(message, HistoryStoreRaceWarning, stacklevel=3)
                continue
            return entries, outcome
        raise HistoryConflictError(
            f"History document {self._key} kept changing; gave up after {self._max_attempts} attempts"
        )

    def load(self) -> List[HistoryEntry]:
        entries, _ = self._read()
        return self._normalize(entries)

    def reconcile(self, remote_runs: Iterable[RunRecord]) -> ReconcileResult:
        runs = list(remote_runs)
        completed = [run for run in runs if run.status == COMPLETED_RUN_STATUS]

        def merge(entries: List[HistoryEntry]) -> Tuple[int, int]:
            synced = added = 0
            for run in completed:
                incoming = entry_from_run(run)
                index = next((i for i, entry in enumerate(entries) if _matches(entry, incoming)), None)
                if index is None:
                    entries.insert(0, incoming)
                    added += 1
                    continue
                existing = entries[index]
                entries[index] = existing.model_copy(
                    update={
                        "status": incoming.status,
                        "result": incoming.result,
                        "duration_seconds": incoming.duration_seconds,
                        "created_at": incoming.created_at,
                        "platform": incoming.platform,
                        "has_report": incoming.has_report,
                        "is_remote_run": True,
                        "run_handle": incoming.run_handle,
                        "device": existing.device or incoming.device,
                    }
                )
                synced += 1
            return synced, added

        history, (synced, added) = self._update(merge)
        LOGGER.info(
            "Reconciled history: %s synced, %s added from %s completed of %s runs",
            synced,
            added,
            len(completed),
            len(runs),
        )
        return ReconcileResult(
            history=history,
            synced=synced,
            added=added,
            completed=len(completed),
            total=len(runs),
        )

    def record(self, entry: HistoryEntry) -> HistoryEntry:
        """Insert ``entry`` at the head, or update the entry with the same identity."""

        def upsert(entries: List[HistoryEntry]) -> HistoryEntry:
            for index, existing in enumerate(entries):
                if _matches(existing, entry):
                    merged = existing.model_copy(update=entry.model_dump(exclude_unset=True))
                    entries[index] = merged
                    return merged
            entries.insert(0, entry)
            return entry

        _, stored = self._update(upsert)
        return stored
