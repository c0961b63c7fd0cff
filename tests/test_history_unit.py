from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from farmrun.errors import HistoryConflictError, HistoryStoreRaceWarning, VersionConflictError
from farmrun.schemas import HistoryEntry, HistoryEntryCreate, RunRecord
from farmrun.services.history import HistoryStore, entry_from_run, new_entry
from farmrun.services.storage import LocalObjectStore

BASE = datetime(2024, 5, 1, 8, 0, tzinfo=timezone.utc)


def _run(run_id: str, minutes: int, status: str = "COMPLETED", **kwargs) -> RunRecord:
    created = BASE + timedelta(minutes=minutes)
    fields = dict(
        run_handle=f"arn:aws:devicefarm:us-west-2:123:run:proj/{run_id}",
        name="Device Farm Test Run 1",
        status=status,
        result="PASSED",
        platform="ANDROID_APP",
        created_at=created.isoformat(),
        started_at=(created + timedelta(seconds=30)).isoformat(),
        stopped_at=(created + timedelta(seconds=150)).isoformat(),
    )
    fields.update(kwargs)
    return RunRecord(**fields)


class RacingStore(LocalObjectStore):
    """Loses the first ``losses`` conditional writes to a concurrent writer."""

    def __init__(self, root: Path, losses: int) -> None:
        super().__init__(root)
        self.losses = losses
        self.puts = 0

    def put(self, key, body, *, content_type="application/octet-stream", metadata=None, if_version=None, if_absent=False):
        self.puts += 1
        if self.losses > 0:
            self.losses -= 1
            raise VersionConflictError("someone else wrote first")
        return super().put(
            key, body, content_type=content_type, metadata=metadata, if_version=if_version, if_absent=if_absent
        )


@pytest.mark.unit
def test_missing_history_document_loads_empty(tmp_path: Path) -> None:
    assert HistoryStore(LocalObjectStore(tmp_path)).load() == []


@pytest.mark.unit
def test_reconcile_preserves_user_fields_and_overwrites_remote_ones(tmp_path: Path) -> None:
    store = HistoryStore(LocalObjectStore(tmp_path))
    run = _run("abc123", 0)
    store.record(
        HistoryEntry(
            id="abc123",
            name="Login smoke on Pixel",
            status="RUNNING",
            created_at=BASE.isoformat(),
            run_handle=run.run_handle,
            is_remote_run=True,
            test_mode="single_case",
            test="test/e2e/login.e2e.ts",
            test_case="should login",
            build="app-release.apk",
        )
    )

    result = store.reconcile([run])

    assert (result.synced, result.added, result.completed, result.total) == (1, 0, 1, 1)
    entry = result.history[0]
    assert entry.name == "Login smoke on Pixel"
    assert entry.test == "test/e2e/login.e2e.ts"
    assert entry.test_case == "should login"
    assert entry.test_mode == "single_case"
    assert entry.build == "app-release.apk"
    assert entry.status == "COMPLETED"
    assert entry.result == "PASSED"
    assert entry.duration_seconds == 120
    assert entry.has_report is True
    assert [e.model_dump() for e in store.load()] == [e.model_dump() for e in result.history]


@pytest.mark.unit
def test_reconcile_ignores_unfinished_runs_and_adds_new_ones(tmp_path: Path) -> None:
    store = HistoryStore(LocalObjectStore(tmp_path))

    result = store.reconcile([_run("done", 5), _run("busy", 10, status="RUNNING")])

    assert result.added == 1
    assert result.completed == 1
    assert result.total == 2
    assert [entry.id for entry in result.history] == ["done"]
    assert result.history[0].platform == "android"
    assert result.history[0].name == "Device Farm Test"


@pytest.mark.unit
def test_history_is_capped_and_sorted_newest_first(tmp_path: Path) -> None:
    store = HistoryStore(LocalObjectStore(tmp_path), limit=100)
    runs = [_run(f"run-{index:03d}", minutes=(index * 37) % 150) for index in range(150)]

    result = store.reconcile(runs)

    assert len(result.history) == 100
    stamps = [entry.created_at for entry in result.history]
    assert stamps == sorted(stamps, reverse=True)

    again = store.reconcile([_run("late", minutes=500)])
    assert len(again.history) == 100
    assert again.history[0].id == "late"


@pytest.mark.unit
def test_conflicting_write_is_recomputed(tmp_path: Path) -> None:
    backing = RacingStore(tmp_path, losses=2)
    store = HistoryStore(backing)

    with pytest.warns(HistoryStoreRaceWarning):
        result = store.reconcile([_run("abc123", 0)])

    assert result.added == 1
    assert backing.puts == 3
    assert [entry.id for entry in store.load()] == ["abc123"]


@pytest.mark.unit
def test_persistent_conflicts_raise(tmp_path: Path) -> None:
    store = HistoryStore(RacingStore(tmp_path, losses=5), max_attempts=3)

    with pytest.warns(HistoryStoreRaceWarning):
        with pytest.raises(HistoryConflictError):
            store.reconcile([_run("abc123", 0)])


@pytest.mark.unit
def test_stale_version_is_rejected_by_store(tmp_path: Path) -> None:
    backing = LocalObjectStore(tmp_path)
    version = backing.put_json("test-history.json", [], if_absent=True)
    backing.put_json("test-history.json", [{"id": "x"}], if_version=version)

    with pytest.raises(VersionConflictError):
        backing.put_json("test-history.json", [], if_version=version)


@pytest.mark.unit
def test_record_upserts_by_identity(tmp_path: Path) -> None:
    store = HistoryStore(LocalObjectStore(tmp_path))
    first = store.record(new_entry(HistoryEntryCreate(id="entry-1", name="First", created_at=BASE.isoformat())))
    store.record(new_entry(HistoryEntryCreate(id="entry-2", name="Second", created_at=(BASE + timedelta(minutes=1)).isoformat())))

    updated = store.record(new_entry(HistoryEntryCreate(id="entry-1", status="COMPLETED", created_at=BASE.isoformat())))

    assert first.status == "RUNNING"
    assert updated.name == "First"
    assert updated.status == "COMPLETED"
    assert [entry.id for entry in store.load()] == ["entry-2", "entry-1"]


@pytest.mark.unit
def test_new_entry_fills_identity_and_timestamp() -> None:
    entry = new_entry(HistoryEntryCreate(name="Ad hoc"))

    assert entry.id.startswith("entry-")
    assert entry.created_at
    assert entry.status == "RUNNING"
    assert entry.platform == "unknown"


@pytest.mark.unit
def test_duration_is_absent_without_both_timestamps() -> None:
    entry = entry_from_run(_run("abc", 0, started_at=None, platform="IOS_APP"))

    assert entry.duration_seconds is None
    assert entry.platform == "ios"
