from __future__ import annotations

import http.client
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

import pytest

from farmrun.errors import (
    ArtifactNotFoundError,
    RemoteServiceError,
    UploadCreationError,
    UploadFailedError,
    UploadTimeoutError,
    UploadTransferError,
)
from farmrun.schemas import BackoffKind, Platform, PollPolicy, RemoteUpload, UploadKind, UploadStatus
from farmrun.services.storage import LocalObjectStore
from farmrun.services.uploads import (
    BytesPayload,
    StoredObjectPayload,
    UploadEngine,
    UploadJob,
    upload_type_for,
)


class StubUploadBackend:
    def __init__(self, statuses: List[Optional[str]], *, slot_url: Optional[str] = "https://put.example/slot") -> None:
        self.statuses = list(statuses)
        self.slot_url = slot_url
        self.created: List[Dict[str, object]] = []
        self.polls = 0
        self.existing: List[RemoteUpload] = []
        self.fail_create = False

    def create_upload(self, project_handle, name, upload_type, content_type=None) -> RemoteUpload:
        if self.fail_create:
            raise RemoteServiceError("limit exceeded")
        self.created.append(
            {"project": project_handle, "name": name, "type": upload_type, "content_type": content_type}
        )
        return RemoteUpload(handle="arn:upload/1", name=name, status="INITIALIZED", url=self.slot_url)

    def get_upload(self, upload_handle: str) -> RemoteUpload:
        self.polls += 1
        status = self.statuses.pop(0) if self.statuses else "PROCESSING"
        return RemoteUpload(handle=upload_handle, status=status, message="metadata invalid" if status == "FAILED" else None)

    def list_uploads(self, project_handle: str, upload_type: str) -> List[RemoteUpload]:
        return list(self.existing)


class RecordingTransfer:
    def __init__(self, status: int = 200) -> None:
        self.status = status
        self.calls: List[Dict[str, object]] = []

    def __call__(self, url: str, body: bytes, content_type: str) -> int:
        self.calls.append({"url": url, "size": len(body), "content_type": content_type})
        return self.status


def _engine(backend: StubUploadBackend, transfer: Optional[RecordingTransfer] = None, sleeps: Optional[List[float]] = None, **kwargs) -> UploadEngine:
    recorded = sleeps if sleeps is not None else []
    return UploadEngine(
        backend=backend,
        project_handle="arn:project/1",
        transfer=transfer or RecordingTransfer(),
        sleep=recorded.append,
        **kwargs,
    )


@pytest.mark.unit
def test_binary_upload_succeeds_after_five_processing_polls() -> None:
    backend = StubUploadBackend(["PROCESSING"] * 5 + ["SUCCEEDED"])
    sleeps: List[float] = []
    engine = _engine(backend, sleeps=sleeps)

    job = engine.submit_and_await(
        UploadKind.binary,
        BytesPayload("app-release.apk", b"apk-bytes"),
        PollPolicy(max_attempts=30, interval_ms=10000),
        platform=Platform.android,
    )

    assert job.status == UploadStatus.succeeded
    assert job.attempts_made == 6
    assert job.attempts_made <= job.max_attempts
    assert sleeps == [10.0] * 6
    assert backend.created[0]["type"] == "ANDROID_APP"
    assert backend.created[0]["name"] == "app-release.apk"


@pytest.mark.unit
def test_budget_exhaustion_is_timeout_not_failure() -> None:
    backend = StubUploadBackend(["PROCESSING"] * 10)
    engine = _engine(backend)

    with pytest.raises(UploadTimeoutError) as excinfo:
        engine.submit_and_await(
            UploadKind.test_spec,
            BytesPayload("device-farm-testspec.yml", b"version: 0.1\n"),
            PollPolicy(max_attempts=3, interval_ms=0),
        )

    job = excinfo.value.job
    assert job is not None
    assert job.status == UploadStatus.timeout
    assert job.attempts_made == 3
    assert backend.polls == 3
    assert not isinstance(excinfo.value, UploadFailedError)


@pytest.mark.unit
def test_remote_failure_carries_message() -> None:
    backend = StubUploadBackend(["PROCESSING", "FAILED"])
    engine = _engine(backend)

    with pytest.raises(UploadFailedError) as excinfo:
        engine.submit_and_await(
            UploadKind.test_bundle,
            BytesPayload("bundle.zip", b"zip"),
            PollPolicy(max_attempts=15, interval_ms=0),
        )

    assert "metadata invalid" in str(excinfo.value)
    assert excinfo.value.job.status == UploadStatus.failed
    assert excinfo.value.job.attempts_made == 2


@pytest.mark.unit
def test_missing_status_counts_as_failure() -> None:
    backend = StubUploadBackend([None])
    engine = _engine(backend)

    with pytest.raises(UploadFailedError):
        engine.submit_and_await(UploadKind.test_spec, BytesPayload("spec.yml", b"x"), PollPolicy(max_attempts=5, interval_ms=0))


@pytest.mark.unit
def test_transfer_rejection_fails_without_polling() -> None:
    backend = StubUploadBackend(["SUCCEEDED"])
    transfer = RecordingTransfer(status=403)
    engine = _engine(backend, transfer=transfer)

    with pytest.raises(UploadTransferError) as excinfo:
        engine.submit_and_await(UploadKind.test_bundle, BytesPayload("bundle.zip", b"zip"), PollPolicy(max_attempts=5, interval_ms=0))

    assert excinfo.value.job.status == UploadStatus.failed
    assert backend.polls == 0
    assert transfer.calls[0]["content_type"] == "application/zip"


@pytest.mark.unit
def test_truncated_transfer_response_is_a_transfer_error() -> None:
    backend = StubUploadBackend(["SUCCEEDED"])

    def truncated(url: str, body: bytes, content_type: str) -> int:
        raise http.client.IncompleteRead(b"", 10)

    engine = _engine(backend)
    engine.transfer = truncated

    with pytest.raises(UploadTransferError) as excinfo:
        engine.submit_and_await(UploadKind.test_spec, BytesPayload("spec.yml", b"x"), PollPolicy(max_attempts=5, interval_ms=0))

    assert excinfo.value.job.status == UploadStatus.failed
    assert backend.polls == 0


@pytest.mark.unit
def test_creation_errors_are_reported() -> None:
    backend = StubUploadBackend([])
    backend.fail_create = True
    with pytest.raises(UploadCreationError):
        _engine(backend).submit_and_await(UploadKind.test_spec, BytesPayload("spec.yml", b"x"))

    backend = StubUploadBackend([], slot_url=None)
    with pytest.raises(UploadCreationError):
        _engine(backend).submit_and_await(UploadKind.test_spec, BytesPayload("spec.yml", b"x"))


@pytest.mark.unit
def test_missing_build_object_is_reported_before_creating_a_slot(tmp_path) -> None:
    backend = StubUploadBackend(["SUCCEEDED"])
    store = LocalObjectStore(tmp_path / "builds")

    with pytest.raises(ArtifactNotFoundError):
        _engine(backend).submit_and_await(UploadKind.binary, StoredObjectPayload(store, "android/app.apk"))

    assert backend.created == []


@pytest.mark.unit
def test_terminal_job_never_transitions_again() -> None:
    job = UploadJob(kind=UploadKind.binary, max_attempts=3, poll_interval_ms=0)
    job.transition(UploadStatus.succeeded)

    with pytest.raises(RuntimeError):
        job.transition(UploadStatus.processing)
    assert job.status == UploadStatus.succeeded


@pytest.mark.unit
def test_exponential_backoff_is_capped() -> None:
    policy = PollPolicy(max_attempts=5, interval_ms=1000, backoff=BackoffKind.exponential, max_interval_ms=3000)
    backend = StubUploadBackend(["PROCESSING", "PROCESSING", "PROCESSING", "SUCCEEDED"])
    sleeps: List[float] = []

    job = _engine(backend, sleeps=sleeps).submit_and_await(UploadKind.test_spec, BytesPayload("spec.yml", b"x"), policy)

    assert job.attempts_made == 4
    assert sleeps == [1.0, 2.0, 3.0, 3.0]


@pytest.mark.unit
def test_recent_binary_upload_is_reused_when_enabled() -> None:
    now = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
    backend = StubUploadBackend([])
    backend.existing = [
        RemoteUpload(handle="arn:upload/old", name="app.apk", status="SUCCEEDED", created_at=(now - timedelta(days=3)).isoformat()),
        RemoteUpload(handle="arn:upload/recent", name="app.apk", status="SUCCEEDED", created_at=(now - timedelta(hours=2)).isoformat()),
    ]
    engine = _engine(backend, reuse_binary_uploads=True, clock=lambda: now)

    job = engine.submit_and_await(UploadKind.binary, BytesPayload("app.apk", b"apk"))

    assert job.remote_handle == "arn:upload/recent"
    assert job.status == UploadStatus.succeeded
    assert job.attempts_made == 0
    assert backend.created == []


@pytest.mark.unit
def test_upload_types_follow_kind_and_platform() -> None:
    assert upload_type_for(UploadKind.binary, Platform.ios) == "IOS_APP"
    assert upload_type_for(UploadKind.test_bundle, Platform.ios) == "APPIUM_NODE_TEST_PACKAGE"
    assert upload_type_for(UploadKind.test_spec, Platform.android) == "APPIUM_NODE_TEST_SPEC"
