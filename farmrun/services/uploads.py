from __future__ import annotations

import http.client
import logging
import time
import urllib.error
import urllib.request
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Dict, Optional

from farmrun.config import default_poll_policies
from farmrun.constants import BINARY_REUSE_WINDOW_SECONDS
from farmrun.errors import (
    ArtifactNotFoundError,
    RemoteServiceError,
    UploadCreationError,
    UploadFailedError,
    UploadTimeoutError,
    UploadTransferError,
)
from farmrun.schemas import (
    PENDING_UPLOAD_STATUSES,
    TERMINAL_UPLOAD_STATUSES,
    Platform,
    PollPolicy,
    RemoteUpload,
    UploadKind,
    UploadStatus,
    UploadSummary,
)
from farmrun.services.devicefarm import DeviceFarmBackend
from farmrun.services.storage import ObjectStore

LOGGER = logging.getLogger("farmrun.uploads")

CONTENT_TYPES: Dict[UploadKind, str] = {
    UploadKind.binary: "application/octet-stream",
    UploadKind.test_bundle: "application/zip",
    UploadKind.test_spec: "text/yaml",
}


def upload_type_for(kind: UploadKind, platform: Platform) -> str:
    if kind == UploadKind.binary:
        return "ANDROID_APP" if platform == Platform.android else "IOS_APP"
    if kind == UploadKind.test_bundle:
        return "APPIUM_NODE_TEST_PACKAGE"
    return "APPIUM_NODE_TEST_SPEC"


@dataclass
class UploadJob:
    kind: UploadKind
    max_attempts: int
    poll_interval_ms: int
    remote_handle: Optional[str] = None
    name: Optional[str] = None
    status: UploadStatus = UploadStatus.initialized
    attempts_made: int = 0
    message: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_UPLOAD_STATUSES

    def transition(self, status: UploadStatus, message: Optional[str] = None) -> None:
        if self.is_terminal:
            raise RuntimeError(
                f"Upload {self.remote_handle or self.kind.value} is already {self.status.value}"
            )
        previous = self.status
        self.status = status
        if message:
            self.message = message
        if previous != status:
            LOGGER.info(
                "Upload %s (%s): %s -> %s after %s/%s polls",
                self.name,
                self.kind.value,
                previous.value,
                status.value,
                self.attempts_made,
                self.max_attempts,
            )

    def summary(self) -> UploadSummary:
        return UploadSummary(
            kind=self.kind,
            remote_handle=self.remote_handle,
            status=self.status,
            attempts_made=self.attempts_made,
            max_attempts=self.max_attempts,
        )


# -- Payload sources ------------------------------------------------------------
class PayloadSource:
    name: str

    def read(self) -> bytes:
        raise NotImplementedError


class FilePayload(PayloadSource):
    def __init__(self, path: Path, name: Optional[str] = None) -> None:
        self.path = Path(path)
        self.name = name or self.path.name

    def read(self) -> bytes:
        if not self.path.is_file():
            raise ArtifactNotFoundError(f"Upload source {self.path} does not exist")
        return self.path.read_bytes()


class BytesPayload(PayloadSource):
    def __init__(self, name: str, data: bytes) -> None:
        self.name = name
        self._data = data

    def read(self) -> bytes:
        return self._data


class StoredObjectPayload(PayloadSource):
    """Bytes read lazily from an object store key (builds, test bundle)."""

    def __init__(self, store: ObjectStore, key: str, name: Optional[str] = None) -> None:
        self.store = store
        self.key = key
        self.name = name or key.rsplit("/", 1)[-1]

    def read(self) -> bytes:
        stored = self.store.get(self.key)
        if stored is None:
            raise ArtifactNotFoundError(f"Object {self.key} not found")
        return stored.body


def http_put(url: str, body: bytes, content_type: str, timeout: float = 300.0) -> int:
    request = urllib.request.Request(
        url,
        data=body,
        method="PUT",
        headers={"Content-Type": content_type},
    )
    try:
        with urllib.request.urlopen(request, timeout=timeout) as response:
            return response.status
    except urllib.error.HTTPError as exc:
        return exc.code


Transfer = Callable[[str, bytes, str], int]


@dataclass
class UploadEngine:
    """Create an upload slot, PUT the bytes, poll until the remote settles.

    ``transfer`` and ``sleep`` are injectable so the loop can be driven
    without network or wall-clock waits.
    """

    backend: DeviceFarmBackend
    project_handle: str
    transfer: Transfer = http_put
    sleep: Callable[[float], None] = time.sleep
    reuse_binary_uploads: bool = False
    clock: Callable[[], datetime] = field(default=lambda: datetime.now(timezone.utc))

    def submit_and_await(
        self,
        kind: UploadKind,
        payload: PayloadSource,
        policy: Optional[PollPolicy] = None,
        *,
        upload_type: Optional[str] = None,
        platform: Platform = Platform.android,
    ) -> UploadJob:
        policy = policy or default_poll_policies()[kind]
        upload_type = upload_type or upload_type_for(kind, platform)
        job = UploadJob(
            kind=kind,
            max_attempts=policy.max_attempts,
            poll_interval_ms=policy.interval_ms,
            name=payload.name,
        )

        if kind == UploadKind.binary and self.reuse_binary_uploads:
            reused = self._find_reusable(payload.name, upload_type)
            if reused is not None:
                job.remote_handle = reused.handle
                job.transition(UploadStatus.succeeded, "Reused existing upload")
                LOGGER.info("Reusing upload %s for %s", reused.handle, payload.name)
                return job

        body = payload.read()
        try:
            slot = self.backend.create_upload(
                self.project_handle, payload.name, upload_type, CONTENT_TYPES[kind]
            )
        except RemoteServiceError as exc:
            raise UploadCreationError(f"Failed to create {kind.value} upload: {exc}", job) from exc
        if not slot.handle or not slot.url:
            raise UploadCreationError(f"Remote returned no upload slot for {payload.name}", job)
        job.remote_handle = slot.handle
        LOGGER.info("Upload slot %s created for %s (%s bytes)", slot.handle, payload.name, len(body))

        try:
            status_code = self.transfer(slot.url, body, CONTENT_TYPES[kind])
        except (urllib.error.URLError, http.client.HTTPException, OSError) as exc:
            job.transition(UploadStatus.failed, str(exc))
            raise UploadTransferError(f"Transfer of {payload.name} failed: {exc}", job) from exc
        if not 200 <= status_code < 300:
            job.transition(UploadStatus.failed, f"HTTP {status_code}")
            raise UploadTransferError(
                f"Transfer of {payload.name} failed with HTTP {status_code}", job
            )

        self._poll(job, policy)

        if job.status == UploadStatus.succeeded:
            return job
        if job.status == UploadStatus.timeout:
            raise UploadTimeoutError(
                f"{kind.value} upload {job.remote_handle} still processing after "
                f"{job.attempts_made} polls",
                job,
            )
        detail = f": {job.message}" if job.message else ""
        raise UploadFailedError(f"{kind.value} upload {job.remote_handle} failed{detail}", job)

    def _poll(self, job: UploadJob, policy: PollPolicy) -> None:
        while job.status in PENDING_UPLOAD_STATUSES and job.attempts_made < job.max_attempts:
            self.sleep(policy.delay_seconds(job.attempts_made + 1))
            job.attempts_made += 1
            try:
                remote = self.backend.get_upload(job.remote_handle or "")
            except RemoteServiceError as exc:
                job.transition(UploadStatus.failed, str(exc))
                return
            LOGGER.debug(
                "Upload status check %s/%s for %s: %s",
                job.attempts_made,
                job.max_attempts,
                job.remote_handle,
                remote.status,
            )
            job.transition(_parse_status(remote.status), remote.message)
        if job.status in PENDING_UPLOAD_STATUSES:
            job.transition(UploadStatus.timeout)

    def _find_reusable(self, name: str, upload_type: str) -> Optional[RemoteUpload]:
        try:
            uploads = self.backend.list_uploads(self.project_handle, upload_type)
        except RemoteServiceError as exc:
            LOGGER.warning("Could not list existing uploads, uploading fresh: %s", exc)
            return None
        cutoff = self.clock() - timedelta(seconds=BINARY_REUSE_WINDOW_SECONDS)
        for upload in uploads:
            if upload.name != name or upload.status != UploadStatus.succeeded.value:
                continue
            created = _parse_timestamp(upload.created_at)
            if created is not None and created > cutoff:
                return upload
        return None


def _parse_status(value: Optional[str]) -> UploadStatus:
    # A missing or unknown status is treated as a failure.
    if not value:
        return UploadStatus.failed
    try:
        status = UploadStatus(value.upper())
    except ValueError:
        return UploadStatus.failed
    if status == UploadStatus.timeout:
        return UploadStatus.failed
    return status


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
