from __future__ import annotations

import http.client
import io
import logging
import tempfile
import urllib.error
import urllib.request
import zipfile
import zlib
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from farmrun.constants import REPORT_CANONICAL_PATHS, REPORT_CONTENT_MARKER
from farmrun.errors import ArtifactNotFoundError, ExtractionError, FarmrunError, RemoteServiceError
from farmrun.schemas import TaskResult
from farmrun.services.devicefarm import DeviceFarmBackend
from farmrun.services.reports import ReportCache, find_report_artifact

LOGGER = logging.getLogger("farmrun.extraction")

_ARCHIVE_ERRORS = (zipfile.BadZipFile, zipfile.LargeZipFile, NotImplementedError, RuntimeError, zlib.error, EOFError)


def http_get(url: str, timeout: float = 120.0) -> bytes:
    try:
        with urllib.request.urlopen(url, timeout=timeout) as response:
            return response.read()
    except urllib.error.HTTPError as exc:
        raise RemoteServiceError(f"Download failed with HTTP {exc.code}") from exc
    except (urllib.error.URLError, http.client.HTTPException, OSError) as exc:
        raise RemoteServiceError(f"Download failed: {exc}") from exc


def safe_extract(archive: bytes, destination: Path) -> int:
    """Extract ``archive`` under ``destination``, refusing members that escape it.

    Damaged, encrypted or unsupported archives raise ``ExtractionError``.
    """
    root = destination.resolve()
    try:
        bundle = zipfile.ZipFile(io.BytesIO(archive))
    except _ARCHIVE_ERRORS as exc:
        raise ExtractionError(f"Archive is not a valid zip file: {exc}") from exc
    with bundle:
        members = bundle.infolist()
        for member in members:
            target = (root / member.filename).resolve()
            if target != root and root not in target.parents:
                raise ExtractionError(f"Archive member escapes extraction root: {member.filename}")
        try:
            for member in members:
                bundle.extract(member, root)
        except _ARCHIVE_ERRORS as exc:
            raise ExtractionError(f"Archive could not be extracted: {exc}") from exc
    return len(members)


def locate_report(root: Path) -> Optional[Path]:
    for parts in REPORT_CANONICAL_PATHS:
        candidate = root.joinpath(*parts)
        if candidate.is_file():
            return candidate
    for candidate in sorted(root.rglob("*.html")):
        if not candidate.is_file():
            continue
        if REPORT_CONTENT_MARKER in candidate.name.lower():
            return candidate
        with candidate.open("r", encoding="utf-8", errors="ignore") as handle:
            if REPORT_CONTENT_MARKER in handle.read(65536).lower():
                return candidate
    return None


class ReportExtractor:
    """Sibling tasks that copy a run's report into the report cache."""

    def __init__(
        self,
        backend: DeviceFarmBackend,
        cache: ReportCache,
        download: Callable[[str], bytes] = http_get,
        work_root: Optional[Path] = None,
    ) -> None:
        self._backend = backend
        self._cache = cache
        self._download = download
        self._work_root = work_root

    def persist_report(self, run_handle: str) -> str:
        report = find_report_artifact(self._backend.list_artifacts(run_handle, "FILE"))
        if report is None or not report.url:
            raise ArtifactNotFoundError(f"Run {run_handle} has no single-file report artifact")
        body = self._download(report.url)
        return self._cache.store(run_handle, body, source="device-farm-direct")

    def extract_report(self, run_handle: str, archive_url: str) -> str:
        archive = self._download(archive_url)
        if self._work_root is not None:
            self._work_root.mkdir(parents=True, exist_ok=True)
        with tempfile.TemporaryDirectory(prefix="farmrun-extract-", dir=self._work_root) as workdir:
            root = Path(workdir)
            count = safe_extract(archive, root)
            LOGGER.debug("Extracted %s members for %s", count, run_handle)
            found = locate_report(root)
            if found is None:
                raise ExtractionError("Allure report not found in Customer Artifacts")
            LOGGER.info("Found report for %s at %s", run_handle, found.relative_to(root))
            return self._cache.store(run_handle, found.read_bytes(), source="device-farm-extraction")

    def handle_persist(self, payload: Dict[str, Any]) -> TaskResult:
        run_handle = payload.get("runHandle")
        if not run_handle:
            return TaskResult(success=False, error="Missing runHandle")
        try:
            return TaskResult(success=True, url=self.persist_report(run_handle))
        except FarmrunError as exc:
            LOGGER.warning("persist-report failed for %s: %s", run_handle, exc)
            return TaskResult(success=False, error=str(exc))

    def handle_extract(self, payload: Dict[str, Any]) -> TaskResult:
        run_handle = payload.get("runHandle")
        archive_url = payload.get("archiveUrl")
        if not run_handle or not archive_url:
            return TaskResult(success=False, error="Missing runHandle or archiveUrl")
        try:
            return TaskResult(success=True, url=self.extract_report(run_handle, archive_url))
        except FarmrunError as exc:
            LOGGER.warning("extract-report failed for %s: %s", run_handle, exc)
            return TaskResult(success=False, error=str(exc))
