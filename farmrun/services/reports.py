from __future__ import annotations

import logging
import time
from typing import List, Optional

from farmrun.constants import (
    CUSTOMER_ARTIFACTS_MARKER,
    DEFAULT_REPORT_PREFIX,
    MANUAL_EXTRACTION_INSTRUCTIONS,
    REPORT_FILENAME,
)
from farmrun.errors import ArtifactNotFoundError
from farmrun.schemas import RemoteArtifact, ReportResponse, ReportSource
from farmrun.services.devicefarm import DeviceFarmBackend, run_id_from_handle
from farmrun.services.storage import ObjectStore
from farmrun.services.tasks import EXTRACT_REPORT, PERSIST_REPORT, TaskRunner

LOGGER = logging.getLogger("farmrun.reports")


class ReportCache:
    """Reports stored under a key derived only from the run handle."""

    def __init__(self, store: ObjectStore, prefix: str = DEFAULT_REPORT_PREFIX) -> None:
        self._store = store
        self._prefix = prefix.strip("/")

    def key_for(self, run_handle: str) -> str:
        name = f"device-farm-{run_id_from_handle(run_handle)}.html"
        return f"{self._prefix}/{name}" if self._prefix else name

    def lookup(self, run_handle: str) -> Optional[str]:
        key = self.key_for(run_handle)
        if self._store.head(key) is None:
            return None
        return self._store.url(key)

    def store(self, run_handle: str, body: bytes, *, source: str) -> str:
        key = self.key_for(run_handle)
        self._store.put(
            key,
            body,
            content_type="text/html",
            metadata={
                "run-arn": run_handle,
                "source": source,
                "generated": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
            },
        )
        LOGGER.info("Cached report for %s at %s (%s bytes)", run_handle, key, len(body))
        return self._store.url(key)


def find_report_artifact(artifacts: List[RemoteArtifact]) -> Optional[RemoteArtifact]:
    for artifact in artifacts:
        if REPORT_FILENAME in artifact.name and artifact.url:
            return artifact
    return None


def find_archive_artifact(artifacts: List[RemoteArtifact]) -> Optional[RemoteArtifact]:
    for artifact in artifacts:
        if (
            CUSTOMER_ARTIFACTS_MARKER in artifact.name
            and (artifact.extension or "").lower() == "zip"
            and artifact.url
        ):
            return artifact
    return None


class ReportResolver:
    """Resolve a viewable report for a run.

    Order: cache, single-file report artifact, customer-artifacts archive,
    manual download. Task failures fall through to the next strategy; cache
    transport errors and a failing artifact listing propagate.
    """

    def __init__(self, backend: DeviceFarmBackend, cache: ReportCache, tasks: TaskRunner) -> None:
        self._backend = backend
        self._cache = cache
        self._tasks = tasks

    def _list_artifacts(self, run_handle: str) -> List[RemoteArtifact]:
        artifacts = self._backend.list_artifacts(run_handle, "FILE")
        if not artifacts:
            raise ArtifactNotFoundError(f"Run {run_handle} has no file artifacts")
        return artifacts

    def resolve(self, run_handle: str) -> ReportResponse:
        cached_url = self._cache.lookup(run_handle)
        if cached_url:
            LOGGER.debug("Report cache hit for %s", run_handle)
            return ReportResponse(
                has_report=True,
                run_handle=run_handle,
                report_url=cached_url,
                report_name=REPORT_FILENAME,
                source=ReportSource.cached,
                message="Allure report loaded from cache",
            )

        try:
            artifacts = self._list_artifacts(run_handle)
        except ArtifactNotFoundError as exc:
            LOGGER.info("%s", exc)
            return ReportResponse(
                has_report=False,
                run_handle=run_handle,
                message="No artifacts found for this run yet",
            )

        report = find_report_artifact(artifacts)
        if report is not None:
            result = self._tasks.submit(PERSIST_REPORT, {"runHandle": run_handle})
            if result.success and result.url:
                return ReportResponse(
                    has_report=True,
                    run_handle=run_handle,
                    report_url=result.url,
                    report_name=report.name,
                    source=ReportSource.direct_html,
                    message="Allure report cached from run artifacts",
                )
            LOGGER.warning("Could not cache report for %s, returning artifact URL: %s", run_handle, result.error)
            return ReportResponse(
                has_report=True,
                run_handle=run_handle,
                report_url=report.url,
                report_name=report.name,
                source=ReportSource.direct_html,
                url_is_temporary=True,
                message="Allure report available from Device Farm (link expires)",
            )

        archive = find_archive_artifact(artifacts)
        if archive is not None:
            result = self._tasks.submit(
                EXTRACT_REPORT, {"runHandle": run_handle, "archiveUrl": archive.url}
            )
            if result.success and result.url:
                return ReportResponse(
                    has_report=True,
                    run_handle=run_handle,
                    report_url=result.url,
                    report_name=REPORT_FILENAME,
                    source=ReportSource.extracted_zip,
                    message="Allure report extracted from Customer Artifacts",
                )
            LOGGER.warning("Extraction failed for %s, falling back to manual download: %s", run_handle, result.error)
            return ReportResponse(
                has_report=True,
                run_handle=run_handle,
                report_url=archive.url,
                report_name=archive.name,
                source=ReportSource.manual,
                requires_manual_extraction=True,
                url_is_temporary=True,
                message="Allure report is inside the Customer Artifacts archive",
                instructions=MANUAL_EXTRACTION_INSTRUCTIONS,
            )

        return ReportResponse(
            has_report=False,
            run_handle=run_handle,
            message="No Allure report found in artifacts",
            available_artifacts=artifacts,
        )
