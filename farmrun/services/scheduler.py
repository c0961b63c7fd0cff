from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List

from farmrun.constants import ACTIVE_RUN_STATUSES, TEST_TYPE
from farmrun.errors import SchedulingError
from farmrun.schemas import RunRecord, UploadKind, UploadStatus
from farmrun.services.devicefarm import DeviceFarmBackend
from farmrun.services.uploads import UploadJob

LOGGER = logging.getLogger("farmrun.scheduler")


@dataclass(frozen=True)
class RunRequest:
    """The three settled uploads plus where to run them.

    The jobs themselves are kept so ``validate`` can check kind and status
    again at scheduling time, however the request was built.
    """

    app: UploadJob
    test_bundle: UploadJob
    test_spec: UploadJob
    device_pool_handle: str
    project_handle: str
    display_name: str

    @classmethod
    def from_jobs(
        cls,
        app: UploadJob,
        test_bundle: UploadJob,
        test_spec: UploadJob,
        *,
        device_pool_handle: str,
        project_handle: str,
        display_name: str,
    ) -> "RunRequest":
        request = cls(
            app=app,
            test_bundle=test_bundle,
            test_spec=test_spec,
            device_pool_handle=device_pool_handle,
            project_handle=project_handle,
            display_name=display_name,
        )
        request.validate_uploads()
        return request

    @property
    def app_upload_handle(self) -> str:
        return self.app.remote_handle or ""

    @property
    def test_bundle_upload_handle(self) -> str:
        return self.test_bundle.remote_handle or ""

    @property
    def test_spec_upload_handle(self) -> str:
        return self.test_spec.remote_handle or ""

    def validate_uploads(self) -> None:
        for job, kind in (
            (self.app, UploadKind.binary),
            (self.test_bundle, UploadKind.test_bundle),
            (self.test_spec, UploadKind.test_spec),
        ):
            if job.kind != kind:
                raise SchedulingError(f"Expected a {kind.value} upload, got {job.kind.value}")
            if job.status != UploadStatus.succeeded or not job.remote_handle:
                raise SchedulingError(
                    f"{kind.value} upload {job.remote_handle or '<none>'} is {job.status.value}, not SUCCEEDED"
                )

    def validate(self) -> None:
        self.validate_uploads()
        missing = [
            name
            for name in ("device_pool_handle", "project_handle")
            if not getattr(self, name)
        ]
        if missing:
            raise SchedulingError(f"Run request is missing {', '.join(missing)}")


class RunScheduler:
    def __init__(self, backend: DeviceFarmBackend) -> None:
        self._backend = backend

    def schedule(self, request: RunRequest) -> RunRecord:
        """Schedule the run and return its initial record without waiting."""
        request.validate()
        record = self._backend.schedule_run(
            project_handle=request.project_handle,
            app_handle=request.app_upload_handle,
            device_pool_handle=request.device_pool_handle,
            name=request.display_name,
            test_type=TEST_TYPE,
            test_package_handle=request.test_bundle_upload_handle,
            test_spec_handle=request.test_spec_upload_handle,
        )
        LOGGER.info("Scheduled run %s (%s) on pool %s", record.run_handle, record.status, request.device_pool_handle)
        return record

    def get_run(self, run_handle: str) -> RunRecord:
        return self._backend.get_run(run_handle)

    def list_active(self, project_handle: str) -> List[RunRecord]:
        runs = [run for run in self._backend.list_runs(project_handle) if run.status in ACTIVE_RUN_STATUSES]
        runs.sort(key=lambda run: run.created_at or "", reverse=True)
        return runs
