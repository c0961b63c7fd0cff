from __future__ import annotations

import logging
import time
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from fastapi import Depends

from farmrun.config import Settings, get_settings
from farmrun.errors import ArtifactNotFoundError, ConfigError, HistoryConflictError, ObjectStoreError
from farmrun.schemas import (
    ActiveRunsResponse,
    Device,
    DevicePool,
    DevicePoolCreate,
    DevicesResponse,
    HistoryEntry,
    HistoryEntryCreate,
    Platform,
    ReportResponse,
    RunRecord,
    SyncResponse,
    TriggerRequest,
    TriggerResponse,
    UploadKind,
)
from farmrun.services.aws import AwsClientFactory, CredentialProvider, assume_role_fetcher, default_chain
from farmrun.services.bundles import discover_test_suites
from farmrun.services.devicefarm import Boto3DeviceFarmBackend, DeviceFarmBackend, run_id_from_handle
from farmrun.services.extraction import ReportExtractor
from farmrun.services.history import HistoryStore, new_entry
from farmrun.services.reports import ReportCache, ReportResolver
from farmrun.services.scheduler import RunRequest, RunScheduler
from farmrun.services.storage import LocalObjectStore, ObjectStore, S3ObjectStore
from farmrun.services.tasks import EXTRACT_REPORT, PERSIST_REPORT, InlineTaskRunner, LambdaTaskRunner, TaskRunner
from farmrun.services.testspec import TestSelection, TestSpecGenerator
from farmrun.services.uploads import BytesPayload, StoredObjectPayload, Transfer, UploadEngine, http_put

LOGGER = logging.getLogger("farmrun.pipeline")

TEST_SPEC_NAME = "device-farm-testspec.yml"


class Pipeline:
    """Wires the upload engine, scheduler, report cascade and history together."""

    def __init__(
        self,
        settings: Settings,
        *,
        backend: DeviceFarmBackend,
        builds: ObjectStore,
        tests: ObjectStore,
        reports: ObjectStore,
        tasks: Optional[TaskRunner] = None,
        transfer: Transfer = http_put,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.settings = settings
        self.backend = backend
        self.builds = builds
        self.tests = tests
        self.reports = reports
        self.cache = ReportCache(reports, settings.report_prefix)
        self.extractor = ReportExtractor(backend, self.cache)
        self.tasks = tasks or InlineTaskRunner(
            {PERSIST_REPORT: self.extractor.handle_persist, EXTRACT_REPORT: self.extractor.handle_extract},
            attempts=settings.task_attempts,
            timeout_seconds=settings.task_timeout_seconds,
        )
        self.resolver = ReportResolver(backend, self.cache, self.tasks)
        self.scheduler = RunScheduler(backend)
        self.history = HistoryStore(tests, settings.history_key, settings.history_limit)
        self.generator = TestSpecGenerator()
        self._transfer = transfer
        self._sleep = sleep

    def _project(self, override: Optional[str] = None) -> str:
        project = override or self.settings.project_handle
        if not project:
            raise ConfigError("No Device Farm project configured (set FARMRUN_PROJECT_HANDLE)")
        return project

    @staticmethod
    def _require(store: ObjectStore, key: str, label: str) -> None:
        if store.head(key) is None:
            raise ArtifactNotFoundError(f"{label} {key} not found")

    # -- Trigger ------------------------------------------------------------
    def trigger(self, request: TriggerRequest) -> TriggerResponse:
        project = self._project(request.project_handle)
        selection = TestSelection.from_request(
            request.test_selection_mode, request.selected_test, request.selected_test_case
        )
        spec_text = self.generator.generate(selection, request.platform)
        self._require(self.builds, request.build_file_path, "Build")
        self._require(self.tests, self.settings.test_bundle_key, "Test bundle")

        engine = UploadEngine(
            backend=self.backend,
            project_handle=project,
            transfer=self._transfer,
            sleep=self._sleep,
            reuse_binary_uploads=self.settings.reuse_binary_uploads,
        )
        LOGGER.info(
            "Triggering %s run of %s on %s (%s)",
            request.platform.value,
            request.build_file_path,
            request.device_pool_handle,
            selection.mode.value,
        )
        app_job = engine.submit_and_await(
            UploadKind.binary,
            StoredObjectPayload(self.builds, request.build_file_path),
            self.settings.poll_policy(UploadKind.binary),
            platform=request.platform,
        )
        bundle_job = engine.submit_and_await(
            UploadKind.test_bundle,
            StoredObjectPayload(self.tests, self.settings.test_bundle_key),
            self.settings.poll_policy(UploadKind.test_bundle),
            platform=request.platform,
        )
        spec_job = engine.submit_and_await(
            UploadKind.test_spec,
            BytesPayload(TEST_SPEC_NAME, spec_text.encode("utf-8")),
            self.settings.poll_policy(UploadKind.test_spec),
            platform=request.platform,
        )

        display_name = request.name or f"Device Farm Test Run {time.strftime('%Y-%m-%dT%H:%M:%SZ', time.gmtime())}"
        run_request = RunRequest.from_jobs(
            app_job,
            bundle_job,
            spec_job,
            device_pool_handle=request.device_pool_handle,
            project_handle=project,
            display_name=display_name,
        )
        record = self.scheduler.schedule(run_request)
        self._record_trigger(request, selection, record, display_name)
        return TriggerResponse(
            run_handle=record.run_handle,
            status=record.status,
            name=record.name or display_name,
            uploads=[job.summary() for job in (app_job, bundle_job, spec_job)],
        )

    def _record_trigger(
        self, request: TriggerRequest, selection: TestSelection, record: RunRecord, display_name: str
    ) -> None:
        entry = HistoryEntry(
            id=run_id_from_handle(record.run_handle),
            name=request.name or display_name,
            status=record.status or "SCHEDULING",
            created_at=record.created_at or datetime.now(timezone.utc).isoformat(),
            platform=request.platform.value,
            is_remote_run=True,
            run_handle=record.run_handle,
            device=request.device_pool_handle,
            build=request.build_file_path.rsplit("/", 1)[-1],
            test_mode=selection.mode.value,
            test=selection.file_path,
            test_case=selection.case_filter,
        )
        try:
            self.history.record(entry)
        except (HistoryConflictError, ObjectStoreError) as exc:
            # The run is already scheduled; the next sync adds it to history.
            LOGGER.warning("Run %s scheduled but not recorded in history: %s", record.run_handle, exc)

    # -- Runs ---------------------------------------------------------------
    def run_status(self, run_handle: str) -> RunRecord:
        return self.scheduler.get_run(run_handle)

    def active_runs(self, project_handle: Optional[str] = None) -> ActiveRunsResponse:
        runs = self.scheduler.list_active(self._project(project_handle))
        return ActiveRunsResponse(
            running_tests=runs,
            total_runs=len(runs),
            message=f"Found {len(runs)} running test(s)",
        )

    # -- Reports ------------------------------------------------------------
    def report(self, run_handle: str) -> ReportResponse:
        return self.resolver.resolve(run_handle)

    # -- History ------------------------------------------------------------
    def sync(self, project_handle: Optional[str] = None) -> SyncResponse:
        runs = self.backend.list_runs(self._project(project_handle))
        result = self.history.reconcile(runs)
        return SyncResponse(
            message=f"Synced {result.synced} and added {result.added} completed Device Farm tests",
            synced=result.synced,
            added=result.added,
            completed=result.completed,
            total_runs=result.total,
        )

    def list_history(self) -> List[HistoryEntry]:
        return self.history.load()

    def record_history(self, payload: HistoryEntryCreate) -> HistoryEntry:
        return self.history.record(new_entry(payload))

    # -- Test bundle and devices ----------------------------------------------
    def test_suites(self) -> Dict[str, List[str]]:
        stored = self.tests.get(self.settings.test_bundle_key)
        if stored is None:
            raise ArtifactNotFoundError(f"Test bundle {self.settings.test_bundle_key} not found")
        return discover_test_suites(stored.body)

    def devices(self, platform: Platform) -> DevicesResponse:
        devices = self.backend.list_devices(platform.value)
        grouped: Dict[str, List[Device]] = OrderedDict()
        for device in devices:
            grouped.setdefault(device.manufacturer or "Unknown", []).append(device)
        return DevicesResponse(
            platform=platform,
            device_count=len(devices),
            devices=devices,
            grouped_devices=dict(grouped),
        )

    def create_device_pool(self, payload: DevicePoolCreate) -> DevicePool:
        project = self._project(payload.project_handle)
        name = f"Single-Device-{int(time.time() * 1000)}"
        pool = self.backend.create_device_pool(
            project,
            name,
            payload.device_handle,
            description="Device pool for single device testing",
        )
        LOGGER.info("Created device pool %s for %s", pool.device_pool_handle, payload.device_handle)
        return pool


def build_pipeline(settings: Settings) -> Pipeline:
    if settings.role_arn:
        fetch = assume_role_fetcher(settings.role_arn, region=settings.storage_region)
    else:
        fetch = default_chain
    credentials = CredentialProvider(fetch, ttl_seconds=settings.credential_ttl_seconds)
    clients = AwsClientFactory(credentials)
    backend = Boto3DeviceFarmBackend(clients.bind("devicefarm", settings.device_farm_region))

    if settings.backend == "aws":
        s3 = clients.bind("s3", settings.storage_region)
        builds: ObjectStore = S3ObjectStore(settings.builds_bucket, settings.storage_region, s3)
        tests: ObjectStore = S3ObjectStore(settings.tests_bucket, settings.storage_region, s3)
        reports: ObjectStore = S3ObjectStore(settings.reports_bucket, settings.storage_region, s3)
    else:
        root = settings.data_root
        builds = LocalObjectStore(root / settings.builds_bucket)
        tests = LocalObjectStore(root / settings.tests_bucket)
        reports = LocalObjectStore(root / settings.reports_bucket, base_url="/reports")

    tasks: Optional[TaskRunner] = None
    if settings.persist_function_name and settings.extract_function_name:
        invoker = AwsClientFactory(credentials, read_timeout=settings.task_timeout_seconds)
        tasks = LambdaTaskRunner(
            invoker.bind("lambda", settings.storage_region),
            {
                PERSIST_REPORT: settings.persist_function_name,
                EXTRACT_REPORT: settings.extract_function_name,
            },
            attempts=settings.task_attempts,
            timeout_seconds=settings.task_timeout_seconds,
        )
    LOGGER.info("Pipeline configured with %s object stores", settings.backend)
    return Pipeline(settings, backend=backend, builds=builds, tests=tests, reports=reports, tasks=tasks)


_pipeline: Optional[Pipeline] = None


def get_pipeline() -> Pipeline:
    """FastAPI dependency returning the process-wide pipeline."""
    global _pipeline
    if _pipeline is None:
        _pipeline = build_pipeline(get_settings())
    return _pipeline


PipelineDep = Depends(get_pipeline)
