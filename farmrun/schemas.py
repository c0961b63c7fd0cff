from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


class ApiModel(BaseModel):
    """Base for payloads exchanged with the dashboard (camelCase on the wire)."""

    model_config = {"alias_generator": to_camel, "populate_by_name": True}


class Platform(str, Enum):
    android = "android"
    ios = "ios"


class UploadKind(str, Enum):
    binary = "BINARY"
    test_bundle = "TEST_BUNDLE"
    test_spec = "TEST_SPEC"


class UploadStatus(str, Enum):
    initialized = "INITIALIZED"
    processing = "PROCESSING"
    succeeded = "SUCCEEDED"
    failed = "FAILED"
    timeout = "TIMEOUT"


PENDING_UPLOAD_STATUSES = {UploadStatus.initialized, UploadStatus.processing}
TERMINAL_UPLOAD_STATUSES = {UploadStatus.succeeded, UploadStatus.failed, UploadStatus.timeout}


class SelectionMode(str, Enum):
    full = "full"
    single_file = "single_file"
    single_case = "single_case"


class BackoffKind(str, Enum):
    constant = "constant"
    exponential = "exponential"


class ReportSource(str, Enum):
    cached = "cached"
    direct_html = "direct_html"
    extracted_zip = "extracted_zip"
    manual = "manual"
    none = "none"


class PollPolicy(BaseModel):
    max_attempts: int = Field(..., ge=1)
    interval_ms: int = Field(..., ge=0)
    backoff: BackoffKind = BackoffKind.constant
    multiplier: float = Field(default=2.0, ge=1.0)
    max_interval_ms: Optional[int] = Field(default=None, ge=0)

    model_config = {"frozen": True}

    def delay_seconds(self, attempt: int) -> float:
        """Delay before poll number ``attempt`` (1-based)."""
        delay_ms = float(self.interval_ms)
        if self.backoff == BackoffKind.exponential:
            delay_ms = self.interval_ms * (self.multiplier ** max(0, attempt - 1))
        if self.max_interval_ms is not None:
            delay_ms = min(delay_ms, float(self.max_interval_ms))
        return delay_ms / 1000.0


# -- Remote service views -----------------------------------------------------
class RemoteUpload(BaseModel):
    handle: str
    name: Optional[str] = None
    status: Optional[str] = None
    url: Optional[str] = None
    message: Optional[str] = None
    created_at: Optional[str] = None


class RemoteArtifact(ApiModel):
    name: str = ""
    type: Optional[str] = None
    extension: Optional[str] = None
    url: Optional[str] = None


class RunCounters(ApiModel):
    total: int = 0
    passed: int = 0
    failed: int = 0
    warned: int = 0
    errored: int = 0
    stopped: int = 0
    skipped: int = 0


class RunRecord(ApiModel):
    run_handle: str
    name: Optional[str] = None
    status: Optional[str] = None
    result: Optional[str] = None
    platform: Optional[str] = None
    counters: RunCounters = Field(default_factory=RunCounters)
    total_jobs: int = 0
    completed_jobs: int = 0
    message: Optional[str] = None
    device_pool_handle: Optional[str] = None
    created_at: Optional[str] = None
    started_at: Optional[str] = None
    stopped_at: Optional[str] = None


class Device(ApiModel):
    handle: str
    name: str = "Unknown Device"
    manufacturer: str = ""
    model: str = ""
    os: str = ""
    form_factor: str = ""
    availability: str = "UNKNOWN"


class DevicePoolCreate(ApiModel):
    device_handle: str
    platform: Platform
    project_handle: Optional[str] = None


class DevicePool(ApiModel):
    device_pool_handle: str
    name: str


# -- Trigger ------------------------------------------------------------------
class TriggerRequest(ApiModel):
    build_file_path: str
    device_pool_handle: str
    project_handle: Optional[str] = None
    platform: Platform = Platform.android
    test_selection_mode: SelectionMode = SelectionMode.full
    selected_test: Optional[str] = None
    selected_test_case: Optional[str] = None
    name: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _map_single_mode(cls, data: Any) -> Any:
        # The dashboard sends "single" and lets the case filter decide.
        if not isinstance(data, dict):
            return data
        for key in ("testSelectionMode", "test_selection_mode"):
            if data.get(key) == "single":
                data = dict(data)
                has_case = data.get("selectedTestCase") or data.get("selected_test_case")
                data[key] = SelectionMode.single_case.value if has_case else SelectionMode.single_file.value
        return data

    @field_validator("build_file_path")
    @classmethod
    def _relative_build_path(cls, value: str) -> str:
        cleaned = value.strip().lstrip("/")
        if not cleaned or ".." in cleaned.split("/"):
            raise ValueError("buildFilePath must be a relative key inside the builds store")
        return cleaned

    @field_validator("device_pool_handle")
    @classmethod
    def _non_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("devicePoolHandle cannot be blank")
        return value.strip()


class UploadSummary(ApiModel):
    kind: UploadKind
    remote_handle: Optional[str] = None
    status: UploadStatus
    attempts_made: int
    max_attempts: int


class TriggerResponse(ApiModel):
    run_handle: str
    status: Optional[str] = None
    name: Optional[str] = None
    uploads: List[UploadSummary] = Field(default_factory=list)
    message: str = "Device Farm run scheduled"


# -- Reports ------------------------------------------------------------------
class ReportResponse(ApiModel):
    has_report: bool
    run_handle: Optional[str] = None
    report_url: Optional[str] = None
    report_name: Optional[str] = None
    source: ReportSource = ReportSource.none
    requires_manual_extraction: bool = False
    url_is_temporary: bool = False
    message: str = ""
    instructions: Optional[str] = None
    available_artifacts: List[RemoteArtifact] = Field(default_factory=list)


class TaskResult(ApiModel):
    success: bool
    url: Optional[str] = None
    error: Optional[str] = None


# -- History ------------------------------------------------------------------
class HistoryEntry(ApiModel):
    id: str
    name: str = "Unnamed Test"
    status: str = "RUNNING"
    result: Optional[str] = None
    created_at: str
    duration_seconds: Optional[int] = None
    platform: str = "unknown"
    is_remote_run: bool = False
    run_handle: Optional[str] = None
    device: Optional[str] = None
    build: Optional[str] = None
    test_mode: Optional[str] = None
    test: Optional[str] = None
    test_case: Optional[str] = None
    has_report: bool = False


class HistoryResponse(ApiModel):
    history: List[HistoryEntry]


class SyncResponse(ApiModel):
    message: str
    synced: int
    added: int
    completed: int
    total_runs: int


class ActiveRunsResponse(ApiModel):
    running_tests: List[RunRecord]
    total_runs: int
    message: str


class SuitesResponse(ApiModel):
    test_suites: Dict[str, List[str]]


class DevicesResponse(ApiModel):
    platform: Platform
    device_count: int
    devices: List[Device]
    grouped_devices: Dict[str, List[Device]]


class HistoryEntryCreate(ApiModel):
    id: Optional[str] = None
    name: Optional[str] = None
    status: Optional[str] = None
    result: Optional[str] = None
    created_at: Optional[str] = None
    duration_seconds: Optional[int] = None
    platform: Optional[str] = None
    is_remote_run: bool = False
    run_handle: Optional[str] = None
    device: Optional[str] = None
    build: Optional[str] = None
    test_mode: Optional[str] = None
    test: Optional[str] = None
    test_case: Optional[str] = None


class HistoryRecordResponse(ApiModel):
    success: bool = True
    entry: HistoryEntry
