from __future__ import annotations

from fastapi import APIRouter, Query

from farmrun.schemas import (
    ActiveRunsResponse,
    DevicePool,
    DevicePoolCreate,
    DevicesResponse,
    HistoryEntryCreate,
    HistoryRecordResponse,
    HistoryResponse,
    Platform,
    ReportResponse,
    RunRecord,
    SuitesResponse,
    SyncResponse,
    TriggerRequest,
    TriggerResponse,
)
from farmrun.services.pipeline import Pipeline, PipelineDep

router = APIRouter(prefix="/api", tags=["api"])

# Handlers are plain functions: uploads block while polling, so FastAPI runs
# them on its threadpool.


# Runs ------------------------------------------------------------------------------
@router.post("/device-farm/run", response_model=TriggerResponse, response_model_by_alias=True)
def trigger_run(payload: TriggerRequest, pipeline: Pipeline = PipelineDep) -> TriggerResponse:
    return pipeline.trigger(payload)


@router.get("/device-farm/run", response_model=RunRecord, response_model_by_alias=True)
def run_status(
    run_handle: str = Query(..., alias="runHandle", min_length=1), pipeline: Pipeline = PipelineDep
) -> RunRecord:
    return pipeline.run_status(run_handle)


@router.get("/device-farm/running", response_model=ActiveRunsResponse, response_model_by_alias=True)
def running_runs(pipeline: Pipeline = PipelineDep) -> ActiveRunsResponse:
    return pipeline.active_runs()


# Reports ---------------------------------------------------------------------------
@router.get("/device-farm/report", response_model=ReportResponse, response_model_by_alias=True)
def report(
    run_handle: str = Query(..., alias="runHandle", min_length=1), pipeline: Pipeline = PipelineDep
) -> ReportResponse:
    return pipeline.report(run_handle)


# History ---------------------------------------------------------------------------
@router.post("/device-farm/sync", response_model=SyncResponse, response_model_by_alias=True)
def sync_history(pipeline: Pipeline = PipelineDep) -> SyncResponse:
    return pipeline.sync()


@router.get("/test/history", response_model=HistoryResponse, response_model_by_alias=True)
def read_history(pipeline: Pipeline = PipelineDep) -> HistoryResponse:
    return HistoryResponse(history=pipeline.list_history())


@router.post("/test/history", response_model=HistoryRecordResponse, response_model_by_alias=True)
def record_history(payload: HistoryEntryCreate, pipeline: Pipeline = PipelineDep) -> HistoryRecordResponse:
    return HistoryRecordResponse(entry=pipeline.record_history(payload))


# Test bundle and devices -----------------------------------------------------------
@router.get("/device-farm/test-suites", response_model=SuitesResponse, response_model_by_alias=True)
def test_suites(pipeline: Pipeline = PipelineDep) -> SuitesResponse:
    return SuitesResponse(test_suites=pipeline.test_suites())


@router.get("/device-farm/devices", response_model=DevicesResponse, response_model_by_alias=True)
def list_devices(platform: Platform, pipeline: Pipeline = PipelineDep) -> DevicesResponse:
    return pipeline.devices(platform)


@router.post(
    "/device-farm/device-pools",
    response_model=DevicePool,
    response_model_by_alias=True,
    status_code=201,
)
def create_device_pool(payload: DevicePoolCreate, pipeline: Pipeline = PipelineDep) -> DevicePool:
    return pipeline.create_device_pool(payload)
