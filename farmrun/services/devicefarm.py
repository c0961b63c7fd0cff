from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from botocore.exceptions import BotoCoreError, ClientError

from farmrun.errors import RemoteServiceError
from farmrun.schemas import Device, DevicePool, RemoteArtifact, RemoteUpload, RunCounters, RunRecord

LOGGER = logging.getLogger("farmrun.devicefarm")


def _iso(value: Any) -> Optional[str]:
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def run_id_from_handle(run_handle: str) -> str:
    """Last path segment of a run ARN, used to key per-run documents."""
    return run_handle.rstrip("/").split("/")[-1] or "unknown"


class DeviceFarmBackend:
    """Operations this service needs from the remote device-testing service."""

    def create_upload(
        self, project_handle: str, name: str, upload_type: str, content_type: Optional[str] = None
    ) -> RemoteUpload:
        raise NotImplementedError

    def get_upload(self, upload_handle: str) -> RemoteUpload:
        raise NotImplementedError

    def list_uploads(self, project_handle: str, upload_type: str) -> List[RemoteUpload]:
        raise NotImplementedError

    def schedule_run(
        self,
        *,
        project_handle: str,
        app_handle: str,
        device_pool_handle: str,
        name: str,
        test_type: str,
        test_package_handle: str,
        test_spec_handle: str,
    ) -> RunRecord:
        raise NotImplementedError

    def get_run(self, run_handle: str) -> RunRecord:
        raise NotImplementedError

    def list_runs(self, project_handle: str) -> List[RunRecord]:
        raise NotImplementedError

    def list_artifacts(self, run_handle: str, artifact_type: str = "FILE") -> List[RemoteArtifact]:
        raise NotImplementedError

    def list_devices(self, platform: str) -> List[Device]:
        raise NotImplementedError

    def create_device_pool(
        self, project_handle: str, name: str, device_handle: str, description: str = ""
    ) -> DevicePool:
        raise NotImplementedError


def _upload_from_payload(payload: Dict[str, Any]) -> RemoteUpload:
    return RemoteUpload(
        handle=payload.get("arn", ""),
        name=payload.get("name"),
        status=payload.get("status"),
        url=payload.get("url"),
        message=payload.get("message"),
        created_at=_iso(payload.get("created")),
    )


def _run_from_payload(payload: Dict[str, Any]) -> RunRecord:
    counters = payload.get("counters") or {}
    return RunRecord(
        run_handle=payload.get("arn", ""),
        name=payload.get("name"),
        status=payload.get("status"),
        result=payload.get("result"),
        platform=payload.get("platform"),
        counters=RunCounters(**{key: int(counters.get(key) or 0) for key in RunCounters.model_fields}),
        total_jobs=int(payload.get("totalJobs") or 0),
        completed_jobs=int(payload.get("completedJobs") or 0),
        message=payload.get("message"),
        device_pool_handle=payload.get("devicePoolArn"),
        created_at=_iso(payload.get("created")),
        started_at=_iso(payload.get("started")),
        stopped_at=_iso(payload.get("stopped")),
    )


class Boto3DeviceFarmBackend(DeviceFarmBackend):
    """AWS Device Farm through boto3; every SDK failure becomes ``RemoteServiceError``."""

    def __init__(self, client_factory: Callable[[], Any]) -> None:
        self._client_factory = client_factory

    def _call(self, operation: str, **kwargs: Any) -> Dict[str, Any]:
        client = self._client_factory()
        try:
            return getattr(client, operation)(**kwargs)
        except (ClientError, BotoCoreError) as exc:
            raise RemoteServiceError(f"Device Farm {operation} failed: {exc}") from exc

    def _paginate(self, operation: str, result_key: str, **kwargs: Any) -> List[Dict[str, Any]]:
        items: List[Dict[str, Any]] = []
        next_token: Optional[str] = None
        while True:
            params = dict(kwargs)
            if next_token:
                params["nextToken"] = next_token
            response = self._call(operation, **params)
            batch = response.get(result_key) or []
            items.extend(batch)
            next_token = response.get("nextToken")
            LOGGER.debug("%s returned %s items (total %s)", operation, len(batch), len(items))
            if not next_token:
                return items

    def create_upload(
        self, project_handle: str, name: str, upload_type: str, content_type: Optional[str] = None
    ) -> RemoteUpload:
        params: Dict[str, Any] = {"projectArn": project_handle, "name": name, "type": upload_type}
        if content_type:
            params["contentType"] = content_type
        response = self._call("create_upload", **params)
        return _upload_from_payload(response.get("upload") or {})

    def get_upload(self, upload_handle: str) -> RemoteUpload:
        response = self._call("get_upload", arn=upload_handle)
        return _upload_from_payload(response.get("upload") or {"arn": upload_handle})

    def list_uploads(self, project_handle: str, upload_type: str) -> List[RemoteUpload]:
        items = self._paginate("list_uploads", "uploads", arn=project_handle, type=upload_type)
        return [_upload_from_payload(item) for item in items]

    def schedule_run(
        self,
        *,
        project_handle: str,
        app_handle: str,
        device_pool_handle: str,
        name: str,
        test_type: str,
        test_package_handle: str,
        test_spec_handle: str,
    ) -> RunRecord:
        response = self._call(
            "schedule_run",
            projectArn=project_handle,
            appArn=app_handle,
            devicePoolArn=device_pool_handle,
            name=name,
            test={
                "type": test_type,
                "testPackageArn": test_package_handle,
                "testSpecArn": test_spec_handle,
            },
        )
        run = response.get("run") or {}
        if not run.get("arn"):
            raise RemoteServiceError("Device Farm schedule_run returned no run")
        return _run_from_payload(run)

    def get_run(self, run_handle: str) -> RunRecord:
        response = self._call("get_run", arn=run_handle)
        return _run_from_payload(response.get("run") or {"arn": run_handle})

    def list_runs(self, project_handle: str) -> List[RunRecord]:
        return [_run_from_payload(item) for item in self._paginate("list_runs", "runs", arn=project_handle)]

    def list_artifacts(self, run_handle: str, artifact_type: str = "FILE") -> List[RemoteArtifact]:
        items = self._paginate("list_artifacts", "artifacts", arn=run_handle, type=artifact_type)
        return [
            RemoteArtifact(
                name=item.get("name") or "",
                type=item.get("type"),
                extension=item.get("extension"),
                url=item.get("url"),
            )
            for item in items
        ]

    def list_devices(self, platform: str) -> List[Device]:
        items = self._paginate(
            "list_devices",
            "devices",
            filters=[{"attribute": "PLATFORM", "operator": "EQUALS", "values": [platform.upper()]}],
        )
        return [
            Device(
                handle=item.get("arn", ""),
                name=item.get("name") or "Unknown Device",
                manufacturer=item.get("manufacturer") or "",
                model=item.get("model") or "",
                os=item.get("os") or "",
                form_factor=item.get("formFactor") or "",
                availability=item.get("availability") or "UNKNOWN",
            )
            for item in items
        ]

    def create_device_pool(
        self, project_handle: str, name: str, device_handle: str, description: str = ""
    ) -> DevicePool:
        response = self._call(
            "create_device_pool",
            projectArn=project_handle,
            name=name,
            description=description,
            rules=[{"attribute": "ARN", "operator": "IN", "value": json.dumps([device_handle])}],
        )
        pool = response.get("devicePool") or {}
        if not pool.get("arn"):
            raise RemoteServiceError("Device Farm create_device_pool returned no pool")
        return DevicePool(device_pool_handle=pool["arn"], name=pool.get("name") or name)
