from __future__ import annotations

import hashlib
import json
import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Tuple

from botocore.exceptions import BotoCoreError, ClientError

from farmrun.errors import ObjectStoreError, VersionConflictError

LOGGER = logging.getLogger("farmrun.storage")

_NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound"}
_CONFLICT_CODES = {"412", "PreconditionFailed", "409", "ConditionalRequestConflict"}


@dataclass
class StoredObject:
    key: str
    body: bytes
    version: str
    content_type: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)


class ObjectStore:
    """Key/value blob store with optimistic concurrency on writes.

    ``put`` accepts either ``if_version`` (replace only if the current version
    token matches) or ``if_absent`` (create only). Both raise
    ``VersionConflictError`` when the precondition does not hold.
    """

    def head(self, key: str) -> Optional[str]:
        raise NotImplementedError

    def get(self, key: str) -> Optional[StoredObject]:
        raise NotImplementedError

    def put(
        self,
        key: str,
        body: bytes,
        *,
        content_type: str = "application/octet-stream",
        metadata: Optional[Dict[str, str]] = None,
        if_version: Optional[str] = None,
        if_absent: bool = False,
    ) -> str:
        raise NotImplementedError

    def url(self, key: str) -> str:
        raise NotImplementedError

    def get_json(self, key: str) -> Tuple[Optional[Any], Optional[str]]:
        stored = self.get(key)
        if stored is None:
            return None, None
        try:
            return json.loads(stored.body.decode("utf-8")), stored.version
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise ObjectStoreError(f"Object {key} is not valid JSON: {exc}") from exc

    def put_json(
        self,
        key: str,
        payload: Any,
        *,
        if_version: Optional[str] = None,
        if_absent: bool = False,
    ) -> str:
        body = json.dumps(payload, indent=2).encode("utf-8")
        return self.put(
            key,
            body,
            content_type="application/json",
            if_version=if_version,
            if_absent=if_absent,
        )


def _content_version(body: bytes) -> str:
    return hashlib.sha256(body).hexdigest()


class LocalObjectStore(ObjectStore):
    """Directory-backed object store used for local development and tests.

    Each key maps to a file under ``root``; content type and metadata live in a
    sidecar JSON file under ``root/.meta``. Conditional writes are atomic within
    the process via an internal lock.
    """

    def __init__(self, root: Path, base_url: str = "/reports") -> None:
        self._root = root.resolve()
        self._base_url = base_url.rstrip("/")
        self._lock = threading.Lock()
        self._root.mkdir(parents=True, exist_ok=True)

    @property
    def root(self) -> Path:
        return self._root

    def path_for(self, key: str) -> Path:
        target = (self._root / key.lstrip("/")).resolve()
        if target == self._root or self._root not in target.parents:
            raise ObjectStoreError(f"Key escapes the store root: {key}")
        return target

    def _meta_path(self, key: str) -> Path:
        return self._root / ".meta" / f"{key.lstrip('/')}.json"

    def head(self, key: str) -> Optional[str]:
        path = self.path_for(key)
        if not path.is_file():
            return None
        return _content_version(path.read_bytes())

    def get(self, key: str) -> Optional[StoredObject]:
        path = self.path_for(key)
        if not path.is_file():
            return None
        body = path.read_bytes()
        meta: Dict[str, Any] = {}
        meta_path = self._meta_path(key)
        if meta_path.is_file():
            meta = json.loads(meta_path.read_text(encoding="utf-8"))
        return StoredObject(
            key=key,
            body=body,
            version=_content_version(body),
            content_type=meta.get("content_type"),
            metadata=dict(meta.get("metadata") or {}),
        )

    def put(
        self,
        key: str,
        body: bytes,
        *,
        content_type: str = "application/octet-stream",
        metadata: Optional[Dict[str, str]] = None,
        if_version: Optional[str] = None,
        if_absent: bool = False,
    ) -> str:
        path = self.path_for(key)
        with self._lock:
            current = _content_version(path.read_bytes()) if path.is_file() else None
            if if_absent and current is not None:
                raise VersionConflictError(f"Object {key} already exists")
            if if_version is not None and current != if_version:
                raise VersionConflictError(f"Object {key} changed since version {if_version[:12]}")
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(body)
            meta_path = self._meta_path(key)
            meta_path.parent.mkdir(parents=True, exist_ok=True)
            meta_path.write_text(
                json.dumps({"content_type": content_type, "metadata": metadata or {}}, sort_keys=True),
                encoding="utf-8",
            )
        return _content_version(body)

    def url(self, key: str) -> str:
        return f"{self._base_url}/{key.lstrip('/')}"


class S3ObjectStore(ObjectStore):
    """Object store backed by an S3 bucket; version tokens are ETags."""

    def __init__(self, bucket: str, region: str, client_factory: Callable[[], Any]) -> None:
        self._bucket = bucket
        self._region = region
        self._client_factory = client_factory

    @property
    def bucket(self) -> str:
        return self._bucket

    @staticmethod
    def _error_code(exc: ClientError) -> str:
        error = exc.response.get("Error", {})
        code = str(error.get("Code", ""))
        status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
        return code or str(status or "")

    def head(self, key: str) -> Optional[str]:
        try:
            response = self._client_factory().head_object(Bucket=self._bucket, Key=key)
        except ClientError as exc:
            if self._error_code(exc) in _NOT_FOUND_CODES:
                return None
            raise ObjectStoreError(f"Failed to check s3://{self._bucket}/{key}: {exc}") from exc
        except BotoCoreError as exc:
            raise ObjectStoreError(f"Failed to check s3://{self._bucket}/{key}: {exc}") from exc
        return response.get("ETag")

    def get(self, key: str) -> Optional[StoredObject]:
        try:
            response = self._client_factory().get_object(Bucket=self._bucket, Key=key)
            body = response["Body"].read()
        except ClientError as exc:
            if self._error_code(exc) in _NOT_FOUND_CODES:
                return None
            raise ObjectStoreError(f"Failed to read s3://{self._bucket}/{key}: {exc}") from exc
        except BotoCoreError as exc:
            raise ObjectStoreError(f"Failed to read s3://{self._bucket}/{key}: {exc}") from exc
        return StoredObject(
            key=key,
            body=body,
            version=response.get("ETag", ""),
            content_type=response.get("ContentType"),
            metadata=dict(response.get("Metadata") or {}),
        )

    def put(
        self,
        key: str,
        body: bytes,
        *,
        content_type: str = "application/octet-stream",
        metadata: Optional[Dict[str, str]] = None,
        if_version: Optional[str] = None,
        if_absent: bool = False,
    ) -> str:
        kwargs: Dict[str, Any] = {
            "Bucket": self._bucket,
            "Key": key,
            "Body": body,
            "ContentType": content_type,
            "Metadata": metadata or {},
        }
        if if_version is not None:
            kwargs["IfMatch"] = if_version
        elif if_absent:
            kwargs["IfNoneMatch"] = "*"
        try:
            response = self._client_factory().put_object(**kwargs)
        except ClientError as exc:
            if self._error_code(exc) in _CONFLICT_CODES:
                raise VersionConflictError(f"Conditional write to {key} rejected") from exc
            raise ObjectStoreError(f"Failed to write s3://{self._bucket}/{key}: {exc}") from exc
        except BotoCoreError as exc:
            raise ObjectStoreError(f"Failed to write s3://{self._bucket}/{key}: {exc}") from exc
        LOGGER.debug("Stored s3://%s/%s (%s bytes)", self._bucket, key, len(body))
        return response.get("ETag", "")

    def url(self, key: str) -> str:
        return f"https://{self._bucket}.s3.{self._region}.amazonaws.com/{key}"
