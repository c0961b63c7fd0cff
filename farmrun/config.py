from __future__ import annotations

import os
from pathlib import Path
from typing import Dict, Mapping, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

from farmrun.constants import (
    DEFAULT_HISTORY_KEY,
    DEFAULT_HISTORY_LIMIT,
    DEFAULT_REPORT_PREFIX,
    DEFAULT_TEST_BUNDLE_KEY,
)
from farmrun.errors import ConfigError
from farmrun.schemas import PollPolicy, UploadKind

ENV_PREFIX = "FARMRUN_"


def default_poll_policies() -> Dict[UploadKind, PollPolicy]:
    # Binaries take the longest to be processed remotely.
    return {
        UploadKind.binary: PollPolicy(max_attempts=30, interval_ms=10000),
        UploadKind.test_bundle: PollPolicy(max_attempts=15, interval_ms=5000),
        UploadKind.test_spec: PollPolicy(max_attempts=10, interval_ms=3000),
    }


class Settings(BaseModel):
    backend: str = "local"
    data_root: Path = Path("data")
    device_farm_region: str = "us-west-2"
    storage_region: str = "eu-west-1"
    builds_bucket: str = "builds"
    tests_bucket: str = "tests"
    reports_bucket: str = "test-reports"
    report_prefix: str = DEFAULT_REPORT_PREFIX
    history_key: str = DEFAULT_HISTORY_KEY
    history_limit: int = Field(default=DEFAULT_HISTORY_LIMIT, ge=1)
    test_bundle_key: str = DEFAULT_TEST_BUNDLE_KEY
    project_handle: Optional[str] = None
    role_arn: Optional[str] = None
    credential_ttl_seconds: int = Field(default=900, ge=1)
    persist_function_name: Optional[str] = None
    extract_function_name: Optional[str] = None
    task_attempts: int = Field(default=1, ge=1)
    task_timeout_seconds: float = Field(default=120.0, gt=0)
    reuse_binary_uploads: bool = False
    poll_policies: Dict[UploadKind, PollPolicy] = Field(default_factory=default_poll_policies)
    log_level: str = "INFO"

    @field_validator("backend")
    @classmethod
    def _known_backend(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in {"local", "aws"}:
            raise ValueError("backend must be 'local' or 'aws'")
        return normalized

    @field_validator("report_prefix")
    @classmethod
    def _strip_prefix(cls, value: str) -> str:
        return value.strip("/")

    def poll_policy(self, kind: UploadKind) -> PollPolicy:
        return self.poll_policies.get(kind) or default_poll_policies()[kind]

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """Build settings from ``FARMRUN_*`` variables.

        Poll budgets are overridden per upload kind, e.g.
        ``FARMRUN_POLL_BINARY_ATTEMPTS=40`` or ``FARMRUN_POLL_TEST_SPEC_BACKOFF=exponential``.
        """
        env = os.environ if environ is None else environ
        payload: Dict[str, object] = {}
        for name in cls.model_fields:
            if name == "poll_policies":
                continue
            raw = env.get(f"{ENV_PREFIX}{name.upper()}")
            if raw is not None and raw != "":
                payload[name] = raw

        policies = default_poll_policies()
        for kind, policy in list(policies.items()):
            overrides = {}
            for field, suffix in (
                ("max_attempts", "ATTEMPTS"),
                ("interval_ms", "INTERVAL_MS"),
                ("backoff", "BACKOFF"),
                ("max_interval_ms", "MAX_INTERVAL_MS"),
            ):
                raw = env.get(f"{ENV_PREFIX}POLL_{kind.value}_{suffix}")
                if raw:
                    overrides[field] = raw
            if overrides:
                try:
                    policies[kind] = PollPolicy.model_validate({**policy.model_dump(), **overrides})
                except ValidationError as exc:
                    raise ConfigError(f"Invalid poll policy for {kind.value}: {exc}") from exc
        payload["poll_policies"] = policies

        try:
            return cls.model_validate(payload)
        except ValidationError as exc:
            raise ConfigError(_format_validation_error(exc)) from exc


def _format_validation_error(exc: ValidationError) -> str:
    lines = ["Invalid farmrun configuration:"]
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()))
        lines.append(f"  {ENV_PREFIX}{location.upper()}: {error.get('msg')}")
    return "\n".join(lines)


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings.from_env()
    return _settings
