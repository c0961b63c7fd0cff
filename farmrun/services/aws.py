from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

import boto3
from botocore.config import Config

LOGGER = logging.getLogger("farmrun.aws")


@dataclass(frozen=True)
class Credentials:
    access_key_id: str
    secret_access_key: str
    session_token: Optional[str] = None


@dataclass(frozen=True)
class CachedCredentials:
    value: Optional[Credentials]
    expires_at: float


class CredentialProvider:
    """Cache credentials from ``fetch`` for ``ttl_seconds``.

    ``fetch`` returning ``None`` means "use the default AWS credential chain".
    Instances are passed explicitly to whatever builds AWS clients.
    """

    def __init__(
        self,
        fetch: Callable[[], Optional[Credentials]],
        ttl_seconds: float = 900,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._fetch = fetch
        self._ttl = ttl_seconds
        self._clock = clock
        self._cached: Optional[CachedCredentials] = None
        self._lock = threading.Lock()

    @property
    def cached(self) -> Optional[CachedCredentials]:
        return self._cached

    def get(self) -> Optional[Credentials]:
        with self._lock:
            now = self._clock()
            if self._cached is not None and now < self._cached.expires_at:
                return self._cached.value
            value = self._fetch()
            self._cached = CachedCredentials(value=value, expires_at=now + self._ttl)
            return value

    def invalidate(self) -> None:
        with self._lock:
            self._cached = None


def default_chain() -> Optional[Credentials]:
    return None


def assume_role_fetcher(
    role_arn: str,
    *,
    session_name: str = "farmrun-session",
    duration_seconds: int = 3600,
    region: str = "eu-west-1",
) -> Callable[[], Credentials]:
    def _fetch() -> Credentials:
        LOGGER.info("Assuming role %s for AWS services", role_arn)
        response = boto3.client("sts", region_name=region).assume_role(
            RoleArn=role_arn,
            RoleSessionName=session_name,
            DurationSeconds=duration_seconds,
        )
        issued = response.get("Credentials")
        if not issued:
            raise RuntimeError("Failed to assume role - no credentials returned")
        return Credentials(
            access_key_id=issued["AccessKeyId"],
            secret_access_key=issued["SecretAccessKey"],
            session_token=issued.get("SessionToken"),
        )

    return _fetch


class AwsClientFactory:
    """Build boto3 clients from the injected credential provider.

    Clients are reused until the provider hands out different credentials.
    """

    def __init__(self, credentials: CredentialProvider, *, read_timeout: Optional[float] = None) -> None:
        self._credentials = credentials
        self._read_timeout = read_timeout
        self._clients: Dict[Tuple[str, str], Tuple[Optional[Credentials], Any]] = {}
        self._lock = threading.Lock()

    def client(self, service: str, region: str) -> Any:
        creds = self._credentials.get()
        key = (service, region)
        with self._lock:
            cached = self._clients.get(key)
            if cached is not None and cached[0] == creds:
                return cached[1]
            kwargs: Dict[str, Any] = {"region_name": region}
            if creds is not None:
                kwargs.update(
                    aws_access_key_id=creds.access_key_id,
                    aws_secret_access_key=creds.secret_access_key,
                    aws_session_token=creds.session_token,
                )
            if self._read_timeout is not None:
                kwargs["config"] = Config(read_timeout=self._read_timeout, retries={"max_attempts": 0})
            client = boto3.session.Session().client(service, **kwargs)
            self._clients[key] = (creds, client)
            return client

    def bind(self, service: str, region: str) -> Callable[[], Any]:
        return lambda: self.client(service, region)
