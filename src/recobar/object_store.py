"""Remote object store configuration and client adapter."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Mapping, Protocol

logger = logging.getLogger(__name__)

BUCKET_PATTERN = re.compile(r"^[a-z0-9.-]{3,63}$")
REGION_PATTERN = re.compile(r"^[a-z0-9-]+$")

_REQUIRED_FIELDS = ("bucket", "region", "access_key_id", "secret_access_key")
_SECRET_MASK = "********"


@dataclass(frozen=True, slots=True)
class RemoteStoreConfig:
    """Connection settings for the remote recordings bucket.

    Construction is lenient so partially filled settings can be stored while
    the operator is still typing them in; :meth:`problems` reports what is
    missing or malformed before any network call is attempted.
    """

    bucket: str = ""
    region: str = ""
    access_key_id: str = ""
    secret_access_key: str = ""
    endpoint_url: str | None = None

    def problems(self) -> list[str]:
        issues: list[str] = []
        for name in _REQUIRED_FIELDS:
            value = getattr(self, name)
            if not isinstance(value, str) or not value.strip():
                issues.append(f"Missing required remote storage field: {name}")
        if issues:
            return issues
        if not BUCKET_PATTERN.match(self.bucket):
            issues.append("Invalid bucket name format")
        if not REGION_PATTERN.match(self.region):
            issues.append("Invalid region format")
        if self.endpoint_url is not None and not self.endpoint_url.startswith(("http://", "https://")):
            issues.append("Endpoint URL must start with http:// or https://")
        return issues

    @property
    def is_valid(self) -> bool:
        return not self.problems()

    def to_dict(self, *, include_secrets: bool = False) -> dict[str, Any]:
        secret = self.secret_access_key
        if not include_secrets and secret:
            secret = _SECRET_MASK
        return {
            "bucket": self.bucket,
            "region": self.region,
            "access_key_id": self.access_key_id,
            "secret_access_key": secret,
            "endpoint_url": self.endpoint_url,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "RemoteStoreConfig":
        if not isinstance(data, Mapping):
            raise ValueError("Remote storage settings must be a mapping")

        def _text(key: str) -> str:
            value = data.get(key, "")
            if value is None:
                return ""
            if not isinstance(value, str):
                raise ValueError(f"Remote storage field {key} must be a string")
            return value.strip()

        endpoint = data.get("endpoint_url")
        if endpoint is not None and not isinstance(endpoint, str):
            raise ValueError("Remote storage field endpoint_url must be a string")
        return cls(
            bucket=_text("bucket"),
            region=_text("region"),
            access_key_id=_text("access_key_id"),
            secret_access_key=_text("secret_access_key"),
            endpoint_url=(endpoint.strip() or None) if isinstance(endpoint, str) else None,
        )


class ObjectStoreClient(Protocol):
    """Bucket scoped operations used by the storage writer."""

    def list_objects(self, bucket: str, max_keys: int = 1) -> Any:  # pragma: no cover - protocol
        ...

    def put_object(
        self,
        bucket: str,
        key: str,
        body: bytes,
        *,
        content_type: str,
        metadata: Mapping[str, str],
        tagging: str,
    ) -> Any:  # pragma: no cover - protocol
        ...


class Boto3ObjectStore:
    """:class:`ObjectStoreClient` backed by a boto3 S3 client."""

    def __init__(self, client: Any) -> None:
        self._client = client

    @classmethod
    def from_config(cls, config: RemoteStoreConfig) -> "Boto3ObjectStore":
        import boto3
        from botocore.config import Config

        client = boto3.client(
            "s3",
            region_name=config.region,
            aws_access_key_id=config.access_key_id,
            aws_secret_access_key=config.secret_access_key,
            endpoint_url=config.endpoint_url,
            config=Config(retries={"max_attempts": 3, "mode": "standard"}),
        )
        logger.info("Created object store client for bucket %s in %s", config.bucket, config.region)
        return cls(client)

    def list_objects(self, bucket: str, max_keys: int = 1) -> Any:
        return self._client.list_objects_v2(Bucket=bucket, MaxKeys=max_keys)

    def put_object(
        self,
        bucket: str,
        key: str,
        body: bytes,
        *,
        content_type: str,
        metadata: Mapping[str, str],
        tagging: str,
    ) -> Any:
        return self._client.put_object(
            Bucket=bucket,
            Key=key,
            Body=body,
            ContentType=content_type,
            ContentLength=len(body),
            Metadata=dict(metadata),
            Tagging=tagging,
        )


def provider_error_code(exc: BaseException) -> str | None:
    """Return the provider error code carried by ``exc`` if there is one."""

    response = getattr(exc, "response", None)
    if isinstance(response, Mapping):
        error = response.get("Error")
        if isinstance(error, Mapping):
            code = error.get("Code")
            if code:
                return str(code)
    code = getattr(exc, "code", None)
    if isinstance(code, str) and code:
        return code
    return None


__all__ = [
    "BUCKET_PATTERN",
    "Boto3ObjectStore",
    "ObjectStoreClient",
    "REGION_PATTERN",
    "RemoteStoreConfig",
    "provider_error_code",
]
