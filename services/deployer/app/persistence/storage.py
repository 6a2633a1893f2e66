"""Deployment request archive (S3/MinIO or local files)."""
from __future__ import annotations

import hashlib
import json
import os
from typing import Any

import aioboto3

from ..config import get_settings

_FILE_SCHEME = "file://"
_S3_SCHEME = "s3://"


class ArtifactStorage:
    """Persist request documents to S3/MinIO using content-hash identifiers."""

    def __init__(self) -> None:
        self._settings = get_settings().storage

    async def put_json(self, data: dict[str, Any], prefix: str = "requests") -> str:
        """Store JSON data and return content-hash reference."""
        payload = json.dumps(data, sort_keys=True).encode("utf-8")
        return await self._put_bytes(payload, prefix=prefix, suffix=".json")

    async def get_json(self, ref: str) -> dict[str, Any]:
        """Load a JSON document previously stored with :meth:`put_json`."""
        return json.loads(await self._get_bytes(ref))

    async def _put_bytes(self, payload: bytes, prefix: str, suffix: str = "") -> str:
        digest = hashlib.sha256(payload).hexdigest()
        key = f"{prefix}/{digest}{suffix}"

        if not self._settings.s3_bucket:
            # Dev mode: write to local file system for traceability
            path = os.path.join(self._settings.local_artifact_dir, key)
            os.makedirs(os.path.dirname(path), exist_ok=True)
            with open(path, "wb") as handle:
                handle.write(payload)
            return f"{_FILE_SCHEME}{path}"

        session = aioboto3.Session()
        async with session.client(
            "s3",
            endpoint_url=self._settings.s3_endpoint,
            region_name=self._settings.s3_region,
        ) as client:
            await client.put_object(Bucket=self._settings.s3_bucket, Key=key, Body=payload)
        return f"{_S3_SCHEME}{self._settings.s3_bucket}/{key}"

    async def _get_bytes(self, ref: str) -> bytes:
        if ref.startswith(_FILE_SCHEME):
            with open(ref[len(_FILE_SCHEME) :], "rb") as handle:
                return handle.read()
        if not ref.startswith(_S3_SCHEME):
            raise ValueError(f"Unsupported artifact reference: {ref}")
        bucket, _, key = ref[len(_S3_SCHEME) :].partition("/")
        session = aioboto3.Session()
        async with session.client(
            "s3",
            endpoint_url=self._settings.s3_endpoint,
            region_name=self._settings.s3_region,
        ) as client:
            response = await client.get_object(Bucket=bucket, Key=key)
            async with response["Body"] as stream:
                return await stream.read()


__all__ = ["ArtifactStorage"]
