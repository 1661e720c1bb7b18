"""Rendered-output storage for generations, on local disk or S3.

Artifacts live under `<storage_root>/<generation_id>/` locally and under
`<s3_prefix>/generations/<generation_id>/` in S3. The stored path is a plain
filesystem path or an `s3://bucket/key` URI, so reading it back does not depend
on the backend currently configured.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Protocol
from uuid import uuid4

from rda.config import Settings

logger = logging.getLogger("rda.storage")

LOCAL_BACKEND_ALIASES = {"", "local", "filesystem", "fs"}


class StorageError(RuntimeError):
    """Raised when rendered output storage read/write fails."""


class OutputStore(Protocol):
    backend: str

    def save(self, generation_id: str, file_name: str, content: bytes, content_type: str) -> str: ...

    def probe(self) -> dict[str, object]: ...


def _safe_file_name(file_name: str) -> str:
    return Path(file_name).name or "output.bin"


def parse_s3_uri(uri: str) -> tuple[str, str]:
    raw = uri.strip()
    if not raw.lower().startswith("s3://"):
        raise StorageError(f"Not an S3 URI: '{uri}'")
    bucket, _, key = raw[5:].partition("/")
    if not bucket.strip() or not key.strip():
        raise StorageError(f"Invalid S3 URI: '{uri}' (expected s3://<bucket>/<key>)")
    return bucket.strip(), key.strip()


class LocalOutputStore:
    backend = "local"

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)

    def save(self, generation_id: str, file_name: str, content: bytes, content_type: str) -> str:
        destination = self.root / generation_id / _safe_file_name(file_name)
        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
            destination.write_bytes(content)
        except OSError as exc:
            raise StorageError(f"Failed to write output to '{destination}': {exc}") from exc
        return str(destination)

    def probe(self) -> dict[str, object]:
        marker = uuid4().hex
        probe_file = self.root / ".ready_probe"
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            probe_file.write_text(marker, encoding="utf-8")
            read_back = probe_file.read_text(encoding="utf-8")
            probe_file.unlink(missing_ok=True)
        except OSError as exc:
            raise StorageError(f"Storage root '{self.root}' is not writable: {exc}") from exc
        if read_back != marker:
            raise StorageError(f"Storage root '{self.root}' returned different probe content.")
        return {"backend": self.backend, "root": str(self.root)}


class S3OutputStore:
    backend = "s3"

    def __init__(self, *, bucket: str, prefix: str, aws_region: str, client: Any | None = None) -> None:
        self.bucket = bucket
        self.prefix = prefix.strip().strip("/")
        self._aws_region = aws_region
        self._client = client

    def key_for(self, generation_id: str, file_name: str) -> str:
        base = f"{self.prefix}/" if self.prefix else ""
        return f"{base}generations/{generation_id}/{_safe_file_name(file_name)}"

    def save(self, generation_id: str, file_name: str, content: bytes, content_type: str) -> str:
        key = self.key_for(generation_id, file_name)
        try:
            self._s3().put_object(
                Bucket=self.bucket,
                Key=key,
                Body=content,
                ContentType=content_type or "application/octet-stream",
            )
        except StorageError:
            raise
        except Exception as exc:  # pragma: no cover - depends on AWS runtime integration
            raise StorageError(f"Failed to write output to S3 (bucket={self.bucket}, key={key}): {exc}") from exc

        logger.info("output_stored", extra={"event": "output_stored", "bucket": self.bucket, "key": key})
        return f"s3://{self.bucket}/{key}"

    def read(self, key: str) -> bytes:
        try:
            body = self._s3().get_object(Bucket=self.bucket, Key=key).get("Body")
        except StorageError:
            raise
        except Exception as exc:  # pragma: no cover - depends on AWS runtime integration
            raise StorageError(f"Failed to read output from S3 (bucket={self.bucket}, key={key}): {exc}") from exc
        if body is None:
            raise StorageError(f"S3 get_object returned no body (bucket={self.bucket}, key={key}).")
        return body.read()

    def probe(self) -> dict[str, object]:
        try:
            self._s3().head_bucket(Bucket=self.bucket)
        except StorageError:
            raise
        except Exception as exc:  # pragma: no cover - depends on AWS runtime integration
            raise StorageError(f"S3 bucket '{self.bucket}' is not reachable: {exc}") from exc
        return {"backend": self.backend, "bucket": self.bucket}

    def _s3(self) -> Any:
        if self._client is None:
            try:
                import boto3  # type: ignore
            except ImportError as exc:
                raise StorageError("boto3 is required for S3 storage backend.") from exc
            self._client = boto3.client("s3", region_name=self._aws_region)
        return self._client


def output_store(settings: Settings) -> LocalOutputStore | S3OutputStore:
    backend = (settings.storage_backend or "").strip().lower()
    if backend in LOCAL_BACKEND_ALIASES:
        return LocalOutputStore(settings.storage_root)
    if backend == "s3":
        bucket = (settings.s3_bucket or "").strip()
        if not bucket:
            raise StorageError("S3 storage backend selected but S3_BUCKET is not configured.")
        return S3OutputStore(bucket=bucket, prefix=settings.s3_prefix or "", aws_region=settings.aws_region)
    raise StorageError(f"Unsupported STORAGE_BACKEND '{settings.storage_backend}'. Use 'local' or 's3'.")


def load_output_bytes(*, settings: Settings, storage_path: str) -> bytes:
    raw = (storage_path or "").strip()
    if not raw:
        raise StorageError("Missing storage path.")

    if raw.lower().startswith("s3://"):
        bucket, key = parse_s3_uri(raw)
        return S3OutputStore(bucket=bucket, prefix="", aws_region=settings.aws_region).read(key)

    path = Path(raw)
    if not path.is_file():
        raise StorageError(f"Stored file not found at '{raw}'.")
    return path.read_bytes()
