from __future__ import annotations

import hashlib
import hmac
import os
import time
import urllib.parse
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO


class StorageError(RuntimeError):
    pass


class Storage:
    def put_bytes(self, key: str, data: bytes, *, content_type: str | None = None) -> None:
        raise NotImplementedError

    def open(self, key: str) -> BinaryIO:
        raise NotImplementedError

    def exists(self, key: str) -> bool:
        raise NotImplementedError

    def presigned_put_url(self, key: str, *, content_type: str, content_length: int, expires_in: int) -> str:
        raise NotImplementedError

    def presigned_get_url(self, key: str, *, expires_in: int) -> str:
        raise NotImplementedError

    def public_url(self, key: str) -> str:
        raise NotImplementedError


def _local_signature(secret: str, op: str, key: str, expires: int) -> str:
    msg = f"{op}:{key}:{expires}".encode("utf-8")
    return hmac.new(secret.encode("utf-8"), msg, hashlib.sha256).hexdigest()


def verify_local_signature(secret: str, op: str, key: str, expires: str | None, signature: str | None) -> bool:
    """Check a LocalStorage presigned URL (op is "put" or "get")."""
    if not expires or not signature:
        return False
    try:
        exp = int(expires)
    except ValueError:
        return False
    if exp < int(time.time()):
        return False
    return hmac.compare_digest(_local_signature(secret, op, key, exp), signature)


@dataclass(frozen=True)
class LocalStorage(Storage):
    root: Path
    signing_secret: str = ""
    url_prefix: str = "/uploads/files"

    def _path(self, key: str) -> Path:
        safe_key = key.lstrip("/").replace("\\", "/")
        if ".." in safe_key.split("/"):
            raise StorageError(f"Invalid storage key: {key}")
        return self.root / safe_key

    def put_bytes(self, key: str, data: bytes, *, content_type: str | None = None) -> None:
        p = self._path(key)
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_bytes(data)

    def open(self, key: str) -> BinaryIO:
        p = self._path(key)
        return p.open("rb")

    def exists(self, key: str) -> bool:
        return self._path(key).exists()

    def _signed_url(self, op: str, key: str, expires_in: int) -> str:
        expires = int(time.time()) + int(expires_in)
        sig = _local_signature(self.signing_secret, op, key, expires)
        qs = urllib.parse.urlencode({"op": op, "expires": expires, "signature": sig})
        return f"{self.url_prefix}/{urllib.parse.quote(key)}?{qs}"

    def presigned_put_url(self, key: str, *, content_type: str, content_length: int, expires_in: int) -> str:
        return self._signed_url("put", key, expires_in)

    def presigned_get_url(self, key: str, *, expires_in: int) -> str:
        return self._signed_url("get", key, expires_in)

    def public_url(self, key: str) -> str:
        return f"/settings/assets/{urllib.parse.quote(key)}"


@dataclass(frozen=True)
class S3Storage(Storage):
    endpoint: str
    region: str
    bucket: str
    access_key_id: str
    secret_access_key: str

    def _client(self):
        try:
            import boto3  # type: ignore
        except ImportError as e:  # pragma: no cover
            raise StorageError("boto3 required for S3 storage. Install boto3.") from e
        return boto3.client(
            "s3",
            endpoint_url=f"https://{self.endpoint}" if self.endpoint else None,
            region_name=self.region or None,
            aws_access_key_id=self.access_key_id,
            aws_secret_access_key=self.secret_access_key,
        )

    def put_bytes(self, key: str, data: bytes, *, content_type: str | None = None) -> None:
        extra: dict[str, object] = {}
        if content_type:
            extra["ContentType"] = content_type
        self._client().put_object(Bucket=self.bucket, Key=key, Body=data, **extra)

    def open(self, key: str) -> BinaryIO:
        obj = self._client().get_object(Bucket=self.bucket, Key=key)
        return obj["Body"]  # type: ignore[return-value]

    def exists(self, key: str) -> bool:
        from botocore.exceptions import ClientError  # type: ignore

        try:
            self._client().head_object(Bucket=self.bucket, Key=key)
            return True
        except ClientError:
            return False

    def presigned_put_url(self, key: str, *, content_type: str, content_length: int, expires_in: int) -> str:
        return self._client().generate_presigned_url(
            "put_object",
            Params={"Bucket": self.bucket, "Key": key, "ContentType": content_type, "ContentLength": content_length},
            ExpiresIn=expires_in,
        )

    def presigned_get_url(self, key: str, *, expires_in: int) -> str:
        return self._client().generate_presigned_url(
            "get_object",
            Params={"Bucket": self.bucket, "Key": key},
            ExpiresIn=expires_in,
        )

    def public_url(self, key: str) -> str:
        if self.endpoint:
            return f"https://{self.bucket}.{self.endpoint}/{urllib.parse.quote(key)}"
        return f"https://{self.bucket}.s3.{self.region}.amazonaws.com/{urllib.parse.quote(key)}"


def storage_from_config(config: dict) -> Storage:
    backend = (config.get("STORAGE_BACKEND") or "local").strip().lower()
    if backend == "s3":
        return S3Storage(
            endpoint=(config.get("S3_ENDPOINT") or "").strip(),
            region=(config.get("S3_REGION") or "ap-southeast-1").strip(),
            bucket=(config.get("S3_BUCKET") or "").strip(),
            access_key_id=(config.get("S3_ACCESS_KEY_ID") or "").strip(),
            secret_access_key=(config.get("S3_SECRET_ACCESS_KEY") or "").strip(),
        )
    # default local
    root = Path(config.get("LOCAL_STORAGE_ROOT") or Path(os.getcwd()) / "storage")
    return LocalStorage(root=root, signing_secret=str(config.get("SECRET_KEY") or ""))
