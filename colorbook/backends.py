"""Networked alternatives to the in-process token map and the local artifact directory."""

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, Optional, Tuple

import boto3
import redis
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from .config import Settings
from .errors import ArtifactNotFound, StorageError
from .models import DownloadToken

logger = logging.getLogger(__name__)

TOKEN_PREFIX = "colorbook:token:"
_MISSING_CODES = {"NoSuchKey", "404", "NotFound"}


def redis_client(settings: Settings) -> redis.Redis:
    return redis.from_url(settings.redis_url, decode_responses=False)


def s3_client(settings: Settings):
    config = Config(s3={"addressing_style": "path" if settings.s3_force_path_style else "virtual"})
    return boto3.client(
        "s3",
        endpoint_url=settings.s3_endpoint_url,
        region_name=settings.s3_region,
        aws_access_key_id=settings.s3_access_key_id,
        aws_secret_access_key=settings.s3_secret_access_key,
        config=config,
    )


def _decode_fields(fields: Dict[bytes, bytes]) -> Dict[str, str]:
    decoded: Dict[str, str] = {}
    for k, v in fields.items():
        key = k.decode("utf-8") if isinstance(k, (bytes, bytearray)) else str(k)
        val = v.decode("utf-8") if isinstance(v, (bytes, bytearray)) else str(v)
        decoded[key] = val
    return decoded


@contextmanager
def _redis_errors(action: str):
    try:
        yield
    except redis.RedisError as exc:
        raise StorageError(f"token store unavailable while trying to {action}: {exc}") from exc


class RedisTokenStore:
    """Download tokens as redis hashes; keys expire on their own after ``key_ttl_sec``."""

    def __init__(self, rdb: redis.Redis, key_ttl_sec: float):
        self.rdb = rdb
        self.key_ttl_sec = int(key_ttl_sec)

    def _key(self, token: str) -> str:
        return f"{TOKEN_PREFIX}{token}"

    def put(self, record: DownloadToken) -> None:
        key = self._key(record.token)
        with _redis_errors("store a token"):
            self.rdb.hset(
                key,
                mapping={
                    "target_url": record.target_url,
                    "created_at": repr(record.created_at),
                    "expired": "1" if record.expired else "0",
                },
            )
            self.rdb.expire(key, self.key_ttl_sec)

    def get(self, token: str) -> Optional[DownloadToken]:
        with _redis_errors("read a token"):
            fields = self.rdb.hgetall(self._key(token))
        if not fields:
            return None
        decoded = _decode_fields(fields)
        return DownloadToken(
            token=token,
            target_url=decoded["target_url"],
            created_at=float(decoded["created_at"]),
            expired=decoded.get("expired") == "1",
        )

    def delete(self, token: str) -> None:
        with _redis_errors("delete a token"):
            self.rdb.delete(self._key(token))

    def items(self) -> Iterator[Tuple[str, DownloadToken]]:
        with _redis_errors("list tokens"):
            keys = list(self.rdb.scan_iter(match=f"{TOKEN_PREFIX}*"))
        for key in keys:
            key = key.decode("utf-8") if isinstance(key, (bytes, bytearray)) else str(key)
            token = key[len(TOKEN_PREFIX):]
            record = self.get(token)
            if record is not None:
                yield token, record

    def clear(self) -> None:
        with _redis_errors("clear tokens"):
            for key in self.rdb.scan_iter(match=f"{TOKEN_PREFIX}*"):
                self.rdb.delete(key)


class S3BlobBackend:
    def __init__(self, s3, bucket: str, prefix: str = "images/"):
        self.s3 = s3
        self.bucket = bucket
        self.prefix = prefix

    def _key(self, name: str) -> str:
        return f"{self.prefix}{name}"

    def put(self, name: str, data: bytes, created_at: float) -> None:
        try:
            self.s3.put_object(
                Bucket=self.bucket,
                Key=self._key(name),
                Body=data,
                Metadata={"created-at": repr(created_at)},
            )
        except (BotoCoreError, ClientError) as exc:
            raise StorageError(f"failed to upload {name}: {exc}") from exc

    def put_file(self, name: str, src: Path, created_at: float) -> None:
        try:
            self.s3.upload_file(
                str(src),
                self.bucket,
                self._key(name),
                ExtraArgs={"Metadata": {"created-at": repr(created_at)}},
            )
        except (BotoCoreError, ClientError) as exc:
            raise StorageError(f"failed to upload {name}: {exc}") from exc
        finally:
            Path(src).unlink(missing_ok=True)

    def get(self, name: str) -> bytes:
        try:
            obj = self.s3.get_object(Bucket=self.bucket, Key=self._key(name))
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") in _MISSING_CODES:
                raise ArtifactNotFound(name) from None
            raise StorageError(f"failed to download {name}: {exc}") from exc
        except BotoCoreError as exc:
            raise StorageError(f"failed to download {name}: {exc}") from exc
        return obj["Body"].read()

    def created_at(self, name: str) -> float:
        try:
            head = self.s3.head_object(Bucket=self.bucket, Key=self._key(name))
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") in _MISSING_CODES:
                raise ArtifactNotFound(name) from None
            raise StorageError(f"failed to stat {name}: {exc}") from exc
        except BotoCoreError as exc:
            raise StorageError(f"failed to stat {name}: {exc}") from exc
        stamp = head.get("Metadata", {}).get("created-at")
        if stamp:
            return float(stamp)
        return head["LastModified"].timestamp()

    def delete(self, name: str) -> None:
        try:
            self.s3.delete_object(Bucket=self.bucket, Key=self._key(name))
        except (BotoCoreError, ClientError) as exc:
            raise StorageError(f"failed to delete {name}: {exc}") from exc

    def list_with_age(self) -> Iterator[Tuple[str, float]]:
        try:
            paginator = self.s3.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self.bucket, Prefix=self.prefix):
                for obj in page.get("Contents", []):
                    yield obj["Key"][len(self.prefix):], obj["LastModified"].timestamp()
        except (BotoCoreError, ClientError) as exc:
            raise StorageError(f"failed to list bucket {self.bucket}: {exc}") from exc

    def local_path(self, name: str) -> Optional[Path]:
        return None
