"""
Key-addressed byte storage for source documents and derived artifacts.

Keys are relative, slash-separated paths (``audio/<uuid>.mp3``) inside a
namespace (``documents``).  Two backends are provided: the local work
directory and an S3 bucket.
"""

import io
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from typing import BinaryIO, Optional

import boto3
from botocore.exceptions import ClientError

logger = logging.getLogger(__name__)

DEFAULT_NAMESPACE = "documents"


class BlobNotFoundError(FileNotFoundError):
    pass


def validate_key(key: str) -> str:
    """Reject keys that are empty, absolute, or climb out of the namespace."""
    if not key or key.startswith(("/", "\\")):
        raise ValueError(f"Invalid storage key: {key!r}")
    parts = key.replace("\\", "/").split("/")
    if any(part in ("", ".", "..") for part in parts):
        raise ValueError(f"Invalid storage key: {key!r}")
    return "/".join(parts)


class BlobStore(ABC):
    namespace: str

    @abstractmethod
    def put(self, key: str, data: bytes) -> None: ...

    @abstractmethod
    def get(self, key: str) -> bytes: ...

    @abstractmethod
    def open(self, key: str) -> BinaryIO: ...

    @abstractmethod
    def exists(self, key: str) -> bool: ...

    @abstractmethod
    def delete(self, key: str) -> bool: ...

    @abstractmethod
    def size(self, key: str) -> int: ...

    def local_path(self, key: str) -> Optional[str]:
        """Filesystem path of *key* when the backend has one, else ``None``."""
        return None


class LocalBlobStore(BlobStore):
    """Stores blobs under ``<root>/<namespace>/<key>``."""

    def __init__(self, root: str, namespace: str = DEFAULT_NAMESPACE):
        self.namespace = namespace
        self.base_dir = os.path.realpath(os.path.join(root, namespace))

    def _path(self, key: str) -> str:
        path = os.path.realpath(os.path.join(self.base_dir, validate_key(key)))
        if os.path.commonpath([path, self.base_dir]) != self.base_dir:
            raise ValueError(f"Storage key escapes namespace: {key!r}")
        return path

    def put(self, key: str, data: bytes) -> None:
        path = self._path(key)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        # Write to a sibling temp file then rename, so readers never see partial data
        fd, tmp_path = tempfile.mkstemp(dir=os.path.dirname(path), prefix=".tmp-")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            os.replace(tmp_path, path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def get(self, key: str) -> bytes:
        with self.open(key) as f:
            return f.read()

    def open(self, key: str) -> BinaryIO:
        path = self._path(key)
        if not os.path.isfile(path):
            raise BlobNotFoundError(f"{self.namespace}:{key}")
        return open(path, "rb")

    def exists(self, key: str) -> bool:
        return os.path.isfile(self._path(key))

    def delete(self, key: str) -> bool:
        path = self._path(key)
        if not os.path.isfile(path):
            return False
        os.unlink(path)
        return True

    def size(self, key: str) -> int:
        path = self._path(key)
        if not os.path.isfile(path):
            raise BlobNotFoundError(f"{self.namespace}:{key}")
        return os.path.getsize(path)

    def local_path(self, key: str) -> Optional[str]:
        path = self._path(key)
        return path if os.path.isfile(path) else None


class S3BlobStore(BlobStore):
    """Stores blobs as ``<prefix><namespace>/<key>`` objects in one bucket."""

    def __init__(self, bucket: str, namespace: str = DEFAULT_NAMESPACE, prefix: str = "", client=None):
        self.namespace = namespace
        self.bucket = bucket
        self.prefix = prefix or ""
        self.client = client or boto3.client("s3")

    def _object_key(self, key: str) -> str:
        return f"{self.prefix}{self.namespace}/{validate_key(key)}"

    def put(self, key: str, data: bytes) -> None:
        self.client.put_object(Bucket=self.bucket, Key=self._object_key(key), Body=data)

    def get(self, key: str) -> bytes:
        return self.open(key).read()

    def open(self, key: str) -> BinaryIO:
        try:
            response = self.client.get_object(Bucket=self.bucket, Key=self._object_key(key))
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in ("NoSuchKey", "404"):
                raise BlobNotFoundError(f"{self.namespace}:{key}") from e
            raise
        return io.BytesIO(response["Body"].read())

    def exists(self, key: str) -> bool:
        try:
            self.client.head_object(Bucket=self.bucket, Key=self._object_key(key))
            return True
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in ("NoSuchKey", "404", "NotFound"):
                return False
            raise

    def delete(self, key: str) -> bool:
        if not self.exists(key):
            return False
        self.client.delete_object(Bucket=self.bucket, Key=self._object_key(key))
        return True

    def size(self, key: str) -> int:
        try:
            response = self.client.head_object(Bucket=self.bucket, Key=self._object_key(key))
        except ClientError as e:
            raise BlobNotFoundError(f"{self.namespace}:{key}") from e
        return int(response["ContentLength"])


def get_blob_store(namespace: str = DEFAULT_NAMESPACE) -> BlobStore:
    """Build the blob store configured by ``STORAGE_BACKEND``."""
    from docvoice.config import settings

    if settings.storage_backend == "s3":
        if not settings.s3_bucket_name:
            raise ValueError("STORAGE_BACKEND=s3 requires S3_BUCKET_NAME")
        client = boto3.client(
            "s3",
            aws_access_key_id=settings.aws_access_key_id,
            aws_secret_access_key=settings.aws_secret_access_key,
            region_name=settings.aws_region,
        )
        return S3BlobStore(settings.s3_bucket_name, namespace, settings.s3_folder_prefix or "", client=client)
    return LocalBlobStore(settings.workdir, namespace)
