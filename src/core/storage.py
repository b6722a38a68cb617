"""
Storage Abstraction Layer - The Bridge Pattern

Provides a clean interface for storage operations with LocalStorage
(development) and S3Storage (AWS S3, Cloudflare R2, MinIO) behind the same
contract. The variant is chosen once at startup by create_storage() and
handed to the orchestrator; nothing else reads the backend setting.

Contract shared by both variants:
- upload() overwrites an existing key (idempotent retry)
- delete() of a missing key is not an error
- delete_many() attempts every key even when some fail
"""

import asyncio
import hashlib
import hmac
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from src.core.config import Settings
from src.core.exceptions import NotFoundError, StorageError, ValidationError
from src.core.logging import get_logger
from src.core.metrics import record_storage_operation

logger = get_logger(__name__)

S3_DELETE_BATCH_SIZE = 1000


class IStorage(ABC):
    """Interface for storage operations - The Bridge"""

    backend_name: str = "unknown"

    @abstractmethod
    async def upload(self, key: str, data: bytes, content_type: str) -> str:
        """
        Write bytes addressable by key and return a public URL.

        Args:
            key: Object key, '/'-separated
            data: Raw bytes of the object
            content_type: MIME type of the object

        Returns:
            URL usable by consumers without further provider knowledge
        """
        pass

    @abstractmethod
    async def download(self, key: str) -> bytes:
        """Read an object. Raises NotFoundError when the key is absent."""
        pass

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove an object; deleting a non-existent key is a no-op."""
        pass

    @abstractmethod
    async def exists(self, key: str) -> bool:
        """Check if an object exists in storage."""
        pass

    @abstractmethod
    def bucket(self) -> str:
        """Logical bucket / namespace identifier."""
        pass

    @abstractmethod
    def public_url(self, key: str) -> str:
        pass

    @abstractmethod
    async def presign_upload(self, key: str, content_type: str, expires_in: int) -> Dict[str, Any]:
        """
        Issue a direct client-to-storage upload target.

        Returns:
            {"method": "PUT", "url": ..., "headers": {...}, "expires_in": seconds}
        """
        pass

    async def delete_many(self, keys: List[str]) -> List[str]:
        """
        Bulk delete. Every key is attempted; failures are logged, not raised.

        Returns:
            Keys that were deleted (or were already absent)
        """
        if not keys:
            return []

        deleted: List[str] = []
        for key in keys:
            try:
                await self.delete(key)
                deleted.append(key)
            except StorageError as e:
                logger.warning("storage_delete_failed", key=key, error=e.message)
        return deleted


# =============================================================================
# Local Filesystem Implementation (Development)
# =============================================================================

class LocalStorage(IStorage):
    """Local filesystem storage implementation for development."""

    backend_name = "local"

    def __init__(
        self,
        base_path: str = "./data/storage",
        public_base_url: str = "/static/storage",
        upload_endpoint: str = "/api/v1/media/direct",
        signing_secret: str = "dev-only-signing-secret",
    ):
        self.base_path = Path(base_path).resolve()
        self.base_path.mkdir(parents=True, exist_ok=True)
        self.public_base_url = public_base_url.rstrip("/")
        self.upload_endpoint = upload_endpoint.rstrip("/")
        self._secret = signing_secret.encode("utf-8")

    def _path_for(self, key: str) -> Path:
        """Resolve a key under the storage root; keys cannot escape it."""
        if not key or key.startswith("/") or "\\" in key:
            raise ValidationError(f"Invalid storage key: {key!r}", field="key", reason_code="INVALID_KEY")
        path = (self.base_path / key).resolve()
        if path == self.base_path or self.base_path not in path.parents:
            raise ValidationError(f"Invalid storage key: {key!r}", field="key", reason_code="INVALID_KEY")
        return path

    def _write(self, path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_name(path.name + ".part")
        with open(tmp_path, "wb") as f:
            f.write(data)
        tmp_path.replace(path)

    async def upload(self, key: str, data: bytes, content_type: str) -> str:
        path = self._path_for(key)
        try:
            await asyncio.to_thread(self._write, path, data)
        except OSError as e:
            record_storage_operation(self.backend_name, "upload", "error")
            raise StorageError(f"Failed to write {key}: {e}", backend=self.backend_name)

        record_storage_operation(self.backend_name, "upload", "success")
        return self.public_url(key)

    async def download(self, key: str) -> bytes:
        path = self._path_for(key)
        try:
            data = await asyncio.to_thread(path.read_bytes)
        except FileNotFoundError:
            raise NotFoundError(f"Object not found: {key}", resource="object")
        except OSError as e:
            record_storage_operation(self.backend_name, "download", "error")
            raise StorageError(f"Failed to read {key}: {e}", backend=self.backend_name)

        record_storage_operation(self.backend_name, "download", "success")
        return data

    async def delete(self, key: str) -> None:
        path = self._path_for(key)
        try:
            await asyncio.to_thread(path.unlink, missing_ok=True)
        except OSError as e:
            record_storage_operation(self.backend_name, "delete", "error")
            raise StorageError(f"Failed to delete {key}: {e}", backend=self.backend_name)
        record_storage_operation(self.backend_name, "delete", "success")

    async def exists(self, key: str) -> bool:
        return self._path_for(key).is_file()

    def bucket(self) -> str:
        return "local"

    def public_url(self, key: str) -> str:
        return f"{self.public_base_url}/{key}"

    def _signature(self, key: str, expires: int, content_type: str) -> str:
        message = f"{key}:{expires}:{content_type}".encode("utf-8")
        return hmac.new(self._secret, message, hashlib.sha256).hexdigest()

    async def presign_upload(self, key: str, content_type: str, expires_in: int) -> Dict[str, Any]:
        self._path_for(key)
        expires = int(time.time()) + expires_in
        signature = self._signature(key, expires, content_type)
        url = f"{self.upload_endpoint}/{quote(key)}?expires={expires}&signature={signature}"
        return {
            "method": "PUT",
            "url": url,
            "headers": {"Content-Type": content_type},
            "expires_in": expires_in,
        }

    def verify_upload_signature(
        self,
        key: str,
        expires: int,
        content_type: str,
        signature: str,
        now: Optional[float] = None,
    ) -> bool:
        """Check an upload target issued by presign_upload()."""
        if expires < int(now if now is not None else time.time()):
            return False
        expected = self._signature(key, expires, content_type)
        return hmac.compare_digest(expected, signature or "")


# =============================================================================
# S3-Compatible Implementation (Production)
# =============================================================================

class S3Storage(IStorage):
    """
    S3-protocol object store (AWS S3, Cloudflare R2, MinIO).

    boto3 clients are synchronous; every call runs in a worker thread so the
    event loop is never blocked on network I/O.
    """

    backend_name = "s3"

    def __init__(
        self,
        bucket_name: str,
        region: str = "us-east-1",
        endpoint_url: Optional[str] = None,
        access_key_id: Optional[str] = None,
        secret_access_key: Optional[str] = None,
        public_base_url: Optional[str] = None,
        cache_control: str = "public, max-age=31536000, immutable",
        object_acl: Optional[str] = None,
        client: Any = None,
    ):
        self._bucket = bucket_name
        self.region = region
        self.endpoint_url = endpoint_url
        self.cache_control = cache_control
        self.object_acl = object_acl

        if public_base_url:
            self.public_base_url = public_base_url.rstrip("/")
        elif endpoint_url:
            self.public_base_url = f"{endpoint_url.rstrip('/')}/{bucket_name}"
        else:
            self.public_base_url = f"https://{bucket_name}.s3.{region}.amazonaws.com"

        if client is None:
            # Custom endpoints (R2, MinIO) need path-style addressing
            boto_config = BotoConfig(
                signature_version="s3v4",
                s3={"addressing_style": "path" if endpoint_url else "auto"},
            )
            client = boto3.client(
                "s3",
                region_name=region,
                endpoint_url=endpoint_url,
                aws_access_key_id=access_key_id,
                aws_secret_access_key=secret_access_key,
                config=boto_config,
            )
        self._client = client

    def _error(self, operation: str, key: str, exc: Exception) -> StorageError:
        record_storage_operation(self.backend_name, operation, "error")
        return StorageError(f"S3 {operation} failed for {key}: {exc}", backend=self.backend_name)

    async def upload(self, key: str, data: bytes, content_type: str) -> str:
        params = {
            "Bucket": self._bucket,
            "Key": key,
            "Body": data,
            "ContentType": content_type,
            "CacheControl": self.cache_control,
        }
        if self.object_acl:
            params["ACL"] = self.object_acl

        try:
            await asyncio.to_thread(self._client.put_object, **params)
        except (ClientError, BotoCoreError) as e:
            raise self._error("upload", key, e)

        record_storage_operation(self.backend_name, "upload", "success")
        return self.public_url(key)

    async def download(self, key: str) -> bytes:
        try:
            response = await asyncio.to_thread(self._client.get_object, Bucket=self._bucket, Key=key)
            data = await asyncio.to_thread(response["Body"].read)
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in ("NoSuchKey", "404", "NotFound"):
                raise NotFoundError(f"Object not found: {key}", resource="object")
            raise self._error("download", key, e)
        except BotoCoreError as e:
            raise self._error("download", key, e)

        record_storage_operation(self.backend_name, "download", "success")
        return data

    async def delete(self, key: str) -> None:
        # S3 DeleteObject succeeds for absent keys
        try:
            await asyncio.to_thread(self._client.delete_object, Bucket=self._bucket, Key=key)
        except (ClientError, BotoCoreError) as e:
            raise self._error("delete", key, e)
        record_storage_operation(self.backend_name, "delete", "success")

    async def delete_many(self, keys: List[str]) -> List[str]:
        if not keys:
            return []

        deleted: List[str] = []
        for start in range(0, len(keys), S3_DELETE_BATCH_SIZE):
            batch = keys[start:start + S3_DELETE_BATCH_SIZE]
            try:
                response = await asyncio.to_thread(
                    self._client.delete_objects,
                    Bucket=self._bucket,
                    Delete={"Objects": [{"Key": key} for key in batch], "Quiet": True},
                )
            except (ClientError, BotoCoreError) as e:
                record_storage_operation(self.backend_name, "delete_many", "error")
                logger.warning("storage_batch_delete_failed", keys=len(batch), error=str(e))
                continue

            failed = {error["Key"] for error in response.get("Errors", [])}
            for error in response.get("Errors", []):
                logger.warning(
                    "storage_delete_failed",
                    key=error.get("Key"),
                    error=error.get("Message") or error.get("Code"),
                )
            deleted.extend(key for key in batch if key not in failed)
            record_storage_operation(self.backend_name, "delete_many", "error" if failed else "success")

        return deleted

    async def exists(self, key: str) -> bool:
        try:
            await asyncio.to_thread(self._client.head_object, Bucket=self._bucket, Key=key)
            return True
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in ("404", "NoSuchKey", "NotFound"):
                return False
            raise self._error("exists", key, e)
        except BotoCoreError as e:
            raise self._error("exists", key, e)

    def bucket(self) -> str:
        return self._bucket

    def public_url(self, key: str) -> str:
        return f"{self.public_base_url}/{key}"

    async def presign_upload(self, key: str, content_type: str, expires_in: int) -> Dict[str, Any]:
        try:
            url = await asyncio.to_thread(
                self._client.generate_presigned_url,
                "put_object",
                Params={"Bucket": self._bucket, "Key": key, "ContentType": content_type},
                ExpiresIn=expires_in,
            )
        except (ClientError, BotoCoreError) as e:
            raise self._error("presign", key, e)

        return {
            "method": "PUT",
            "url": url,
            "headers": {"Content-Type": content_type},
            "expires_in": expires_in,
        }


# =============================================================================
# Factory
# =============================================================================

def create_storage(config: Settings) -> IStorage:
    """
    Build the storage variant named by STORAGE_BACKEND.

    Called once at startup; the instance is passed by reference to whoever
    needs it.
    """
    backend = config.STORAGE_BACKEND.lower()

    if backend == "s3":
        missing = [
            name for name in ("S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY")
            if not getattr(config, name)
        ]
        if missing:
            raise RuntimeError(f"S3 storage requires: {', '.join(missing)}")

        logger.info("storage_initialized", backend="s3", bucket=config.S3_BUCKET, endpoint=config.S3_ENDPOINT_URL)
        return S3Storage(
            bucket_name=config.S3_BUCKET,
            region=config.S3_REGION,
            endpoint_url=config.S3_ENDPOINT_URL,
            access_key_id=config.S3_ACCESS_KEY_ID,
            secret_access_key=config.S3_SECRET_ACCESS_KEY,
            public_base_url=config.S3_PUBLIC_URL,
            cache_control=config.ARTIFACT_CACHE_CONTROL,
            object_acl=config.S3_OBJECT_ACL,
        )

    if backend == "local":
        logger.info("storage_initialized", backend="local", path=config.LOCAL_STORAGE_PATH)
        return LocalStorage(
            base_path=config.LOCAL_STORAGE_PATH,
            public_base_url=config.LOCAL_PUBLIC_URL,
            upload_endpoint=config.LOCAL_UPLOAD_ENDPOINT,
            signing_secret=config.LOCAL_SIGNING_SECRET,
        )

    raise RuntimeError(f"Unknown STORAGE_BACKEND: {config.STORAGE_BACKEND!r}")
