"""
Object storage for uploaded images.

``BlobStore`` is the contract the moderation service depends on; the
filesystem-backed ``LocalBlobStore`` is the implementation wired in by
default. ``put`` reports failure through its return value so the caller can
record an upload failure separately from an analysis failure.
"""

import hashlib
import hmac
import time
from abc import ABC, abstractmethod
from datetime import timedelta
from pathlib import Path
from typing import Optional
from urllib.parse import quote, urlencode

from safety_gateway.core.config import settings
from safety_gateway.core.logger import logger


class BlobStore(ABC):
    """Storage contract used by the moderation service."""

    @abstractmethod
    def put(self, path: str, data: bytes, content_type: str) -> bool:
        ...

    @abstractmethod
    def exists(self, path: str) -> bool:
        ...

    @abstractmethod
    def temporary_url(self, path: str, ttl: timedelta) -> str:
        ...


class LocalBlobStore(BlobStore):
    """Stores blobs under a root directory and hands out HMAC-signed URLs."""

    def __init__(self, root: str, signing_key: str, url_prefix: str = "/storage"):
        self.root = Path(root).resolve()
        self.signing_key = signing_key.encode("utf-8")
        self.url_prefix = url_prefix.rstrip("/")

    def resolve(self, path: str) -> Path:
        """Map a blob path to a file under the root; raises ValueError on traversal."""
        target = (self.root / path).resolve()
        if target != self.root and self.root not in target.parents:
            raise ValueError(f"Blob path escapes storage root: {path}")
        return target

    def put(self, path: str, data: bytes, content_type: str) -> bool:
        try:
            target = self.resolve(path)
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
        except (OSError, ValueError) as e:
            logger.error(
                f"Blob upload failed for {path}",
                extra={"path": path, "content_type": content_type, "error": str(e)}
            )
            return False

        logger.info(
            f"Stored blob {path}",
            extra={"path": path, "content_type": content_type, "bytes": len(data)}
        )
        return True

    def exists(self, path: str) -> bool:
        try:
            return self.resolve(path).is_file()
        except ValueError:
            return False

    def sign(self, path: str, expires: int) -> str:
        message = f"{path}:{expires}".encode("utf-8")
        return hmac.new(self.signing_key, message, hashlib.sha256).hexdigest()

    def temporary_url(self, path: str, ttl: timedelta) -> str:
        expires = int(time.time() + ttl.total_seconds())
        query = urlencode({"expires": expires, "signature": self.sign(path, expires)})
        return f"{self.url_prefix}/{quote(path)}?{query}"

    def verify(self, path: str, expires: int, signature: str, now: Optional[float] = None) -> bool:
        """True if the signature matches and has not expired."""
        if (now if now is not None else time.time()) > expires:
            return False
        return hmac.compare_digest(self.sign(path, expires), signature)


_blob_store: Optional[BlobStore] = None


def get_blob_store() -> BlobStore:
    """Return the process-wide blob store (FastAPI dependency)."""
    global _blob_store
    if _blob_store is None:
        _blob_store = LocalBlobStore(settings.blob_storage_root, settings.blob_signing_key)
    return _blob_store
