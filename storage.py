"""Where attachment and avatar bytes live.

Documents only hold the storage key and public URL of each file; the bytes
are written through a ``StorageBackend`` built once per app by
``build_storage``.
"""
import logging
from pathlib import Path

from config import Settings

logger = logging.getLogger(__name__)


class StorageBackend:
    def put(self, key: str, data: bytes, content_type: str = "") -> str:
        """Write *data* at *key*; returns the URL clients fetch it from."""
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError


class LocalBackend(StorageBackend):
    """Files under a directory on disk, served by the app at ``url_prefix``."""

    def __init__(self, root: str, url_prefix: str) -> None:
        self.root = Path(root).resolve()
        self.url_prefix = url_prefix.rstrip("/")

    def _path(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if path != self.root and self.root not in path.parents:
            raise ValueError(f"Storage key escapes the upload root: {key}")
        return path

    def put(self, key: str, data: bytes, content_type: str = "") -> str:
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        logger.debug("Stored %s (%d bytes)", key, len(data))
        return f"{self.url_prefix}/{key}"

    def delete(self, key: str) -> None:
        # already gone is fine
        self._path(key).unlink(missing_ok=True)


def build_storage(settings: Settings) -> StorageBackend:
    if settings.storage_backend != "local":
        raise ValueError(f"Unsupported storage backend: {settings.storage_backend}")
    logger.info("Storing uploads under %s", settings.storage_local_root)
    return LocalBackend(settings.storage_local_root, settings.storage_local_url_prefix)
