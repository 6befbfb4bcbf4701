"""Object storage for migrated attachments."""

import logging
import posixpath
from abc import ABC, abstractmethod
from typing import Dict, Tuple

from supabase import Client

from ..exceptions import AttachmentUploadFailed

logger = logging.getLogger(__name__)


class ObjectStorage(ABC):
    """Upload-by-key object storage with public URLs."""

    @abstractmethod
    def put_object(self, key: str, content: bytes, content_type: str) -> None:
        pass

    @abstractmethod
    def exists(self, key: str) -> bool:
        pass

    @abstractmethod
    def get_public_url(self, key: str) -> str:
        pass


class SupabaseObjectStorage(ObjectStorage):
    """Supabase Storage bucket."""

    def __init__(self, client: Client, bucket: str):
        self.client = client
        self.bucket = bucket

    @property
    def _bucket(self):
        return self.client.storage.from_(self.bucket)

    def put_object(self, key: str, content: bytes, content_type: str) -> None:
        try:
            self._bucket.upload(
                key,
                content,
                file_options={"content-type": content_type, "upsert": "false"},
            )
        except Exception as e:
            # Keys are content-addressed; an existing object holds the same bytes
            if "already exists" in str(e).lower():
                logger.debug(f"Object {key} already exists in {self.bucket}")
                return
            raise AttachmentUploadFailed(f"Upload of {key} to {self.bucket} failed: {e}") from e

    def exists(self, key: str) -> bool:
        folder, name = posixpath.split(key)
        try:
            entries = self._bucket.list(folder, {"search": name})
        except Exception as e:
            raise AttachmentUploadFailed(f"Could not list {folder} in {self.bucket}: {e}") from e
        return any(entry.get("name") == name for entry in entries or [])

    def get_public_url(self, key: str) -> str:
        return self._bucket.get_public_url(key).rstrip("?")


class MemoryObjectStorage(ObjectStorage):
    """In-process object storage, used for dry runs and tests."""

    def __init__(self, bucket: str = "media", base_url: str = "memory://"):
        self.bucket = bucket
        self.base_url = base_url
        self.objects: Dict[str, Tuple[bytes, str]] = {}
        self.put_count = 0

    def put_object(self, key: str, content: bytes, content_type: str) -> None:
        self.objects[key] = (content, content_type)
        self.put_count += 1

    def exists(self, key: str) -> bool:
        return key in self.objects

    def get_public_url(self, key: str) -> str:
        return f"{self.base_url}{self.bucket}/{key}"
