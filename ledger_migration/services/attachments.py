"""
attachments.py
--------------------
Content-addressed transfer of source attachments into object storage.

Each attachment is downloaded with a size ceiling, fingerprinted with
SHA-256 and stored under ``{prefix}/{entity}/{destination id}/{sha256}{ext}``.
Byte-identical content is uploaded once per run regardless of the URL it
came from; an object already present at the derived key is reused.
"""

import hashlib
import logging
import mimetypes
from typing import Any, Dict, Optional, Tuple

import requests

from ..exceptions import (
    AttachmentDownloadFailed,
    AttachmentTooLarge,
    AttachmentUploadFailed,
)
from ..loaders.storage import ObjectStorage
from ..models.migration import StorageConfig
from ..models.record import AttachmentDescriptor
from ..utils.http import TRANSIENT_STATUS_CODES, create_session

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024
DEFAULT_CONTENT_TYPE = "application/octet-stream"


class AttachmentTransfer:
    """Downloads source attachments and stores them by content fingerprint."""

    def __init__(
        self,
        storage: ObjectStorage,
        config: Optional[StorageConfig] = None,
        session: Optional[requests.Session] = None,
        retry_config: Optional[Dict[str, Any]] = None
    ):
        """
        Args:
            storage: Object storage the attachments are copied into
            config: Size ceiling, key prefix and download timeout
            session: Download session (one retrying on transient failures is created if omitted)
            retry_config: Retry settings for the created session
        """
        self.storage = storage
        self.config = config or StorageConfig()
        self._session = session or create_session(retry_config)
        self._by_fingerprint: Dict[str, str] = {}
        self.uploaded = 0
        self.reused = 0

    @staticmethod
    def compute_hash(content: bytes) -> str:
        """Hex-encoded SHA-256 of the content."""
        return hashlib.sha256(content).hexdigest()

    @staticmethod
    def resolve_content_type(descriptor: AttachmentDescriptor, header_type: Optional[str] = None) -> str:
        """Content type from the descriptor, the response, or the filename."""
        if descriptor.content_type:
            return descriptor.content_type
        if header_type:
            return header_type.split(";")[0].strip()
        guessed, _ = mimetypes.guess_type(descriptor.filename)
        return guessed or DEFAULT_CONTENT_TYPE

    @staticmethod
    def resolve_extension(descriptor: AttachmentDescriptor, content_type: str) -> str:
        return descriptor.extension or mimetypes.guess_extension(content_type) or ""

    def storage_key(self, entity_type: str, destination_id: str, fingerprint: str, extension: str) -> str:
        """Deterministic key for an attachment."""
        parts = [self.config.key_prefix.strip("/"), entity_type, str(destination_id), f"{fingerprint}{extension}"]
        return "/".join(p for p in parts if p)

    def _fetch(self, url: str) -> Tuple[bytes, Optional[str]]:
        """Stream a download, enforcing the size ceiling."""
        ceiling = self.config.max_attachment_bytes

        try:
            response = self._session.get(url, stream=True, timeout=self.config.download_timeout)
        except requests.exceptions.RequestException as e:
            raise AttachmentDownloadFailed(f"Download of {url} failed: {type(e).__name__}: {e}") from e

        try:
            status = response.status_code
            if status in TRANSIENT_STATUS_CODES:
                raise AttachmentDownloadFailed(f"HTTP {status} downloading {url} after retries")
            if status >= 400:
                raise AttachmentDownloadFailed(f"HTTP {status} downloading {url}")

            declared = response.headers.get("Content-Length")
            if declared and declared.isdigit() and int(declared) > ceiling:
                raise AttachmentTooLarge(f"{url} is {declared} bytes (limit {ceiling})")

            chunks = []
            total = 0
            try:
                for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                    total += len(chunk)
                    if total > ceiling:
                        raise AttachmentTooLarge(f"{url} exceeds {ceiling} bytes")
                    chunks.append(chunk)
            except requests.exceptions.RequestException as e:
                raise AttachmentDownloadFailed(f"Download of {url} interrupted: {type(e).__name__}: {e}") from e

            return b"".join(chunks), response.headers.get("Content-Type")
        finally:
            response.close()

    def download(self, descriptor: AttachmentDescriptor) -> Tuple[bytes, Optional[str]]:
        """Download an attachment's bytes; transient failures are retried by the session."""
        ceiling = self.config.max_attachment_bytes
        if descriptor.byte_size and descriptor.byte_size > ceiling:
            raise AttachmentTooLarge(
                f"{descriptor.filename or descriptor.url} is {descriptor.byte_size} bytes (limit {ceiling})"
            )

        return self._fetch(descriptor.url)

    def transfer(self, descriptor: AttachmentDescriptor, destination_id: str, entity_type: str = "media") -> str:
        """
        Copy an attachment into object storage.

        Args:
            descriptor: Source attachment descriptor
            destination_id: Primary key of the owning destination row
            entity_type: Owning entity type, used in the storage key

        Returns:
            Durable public URL of the stored object

        Raises:
            AttachmentTooLarge, AttachmentDownloadFailed, AttachmentUploadFailed
        """
        content, header_type = self.download(descriptor)
        fingerprint = self.compute_hash(content)

        known_url = self._by_fingerprint.get(fingerprint)
        if known_url:
            self.reused += 1
            logger.debug(f"Reusing stored object for {descriptor.filename} ({fingerprint[:12]})")
            return known_url

        content_type = self.resolve_content_type(descriptor, header_type)
        key = self.storage_key(entity_type, destination_id, fingerprint, self.resolve_extension(descriptor, content_type))

        if self.storage.exists(key):
            self.reused += 1
            logger.debug(f"Object already stored at {key}")
        else:
            self.storage.put_object(key, content, content_type)
            self.uploaded += 1
            logger.info(f"Uploaded {descriptor.filename or key} ({len(content)} bytes) to {key}")

        public_url = self.storage.get_public_url(key)
        if not public_url:
            raise AttachmentUploadFailed(f"No public URL for {key}")

        self._by_fingerprint[fingerprint] = public_url
        return public_url
