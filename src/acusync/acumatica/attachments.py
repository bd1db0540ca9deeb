"""
Attachment download and on-disk storage.

Files are listed through the document's ``files`` collection and downloaded
from GetFile.ashx. Each stored file gets a unique path:

    {kind}/{reference_number}/{timestamp}-{clean file name}

Acumatica file names carry the screen path they were uploaded from
("Payments and Applications (AR 001234)\\check.jpg"); only the last
component is kept.
"""
import logging
import re
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from acusync.acumatica.mapping import normalize_file
from acusync.errors import RemoteRequestError
from acusync.models.record import Attachment, CanonicalRecord

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r'[#?&<>:"|*]')
_IMAGE_EXTENSIONS = (".jpg", ".jpeg", ".png")


def clean_file_name(name: str) -> str:
    """Last path component of ``name`` with URL/filesystem-unsafe characters replaced."""
    base = re.split(r"[\\/]", name.strip())[-1]
    base = _UNSAFE_CHARS.sub("_", base).strip()
    return base or "file"


def is_check_image(name: str) -> bool:
    lowered = name.lower()
    return "check" in lowered or lowered.endswith(_IMAGE_EXTENSIONS)


def build_storage_path(kind: str, reference_number: str, file_name: str, now: Optional[datetime] = None) -> str:
    now = now or datetime.utcnow()
    stamp = re.sub(r"[:.]", "-", now.isoformat())
    return f"{kind}/{reference_number}/{stamp}-{clean_file_name(file_name)}"


class FileStorage:
    """Stores attachment bytes under a root directory."""

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root)

    def path_for(self, relative: str) -> Path:
        path = (self.root / relative).resolve()
        if self.root.resolve() not in path.parents:
            raise ValueError(f"Storage path escapes the attachments root: {relative}")
        return path

    def write(self, relative: str, content: bytes) -> Path:
        path = self.path_for(relative)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)
        return path

    def read(self, relative: str) -> bytes:
        return self.path_for(relative).read_bytes()


class AttachmentFetcher:
    """Downloads a record's files and stores the ones not stored before."""

    def __init__(self, client, reader, store, storage: FileStorage):
        """
        Args:
            client: AcumaticaClient (download_file).
            reader: RemoteReader (fetch_detail, when files aren't supplied).
            store: LocalStore.
            storage: FileStorage the bytes are written to.
        """
        self.client = client
        self.reader = reader
        self.store = store
        self.storage = storage

    async def fetch_attachments(
        self, record: CanonicalRecord, files: Optional[List[Dict[str, Any]]] = None
    ) -> int:
        """
        Store every file attached to ``record`` that isn't stored yet.

        Args:
            record: The document whose files to fetch.
            files: Its raw ``files`` collection, if already fetched with the
                detail request. Fetched here otherwise.

        Returns:
            Number of newly stored files.
        """
        if files is None:
            detail = await self.reader.fetch_detail(record.kind, record.reference_number, ["files"])
            files = (detail or {}).get("files") or []

        stored = 0
        for raw in files:
            fields = normalize_file(raw)
            if fields is None:
                continue
            file_id, file_name = fields["file_id"], fields["file_name"]
            if self.store.attachment_exists(record.reference_number, file_id):
                continue

            try:
                content, content_type = await self.client.download_file(file_id)
            except RemoteRequestError as exc:
                logger.warning(
                    "File %s of %s %s could not be downloaded: %s",
                    file_id, record.kind, record.reference_number, exc,
                )
                continue

            attachment = Attachment(
                kind=record.kind,
                reference_number=record.reference_number,
                file_id=file_id,
                file_name=clean_file_name(file_name),
                content_type=content_type,
                file_size=len(content),
                storage_path=build_storage_path(record.kind, record.reference_number, file_name),
                is_check_image=is_check_image(file_name),
            )
            stored += self.store.upsert_attachment(attachment, content, self.storage)

        if stored:
            logger.info("Stored %d new files for %s %s", stored, record.kind, record.reference_number)
        return stored
