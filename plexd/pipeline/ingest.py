import logging
import os
import secrets
from dataclasses import dataclass
from typing import Iterable, Optional

from plexd.domain.events import FileUploaded
from plexd.domain.models import GENERIC_CONTENT_TYPE, MIME_TYPES, FileRecord, UploadError
from plexd.infrastructure.blob_store import BlobStore
from plexd.infrastructure.event_bus import EventBus
from plexd.infrastructure.metadata_store import MetadataStore
from plexd.pipeline.scheduler import TranscodeScheduler


def resolve_content_type(display_name: str, declared: Optional[str]) -> str:
    """Keeps a specific declared type; otherwise infers one from the extension."""
    declared = (declared or "").split(";")[0].strip().lower()
    if declared and declared != GENERIC_CONTENT_TYPE:
        return declared
    ext = os.path.splitext(display_name)[1].lower()
    return MIME_TYPES.get(ext, GENERIC_CONTENT_TYPE)


def new_file_id() -> str:
    return secrets.token_hex(16)


@dataclass
class UploadResult:
    record: FileRecord
    existing: bool = False
    transcoding: bool = False


class IngestService:
    """Stores uploaded byte streams as blobs and creates their records."""

    def __init__(self, store: MetadataStore, blobs: BlobStore, scheduler: TranscodeScheduler, event_bus: EventBus):
        self.store = store
        self.blobs = blobs
        self.scheduler = scheduler
        self.event_bus = event_bus
        self.logger = logging.getLogger(__name__)

    def _existing(self, record: FileRecord) -> UploadResult:
        self.logger.info(f"UPLOAD_DEDUPE: {record.display_name} ({record.byte_size} bytes) -> {record.id}")
        self.event_bus.publish(FileUploaded(
            file_id=record.id,
            display_name=record.display_name,
            byte_size=record.byte_size,
            existing=True,
        ))
        return UploadResult(record=record, existing=True, transcoding=False)

    @staticmethod
    def _drain(chunks: Iterable[bytes]) -> None:
        for _ in chunks:
            pass

    def upload(
        self,
        display_name: str,
        declared_content_type: Optional[str],
        chunks: Iterable[bytes],
        set_name: Optional[str] = None,
        declared_size: Optional[int] = None,
    ) -> UploadResult:
        """Stores one upload, or returns the ready record it duplicates.

        Duplicates are identified by (display_name, size), using the declared
        size when given and the number of bytes received otherwise. Raises
        UploadError when the stream or the write fails; no record is created
        in that case.
        """
        if declared_size is not None:
            match = self.store.find_by_dedupe_key((display_name, declared_size))
            if match is not None:
                try:
                    self._drain(chunks)
                except Exception as e:
                    raise UploadError(f"upload stream failed: {e}") from e
                return self._existing(match)

        file_id = new_file_id()
        try:
            written = self.blobs.write_stream(file_id, chunks)
        except Exception as e:
            self.logger.error(f"UPLOAD_FAILED: {display_name}: {e}")
            raise UploadError(f"upload stream failed: {e}") from e

        if declared_size is None:
            match = self.store.find_by_dedupe_key((display_name, written))
            if match is not None:
                self.blobs.delete_blob(file_id)
                return self._existing(match)

        record = FileRecord(
            id=file_id,
            display_name=display_name,
            byte_size=written,
            content_type=resolve_content_type(display_name, declared_content_type),
            set_name=set_name or None,
            dedupe_key=(display_name, declared_size if declared_size is not None else written),
        )
        try:
            self.store.insert(record)
        except Exception as e:
            self.blobs.delete_blob(file_id)
            self.logger.error(f"UPLOAD_FAILED: {display_name}: could not persist record: {e}")
            raise UploadError(f"could not persist record: {e}") from e

        transcoding = False
        if record.is_video:
            transcoding = self.scheduler.enqueue(file_id)

        self.logger.info(
            f"UPLOAD_DONE: {display_name} ({written} bytes) -> {file_id} "
            f"type={record.content_type} transcoding={transcoding}"
        )
        self.event_bus.publish(FileUploaded(
            file_id=file_id,
            display_name=display_name,
            byte_size=written,
        ))
        return UploadResult(record=record, existing=False, transcoding=transcoding)
