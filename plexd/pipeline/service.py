"""Coordinating facade over the media pipeline.

MediaService owns one instance of every collaborator (record store, blob
layout, encoder adapter, worker, scheduler, ingest, lifecycle, activity feed)
and exposes one entry point per operation. Outer surfaces such as the HTTP
handler and the CLI talk only to this class.
"""

import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from plexd.config.models import AppConfig
from plexd.domain.models import (
    DeleteMode,
    FileNotFoundInStore,
    FileRecord,
    InvalidFileId,
    JobStatus,
    is_valid_file_id,
)
from plexd.infrastructure.blob_store import BlobStore
from plexd.infrastructure.event_bus import EventBus
from plexd.infrastructure.ffmpeg import FFmpegAdapter
from plexd.infrastructure.hls import is_segment_name
from plexd.infrastructure.housekeeping import HousekeepingService
from plexd.infrastructure.metadata_store import MetadataStore
from plexd.pipeline.activity import ActivityManager, ActivityState
from plexd.pipeline.ingest import IngestService, UploadResult
from plexd.pipeline.lifecycle import LifecycleManager
from plexd.pipeline.scheduler import TranscodeScheduler
from plexd.pipeline.worker import TranscodeWorker


def file_url(file_id: str) -> str:
    return f"/api/files/{file_id}"


def derived_url(file_id: str, manifest_name: str) -> str:
    return f"/api/files/{file_id}/hls/{manifest_name}"


class MediaService:
    def __init__(
        self,
        config: AppConfig,
        event_bus: Optional[EventBus] = None,
        ffmpeg_adapter: Optional[FFmpegAdapter] = None,
    ):
        self.config = config
        self.logger = logging.getLogger(__name__)
        self.event_bus = event_bus or EventBus()

        data_dir = Path(config.storage.data_dir)
        self.store = MetadataStore(data_dir / config.storage.metadata_file)
        self.blobs = BlobStore(
            data_dir,
            output_dir_name=config.storage.output_dir_name,
            manifest_name=config.transcode.manifest_name,
        )
        self.housekeeper = HousekeepingService()
        self.ffmpeg = ffmpeg_adapter or FFmpegAdapter(self.event_bus)
        self.worker = TranscodeWorker(config, self.store, self.blobs, self.ffmpeg, self.event_bus)
        self.scheduler = TranscodeScheduler(
            self.worker,
            max_concurrent=config.transcode.max_concurrent,
            event_bus=self.event_bus,
        )
        self.ingest = IngestService(self.store, self.blobs, self.scheduler, self.event_bus)
        self.lifecycle = LifecycleManager(
            config, self.store, self.blobs, self.scheduler, self.event_bus, housekeeper=self.housekeeper
        )
        self.activity_state = ActivityState(config.lifecycle.activity_feed_max_items)
        self.activity = ActivityManager(self.event_bus, self.activity_state)
        self._started = False

    # ------------------------------------------------------------------
    # Startup / shutdown
    # ------------------------------------------------------------------

    def start(self, periodic_sweep: bool = True) -> Dict[str, Any]:
        """Loads state, probes the encoder, sweeps expired files and reconciles disk."""
        self.blobs.ensure_dirs()
        loaded = self.store.load()
        partials = self.housekeeper.cleanup_partial_uploads(self.blobs.root, BlobStore.PARTIAL_SUFFIX)

        if not self.config.transcode.enabled:
            self.scheduler.disable("disabled by configuration")
        elif not self.ffmpeg.is_available(self.config.transcode):
            self.scheduler.disable(f"encoder tooling not available ({self.config.transcode.ffmpeg_path})")

        expired = self.lifecycle.expiry_sweep()
        reconciled = self.lifecycle.reconcile_on_startup()
        if periodic_sweep:
            self.lifecycle.start_periodic_sweep()
        self._started = True
        return {
            "records": loaded,
            "partial_uploads": partials,
            "expired": expired,
            "reconcile": reconciled,
            "transcoding": self.scheduler.enabled,
        }

    def stop(self) -> None:
        self.lifecycle.stop()
        self.scheduler.shutdown(wait=True)
        self._started = False

    @property
    def transcoding_enabled(self) -> bool:
        return self.scheduler.enabled

    # ------------------------------------------------------------------
    # Ingest
    # ------------------------------------------------------------------

    def upload(
        self,
        display_name: str,
        declared_content_type: Optional[str],
        chunks: Iterable[bytes],
        set_name: Optional[str] = None,
        declared_size: Optional[int] = None,
    ) -> UploadResult:
        return self.ingest.upload(
            display_name,
            declared_content_type,
            chunks,
            set_name=set_name,
            declared_size=declared_size,
        )

    def upload_response(self, result: UploadResult) -> Dict[str, Any]:
        rec = result.record
        return {
            "success": True,
            "fileId": rec.id,
            "id": rec.id,
            "url": file_url(rec.id),
            "fileName": rec.display_name,
            "size": rec.byte_size,
            "derivedReady": rec.derived_ready,
            "transcoding": result.transcoding,
            "existing": result.existing,
        }

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_record(self, file_id: str) -> FileRecord:
        if not is_valid_file_id(file_id):
            raise InvalidFileId(file_id)
        rec = self.store.get(file_id)
        if rec is None:
            raise FileNotFoundInStore(file_id)
        return rec

    def transcode_status(self, file_id: str) -> Dict[str, Any]:
        """Status from the live job if present, else the last failure, else the record."""
        rec = self.get_record(file_id)
        return self._status_for(rec)

    def _status_for(self, rec: FileRecord) -> Dict[str, Any]:
        view = self.scheduler.job_view(rec.id)
        if view is not None:
            status, progress = view
            return {"status": status.value, "progress": progress}
        failure = self.scheduler.last_failure(rec.id)
        if failure is not None and not rec.derived_ready:
            return {"status": JobStatus.FAILED.value, "progress": 0, "error": failure}
        if rec.derived_ready:
            return {"status": JobStatus.COMPLETE.value, "progress": 100}
        return {"status": JobStatus.NONE.value, "progress": 0}

    def list_files(self) -> List[Dict[str, Any]]:
        files = []
        for rec in sorted(self.store.all(), key=lambda r: r.saved_at):
            entry = {"fileId": rec.id, "url": file_url(rec.id)}
            entry.update(rec.to_document())
            entry.update(self._status_for(rec))
            if rec.derived_ready:
                entry["derivedUrl"] = derived_url(rec.id, self.config.transcode.manifest_name)
            files.append(entry)
        return files

    def original_path(self, file_id: str) -> Path:
        """Returns the blob path for file_id.

        A record whose blob vanished and which has no ready derived output is
        removed before FileNotFoundInStore is raised.
        """
        rec = self.get_record(file_id)
        if not self.blobs.has_blob(file_id):
            if not rec.derived_ready:
                self.logger.warning(f"Original blob missing for {file_id}, removing stale record")
                self.lifecycle.delete_all(file_id)
            raise FileNotFoundInStore(file_id)
        return self.blobs.blob_path(file_id)

    def derived_file(self, file_id: str, name: str) -> Path:
        """Resolves the manifest or one segment of a ready derived output."""
        rec = self.get_record(file_id)
        if not rec.derived_ready:
            raise FileNotFoundInStore(file_id)
        if "/" in name or "\\" in name or name.startswith("."):
            raise FileNotFoundInStore(f"{file_id}/{name}")
        if name != self.config.transcode.manifest_name and not is_segment_name(name):
            raise FileNotFoundInStore(f"{file_id}/{name}")
        path = self.blobs.output_dir(file_id) / name
        if not path.is_file():
            raise FileNotFoundInStore(f"{file_id}/{name}")
        return path

    def is_manifest(self, name: str) -> bool:
        return name == self.config.transcode.manifest_name

    def activity_snapshot(self) -> Dict[str, Any]:
        data = self.activity_state.snapshot()
        data["queued"] = self.scheduler.queued_ids()
        data["active"] = self.scheduler.snapshot()
        data["transcoding"] = self.scheduler.enabled
        data["maxConcurrent"] = self.scheduler.max_concurrent
        return data

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def associate(self, file_ids: Iterable[str], set_name: Optional[str]) -> int:
        return self.lifecycle.associate(file_ids, set_name)

    def purge(self, set_name: Optional[str] = None) -> int:
        return self.lifecycle.purge(set_name)

    def delete(self, file_id: str, mode: DeleteMode = DeleteMode.BOTH) -> bool:
        self.get_record(file_id)
        if mode == DeleteMode.ORIGINAL:
            return self.lifecycle.delete_original_only(file_id)
        if mode == DeleteMode.DERIVED:
            return self.lifecycle.delete_derived_only(file_id)
        return self.lifecycle.delete_all(file_id)

    def trigger_transcode(self, file_id: str) -> bool:
        self.get_record(file_id)
        return self.lifecycle.trigger_transcode(file_id)

    def expiry_sweep(self) -> int:
        return self.lifecycle.expiry_sweep()
