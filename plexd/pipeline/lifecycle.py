"""Association, deletion, expiry and startup reconciliation of stored files.

Any removal first cancels the file's transcode job (the scheduler waits for the
worker to terminate the encoder and clean its partial output), and only then
takes the store lock to delete blobs, output directories and records. The
store lock is never held while waiting on the scheduler: a finishing worker
needs that lock to flag its record ready.
"""

import logging
import threading
import time
from typing import Callable, Dict, Iterable, List, Optional

from plexd.config.models import AppConfig
from plexd.domain.events import FilesRemoved
from plexd.domain.models import FileNotFoundInStore, FileRecord
from plexd.infrastructure.blob_store import BlobStore
from plexd.infrastructure.event_bus import EventBus
from plexd.infrastructure.hls import is_manifest_complete
from plexd.infrastructure.housekeeping import HousekeepingService
from plexd.infrastructure.metadata_store import MetadataStore
from plexd.pipeline.scheduler import TranscodeScheduler


class LifecycleManager:
    def __init__(
        self,
        config: AppConfig,
        store: MetadataStore,
        blobs: BlobStore,
        scheduler: TranscodeScheduler,
        event_bus: EventBus,
        housekeeper: Optional[HousekeepingService] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.store = store
        self.blobs = blobs
        self.scheduler = scheduler
        self.event_bus = event_bus
        self.housekeeper = housekeeper or HousekeepingService()
        self.clock = clock
        self.logger = logging.getLogger(__name__)
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # ------------------------------------------------------------------
    # Association
    # ------------------------------------------------------------------

    def associate(self, file_ids: Iterable[str], set_name: Optional[str]) -> int:
        """Tags known ids with set_name. Unknown ids are ignored; returns the count tagged."""
        ids = [fid for fid in file_ids if isinstance(fid, str)]
        updated = self.store.update_many(ids, set_name=set_name or None)
        self.logger.info(f"ASSOCIATE: {updated}/{len(ids)} file(s) -> set {set_name!r}")
        return updated

    # ------------------------------------------------------------------
    # Deletion
    # ------------------------------------------------------------------

    def _remove_records(self, records: List[FileRecord], reason: str, set_name: Optional[str] = None) -> int:
        if not records:
            return 0
        ids = [rec.id for rec in records]
        for file_id in ids:
            self.scheduler.cancel(file_id)
        with self.store.locked():
            for file_id in ids:
                self.blobs.delete_blob(file_id)
                self.blobs.delete_output(file_id)
            removed = self.store.delete_many(ids)
        for file_id in ids:
            self.scheduler.forget(file_id)
        removed_ids = [rec.id for rec in removed]
        if removed_ids:
            self.event_bus.publish(FilesRemoved(file_ids=removed_ids, reason=reason, set_name=set_name))
        return len(removed_ids)

    def purge(self, set_name: Optional[str] = None) -> int:
        """Deletes every record in set_name, or every record when set_name is empty."""
        if set_name:
            targets = self.store.select(lambda rec: rec.set_name == set_name)
        else:
            targets = self.store.all()
        deleted = self._remove_records(targets, "purge", set_name=set_name or None)
        suffix = f" for set: {set_name}" if set_name else ""
        self.logger.info(f"PURGE: {deleted} file(s){suffix}")
        return deleted

    def delete_all(self, file_id: str) -> bool:
        rec = self.store.get(file_id)
        if rec is None:
            return False
        deleted = self._remove_records([rec], "delete") > 0
        if deleted:
            self.logger.info(f"DELETE: {rec.display_name} ({file_id}) original+derived")
        return deleted

    def delete_original_only(self, file_id: str) -> bool:
        """Removes the original blob and keeps a completed derived output servable.

        Without a ready derived output nothing would remain, so the whole
        record goes.
        """
        rec = self.store.get(file_id)
        if rec is None:
            return False
        if not rec.derived_ready:
            return self.delete_all(file_id)
        self.scheduler.cancel(file_id)
        with self.store.locked():
            if not self.store.contains(file_id):
                return False
            self.blobs.delete_blob(file_id)
        self.logger.info(f"DELETE: {rec.display_name} ({file_id}) original only")
        return True

    def delete_derived_only(self, file_id: str) -> bool:
        """Removes the derived output and resets the record so it can be regenerated."""
        rec = self.store.get(file_id)
        if rec is None:
            return False
        if not self.blobs.has_blob(file_id):
            return self.delete_all(file_id)
        self.scheduler.cancel(file_id)
        with self.store.locked():
            self.blobs.delete_output(file_id)
            updated = self.store.update(file_id, derived_ready=False, derived_path=None)
        self.scheduler.forget(file_id)
        if updated is None:
            return False
        self.logger.info(f"DELETE: {rec.display_name} ({file_id}) derived only")
        return True

    # ------------------------------------------------------------------
    # Transcode trigger
    # ------------------------------------------------------------------

    def trigger_transcode(self, file_id: str) -> bool:
        """Queues a transcode for a stored original without a ready derived output.

        Raises FileNotFoundInStore for unknown ids. Returns True when the id is
        queued or already active.
        """
        rec = self.store.get(file_id)
        if rec is None:
            raise FileNotFoundInStore(file_id)
        if rec.derived_ready:
            return False
        if not self.blobs.has_blob(file_id):
            return False
        return self.scheduler.enqueue(file_id)

    # ------------------------------------------------------------------
    # Expiry
    # ------------------------------------------------------------------

    def expiry_sweep(self, now: Optional[float] = None) -> int:
        """Deletes unassociated records older than the retention window."""
        now = self.clock() if now is None else now
        retention_s = self.config.lifecycle.expiry_hours * 3600.0
        expired = self.store.select(
            lambda rec: not rec.set_name and rec.age_seconds(now) > retention_s
        )
        cleaned = self._remove_records(expired, "expired")
        if cleaned:
            self.logger.info(f"EXPIRY_SWEEP: cleaned up {cleaned} expired file(s)")
        else:
            self.logger.debug("EXPIRY_SWEEP: nothing expired")
        return cleaned

    def _sweep_loop(self) -> None:
        interval = self.config.lifecycle.sweep_interval_s
        next_tick = time.monotonic() + interval
        while not self._stop_event.is_set():
            sleep_time = next_tick - time.monotonic()
            if sleep_time > 0 and self._stop_event.wait(sleep_time):
                break
            try:
                self.expiry_sweep()
            except Exception as e:
                self.logger.error(f"EXPIRY_SWEEP failed: {e}")
            next_tick += interval

    def start_periodic_sweep(self) -> None:
        if self._thread is not None:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._sweep_loop, name="plexd-expiry-sweep", daemon=True)
        self._thread.start()
        self.logger.info(f"Expiry sweep scheduled every {self.config.lifecycle.sweep_interval_s:.0f}s")

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=2.0)
            self._thread = None

    # ------------------------------------------------------------------
    # Startup reconciliation
    # ------------------------------------------------------------------

    def reconcile_on_startup(self) -> Dict[str, int]:
        """Brings records in line with what is on disk after a restart.

        - finished-but-unflagged output (manifest has its end marker) is adopted
        - partial output is deleted and the file re-queued, never resumed
        - records flagged ready whose output is gone are reset and re-queued
        - records with neither original nor derived output are dropped
        """
        counts = {"adopted": 0, "requeued": 0, "reset": 0, "dropped": 0, "orphans": 0}

        for rec in sorted(self.store.all(), key=lambda r: r.saved_at):
            complete = is_manifest_complete(self.blobs.manifest_path(rec.id))
            has_blob = self.blobs.has_blob(rec.id)

            if rec.derived_ready and complete:
                continue
            if not rec.derived_ready and complete:
                self.store.update(
                    rec.id,
                    derived_ready=True,
                    derived_path=self.blobs.relative_manifest_path(rec.id),
                )
                counts["adopted"] += 1
                self.logger.info(f"RECONCILE: adopted finished output for {rec.id}")
                continue

            if self.blobs.delete_output(rec.id):
                self.logger.info(f"RECONCILE: removed partial output for {rec.id}")
            if rec.derived_ready:
                self.store.update(rec.id, derived_ready=False, derived_path=None)
                counts["reset"] += 1

            if not has_blob:
                self.store.delete(rec.id)
                counts["dropped"] += 1
                self.logger.warning(f"RECONCILE: dropped {rec.id} (no original and no derived output)")
                continue

            if rec.is_video and self.scheduler.enqueue(rec.id):
                counts["requeued"] += 1

        counts["orphans"] = self.housekeeper.cleanup_orphan_outputs(
            self.blobs.output_root, [rec.id for rec in self.store.all()]
        )
        self.logger.info(
            "RECONCILE: adopted={adopted} requeued={requeued} reset={reset} "
            "dropped={dropped} orphans={orphans}".format(**counts)
        )
        return counts
