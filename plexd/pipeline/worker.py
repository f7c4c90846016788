"""Runs one transcode job to a terminal state.

The worker checks preconditions, then drives at most two encoder attempts:
hardware first (when configured), software once if the hardware encoder turns
out to be unavailable. Partial output is removed before every restart and on
every non-successful exit, so when ``run`` returns the output directory is
either complete or gone.
"""

import logging
import time
from typing import List

from plexd.config.models import AppConfig
from plexd.domain.events import EncoderFallback, JobCompleted, JobFailed, JobCancelled
from plexd.domain.models import EncoderKind, EncodeOutcome, JobStatus, TranscodeJob
from plexd.infrastructure.blob_store import BlobStore
from plexd.infrastructure.event_bus import EventBus
from plexd.infrastructure.ffmpeg import FFmpegAdapter
from plexd.infrastructure.hls import validate_manifest
from plexd.infrastructure.metadata_store import MetadataStore


class TranscodeWorker:
    """Supervises the encoder process for one job at a time (per calling thread)."""

    def __init__(
        self,
        config: AppConfig,
        store: MetadataStore,
        blobs: BlobStore,
        ffmpeg_adapter: FFmpegAdapter,
        event_bus: EventBus,
    ):
        self.config = config
        self.store = store
        self.blobs = blobs
        self.ffmpeg_adapter = ffmpeg_adapter
        self.event_bus = event_bus
        self.logger = logging.getLogger(__name__)

    def _attempt_plan(self) -> List[EncoderKind]:
        if self.config.transcode.hardware_encoder:
            return [EncoderKind.HARDWARE, EncoderKind.SOFTWARE]
        return [EncoderKind.SOFTWARE]

    def fail(self, job: TranscodeJob, reason: str) -> None:
        self.blobs.delete_output(job.file_id)
        job.status = JobStatus.FAILED
        job.error_message = reason
        self.logger.error(f"TRANSCODE_END: {job.file_id} status=failed reason={reason}")
        self.event_bus.publish(JobFailed(file_id=job.file_id, error_message=reason))

    def _cancelled(self, job: TranscodeJob) -> None:
        self.blobs.delete_output(job.file_id)
        job.status = JobStatus.CANCELLED
        job.error_message = "Cancelled"
        self.logger.info(f"TRANSCODE_END: {job.file_id} status=cancelled")
        self.event_bus.publish(JobCancelled(file_id=job.file_id))

    def check_preconditions(self, job: TranscodeJob) -> bool:
        """Fails the job without spawning anything if input or disk space is missing."""
        if not self.blobs.has_blob(job.file_id):
            self.fail(job, "missing input: source blob does not exist")
            return False
        free = self.blobs.free_bytes()
        minimum = self.config.storage.min_free_bytes
        if free < minimum:
            self.fail(job, f"insufficient disk space: {free} bytes free, {minimum} required")
            return False
        return True

    def run(self, job: TranscodeJob) -> None:
        start = time.monotonic()
        if job.is_cancelled:
            self._cancelled(job)
            return
        if not self.check_preconditions(job):
            return

        source = self.blobs.blob_path(job.file_id)
        plan = self._attempt_plan()
        for attempt, encoder in enumerate(plan):
            job.encoder_kind = encoder
            job.status = JobStatus.TRANSCODING
            job.progress = 0
            output_dir = self.blobs.prepare_output(job.file_id)
            self.logger.info(f"TRANSCODE_START: {job.file_id} encoder={encoder.value}")

            result = self.ffmpeg_adapter.transcode(job, self.config.transcode, source, output_dir, encoder)

            if result.outcome == EncodeOutcome.CANCELLED or job.is_cancelled:
                self._cancelled(job)
                return

            if result.outcome == EncodeOutcome.SUCCEEDED:
                self._finish(job, start)
                return

            is_last = attempt == len(plan) - 1
            if result.outcome == EncodeOutcome.ENCODER_UNAVAILABLE and encoder == EncoderKind.HARDWARE and not is_last:
                self.blobs.delete_output(job.file_id)
                self.logger.info(f"FFMPEG_FALLBACK: {job.file_id} (hardware -> software): {result.error_message}")
                self.event_bus.publish(EncoderFallback(file_id=job.file_id, reason=result.error_message or ""))
                continue

            self.fail(job, result.error_message or f"encoder {result.outcome.value}")
            return

    def _finish(self, job: TranscodeJob, start: float) -> None:
        manifest = self.blobs.manifest_path(job.file_id)
        valid, error = validate_manifest(manifest)
        if not valid:
            self.fail(job, f"encoder exited cleanly but output is incomplete: {error}")
            return

        updated = self.store.update(
            job.file_id,
            derived_ready=True,
            derived_path=self.blobs.relative_manifest_path(job.file_id),
        )
        if updated is None:
            # Record deleted while encoding; nothing left to attach the output to
            self._cancelled(job)
            return

        job.status = JobStatus.COMPLETE
        job.progress = 100
        elapsed = time.monotonic() - start
        self.logger.info(
            f"TRANSCODE_END: {job.file_id} status=complete encoder={job.encoder_kind.value} elapsed={elapsed:.2f}s"
        )
        self.event_bus.publish(JobCompleted(file_id=job.file_id, encoder_kind=job.encoder_kind, elapsed_seconds=elapsed))
