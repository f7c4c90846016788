import subprocess
import re
import logging
import time
import threading
import queue
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional
from plexd.domain.models import TranscodeJob, EncoderKind, EncodeOutcome
from plexd.config.models import TranscodeConfig
from plexd.infrastructure.event_bus import EventBus
from plexd.domain.events import JobProgressUpdated

# 'Duration: 00:01:02.50' is printed once per input before encoding starts
DURATION_RE = re.compile(r"Duration:\s*(\d+):(\d+):(\d+(?:\.\d+)?)")
# 'time=00:00:05.00' appears on every progress line
TIME_RE = re.compile(r"time=\s*(\d+):(\d+):(\d+(?:\.\d+)?)")

DIAGNOSTIC_TAIL_LINES = 20


def parse_clock(h: str, m: str, s: str) -> float:
    return float(h) * 3600 + float(m) * 60 + float(s)


def compute_progress(position: float, duration: float) -> int:
    if duration <= 0:
        return 0
    return max(0, min(100, round(100.0 * position / duration)))


@dataclass
class EncodeResult:
    outcome: EncodeOutcome
    returncode: Optional[int] = None
    error_message: Optional[str] = None


class FFmpegAdapter:
    """Wrapper around ffmpeg producing a single-rendition HLS output."""

    def __init__(self, event_bus: EventBus):
        self.event_bus = event_bus
        self.logger = logging.getLogger(__name__)

    def is_available(self, config: TranscodeConfig) -> bool:
        """Probes the ffmpeg binary once; False disables transcoding."""
        try:
            res = subprocess.run(
                [config.ffmpeg_path, "-hide_banner", "-version"],
                capture_output=True,
                timeout=15,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            self.logger.warning(f"ffmpeg not usable at {config.ffmpeg_path!r}: {e}")
            return False
        if res.returncode != 0:
            self.logger.warning(f"ffmpeg -version exited with code {res.returncode}")
            return False
        return True

    def _build_command(self, config: TranscodeConfig, source: Path, output_dir: Path, encoder: EncoderKind) -> List[str]:
        """Constructs the ffmpeg command line arguments."""
        cmd = [
            config.ffmpeg_path,
            "-hide_banner",
            "-nostdin",
            "-y",
            "-i", str(source),
        ]

        if encoder == EncoderKind.HARDWARE and config.hardware_encoder:
            cmd.extend([
                "-c:v", config.hardware_encoder,
                "-b:v", config.video_bitrate,
            ])
        else:
            cmd.extend([
                "-c:v", config.software_encoder,
                "-preset", config.software_preset,
                "-crf", str(config.crf),
            ])

        # Keyframe on every segment boundary so segments start independently
        cmd.extend([
            "-pix_fmt", "yuv420p",
            "-force_key_frames", f"expr:gte(t,n_forced*{config.segment_seconds})",
            "-c:a", "aac",
            "-b:a", config.audio_bitrate,
            "-ac", "2",
        ])

        cmd.extend([
            "-f", "hls",
            "-hls_time", str(config.segment_seconds),
            "-hls_playlist_type", "vod",
            "-hls_list_size", "0",
            "-hls_segment_filename", str(output_dir / config.segment_pattern),
            str(output_dir / config.manifest_name),
        ])
        return cmd

    def _stop_process(self, process, grace_s: float) -> None:
        """Terminates and always reaps the process."""
        process.terminate()
        try:
            process.wait(timeout=grace_s)
        except subprocess.TimeoutExpired:
            process.kill()
            process.wait()

    def transcode(
        self,
        job: TranscodeJob,
        config: TranscodeConfig,
        source: Path,
        output_dir: Path,
        encoder: EncoderKind,
    ) -> EncodeResult:
        """Runs one encoder attempt for job and reports how it ended.

        Progress is written to ``job.progress`` and published as
        JobProgressUpdated. The process handle is attached to the job for the
        duration of the run and is reaped on every exit path.
        """
        cmd = self._build_command(config, source, output_dir, encoder)
        self.logger.debug(f"FFMPEG_CMD: {' '.join(cmd)}")

        try:
            process = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                encoding="utf-8",
                errors="replace",  # container tags are echoed raw and need not be UTF-8
                bufsize=1
            )
        except OSError as e:
            return EncodeResult(EncodeOutcome.FAILED, error_message=f"ffmpeg could not be started: {e}")

        job.attach_process(process)
        deadline = time.monotonic() + config.timeout_s if config.timeout_s else None
        patterns = [p.lower() for p in config.hardware_failure_patterns]
        tail: "deque[str]" = deque(maxlen=DIAGNOSTIC_TAIL_LINES)
        state = {"duration": 0.0, "hw_unavailable": False}

        def _handle(line: str) -> None:
            text = line.rstrip()
            if not text:
                return
            tail.append(text)
            lowered = text.lower()
            if encoder == EncoderKind.HARDWARE and any(p in lowered for p in patterns):
                state["hw_unavailable"] = True

            if state["duration"] <= 0:
                match = DURATION_RE.search(text)
                if match:
                    state["duration"] = parse_clock(*match.groups())
                    job.duration_seconds = state["duration"]
                    return

            match = TIME_RE.search(text)
            if match and state["duration"] > 0:
                progress = compute_progress(parse_clock(*match.groups()), state["duration"])
                if progress != job.progress:
                    job.progress = progress
                    self.event_bus.publish(JobProgressUpdated(file_id=job.file_id, progress=progress))

        output_queue: "queue.Queue[Optional[str]]" = queue.Queue()

        def _reader():
            # Sentinel is queued even when reading fails
            try:
                if process.stdout:
                    for line in process.stdout:
                        output_queue.put(line)
            except (OSError, ValueError) as e:
                self.logger.warning(f"FFMPEG_READER_ERROR: {job.file_id} {e}")
            finally:
                output_queue.put(None)

        reader_thread = threading.Thread(target=_reader, name=f"ffmpeg-reader-{job.file_id[:8]}", daemon=True)
        reader_thread.start()

        try:
            while True:
                if job.is_cancelled:
                    self.logger.info(f"FFMPEG_INTERRUPTED: {job.file_id} (cancelled)")
                    self._stop_process(process, config.terminate_grace_s)
                    return EncodeResult(EncodeOutcome.CANCELLED, process.returncode, "Cancelled")

                if deadline is not None and time.monotonic() > deadline:
                    self.logger.warning(f"FFMPEG_TIMEOUT: {job.file_id} after {config.timeout_s:.0f}s")
                    self._stop_process(process, config.terminate_grace_s)
                    return EncodeResult(
                        EncodeOutcome.TIMED_OUT,
                        process.returncode,
                        f"timeout: encoder exceeded {config.timeout_s:.0f}s",
                    )

                try:
                    line = output_queue.get(timeout=0.1)
                except queue.Empty:
                    if process.poll() is not None:
                        break
                    continue

                if line is None:
                    break
                _handle(line)

            process.wait()

            # Drain whatever the reader pushed after the loop exited
            reader_thread.join(timeout=1.0)
            while True:
                try:
                    line = output_queue.get_nowait()
                except queue.Empty:
                    break
                if line is not None:
                    _handle(line)
        except BaseException:
            if process.poll() is None:
                self._stop_process(process, config.terminate_grace_s)
            raise
        finally:
            job.detach_process()

        returncode = process.returncode
        if returncode == 0:
            return EncodeResult(EncodeOutcome.SUCCEEDED, returncode)
        if state["hw_unavailable"] or (
            encoder == EncoderKind.HARDWARE and returncode in config.hardware_failure_exit_codes
        ):
            return EncodeResult(
                EncodeOutcome.ENCODER_UNAVAILABLE,
                returncode,
                f"Hardware encoder unavailable: {tail[-1] if tail else 'no diagnostic output'}",
            )
        detail = f": {tail[-1]}" if tail else ""
        return EncodeResult(EncodeOutcome.FAILED, returncode, f"ffmpeg exited with code {returncode}{detail}")
