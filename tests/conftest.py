import threading
import pytest
import yaml
from pathlib import Path
from plexd.config.models import AppConfig
from plexd.domain.models import EncodeOutcome, FileRecord
from plexd.infrastructure.blob_store import BlobStore
from plexd.infrastructure.event_bus import EventBus
from plexd.infrastructure.ffmpeg import EncodeResult
from plexd.infrastructure.metadata_store import MetadataStore

# ============================================================================
# HLS output helpers
# ============================================================================

SEGMENT_BYTES = b"\x47" * 188


def write_hls_output(output_dir: Path, complete: bool = True, segments: int = 2, manifest_name: str = "playlist.m3u8") -> Path:
    """Writes a small manifest + segments; without the end marker when incomplete."""
    output_dir.mkdir(parents=True, exist_ok=True)
    lines = ["#EXTM3U", "#EXT-X-VERSION:3", "#EXT-X-TARGETDURATION:4", "#EXT-X-PLAYLIST-TYPE:VOD"]
    for i in range(segments):
        name = f"segment_{i:03d}.ts"
        (output_dir / name).write_bytes(SEGMENT_BYTES)
        lines.extend(["#EXTINF:4.000000,", name])
    if complete:
        lines.append("#EXT-X-ENDLIST")
    manifest = output_dir / manifest_name
    manifest.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return manifest


class FakeEncoder:
    """Stands in for FFmpegAdapter; writes HLS output instead of spawning ffmpeg.

    ``outcomes`` maps EncoderKind -> EncodeOutcome (default: SUCCEEDED).
    When ``gate`` is set, each run blocks until the gate opens or the job is cancelled.
    """

    def __init__(self, outcomes=None, gate=None, available=True):
        self.outcomes = outcomes or {}
        self.gate = gate
        self.available = available
        self.calls = []
        self.running = 0
        self.peak = 0
        self.started = threading.Semaphore(0)
        self._lock = threading.Lock()

    def is_available(self, config):
        return self.available

    def transcode(self, job, config, source, output_dir, encoder):
        with self._lock:
            self.calls.append((job.file_id, encoder))
            self.running += 1
            self.peak = max(self.peak, self.running)
        self.started.release()
        try:
            # Partial output exists while the encoder runs
            write_hls_output(output_dir, complete=False, segments=1, manifest_name=config.manifest_name)
            if self.gate is not None:
                while not self.gate.wait(0.01):
                    if job.is_cancelled:
                        break
            if job.is_cancelled:
                return EncodeResult(EncodeOutcome.CANCELLED, -15, "Cancelled")
            outcome = self.outcomes.get(encoder, EncodeOutcome.SUCCEEDED)
            if outcome == EncodeOutcome.SUCCEEDED:
                write_hls_output(output_dir, complete=True, manifest_name=config.manifest_name)
                job.progress = 100
                return EncodeResult(outcome, 0)
            if outcome == EncodeOutcome.ENCODER_UNAVAILABLE:
                return EncodeResult(outcome, 187, "Hardware encoder unavailable: cannot create compression session")
            return EncodeResult(outcome, 1, f"ffmpeg exited with code 1 ({encoder.value})")
        finally:
            with self._lock:
                self.running -= 1


# ============================================================================
# Configuration Fixtures
# ============================================================================

@pytest.fixture
def data_dir(tmp_path):
    path = tmp_path / "data"
    path.mkdir()
    return path


@pytest.fixture
def app_config(data_dir):
    """Returns an AppConfig rooted in a temporary data directory."""
    return AppConfig(
        storage={"data_dir": str(data_dir), "min_free_bytes": 0, "chunk_size": 4096},
        transcode={"max_concurrent": 2, "timeout_s": 30.0, "terminate_grace_s": 1.0},
        lifecycle={"expiry_hours": 24, "sweep_interval_s": 3600},
    )


@pytest.fixture
def config_yaml_path(tmp_path):
    """Creates a temporary YAML config file."""
    conf_dir = tmp_path / "conf"
    conf_dir.mkdir()
    conf_file = conf_dir / "plexd.yaml"

    content = {
        'general': {'debug': True},
        'server': {'host': '127.0.0.1', 'port': 9090},
        'storage': {'data_dir': str(tmp_path / "uploads"), 'min_free_bytes': 0},
        'transcode': {'max_concurrent': 3, 'hardware_encoder': 'h264_nvenc'},
        'lifecycle': {'expiry_hours': 12},
    }

    with open(conf_file, 'w') as f:
        yaml.dump(content, f)

    return conf_file

# ============================================================================
# Infrastructure Fixtures
# ============================================================================

@pytest.fixture
def event_bus():
    """Returns a fresh EventBus instance."""
    return EventBus()


@pytest.fixture
def store(data_dir):
    return MetadataStore(data_dir / "metadata.json")


@pytest.fixture
def blobs(data_dir):
    blob_store = BlobStore(data_dir)
    blob_store.ensure_dirs()
    return blob_store


@pytest.fixture
def fake_encoder_cls():
    return FakeEncoder


@pytest.fixture
def hls_writer():
    return write_hls_output


@pytest.fixture
def make_record(store, blobs):
    """Creates a stored record (and by default its blob)."""
    counter = {"n": 0}

    def _make(
        name="clip.mp4",
        content=b"video-bytes",
        content_type="video/mp4",
        set_name=None,
        saved_at=None,
        derived_ready=False,
        with_blob=True,
    ):
        counter["n"] += 1
        file_id = f"{counter['n']:032x}"
        fields = dict(
            id=file_id,
            display_name=name,
            byte_size=len(content),
            content_type=content_type,
            set_name=set_name,
            derived_ready=derived_ready,
            derived_path=blobs.relative_manifest_path(file_id) if derived_ready else None,
            dedupe_key=(name, len(content)),
        )
        if saved_at is not None:
            fields["saved_at"] = saved_at
        rec = FileRecord(**fields)
        if with_blob:
            blobs.blob_path(file_id).write_bytes(content)
        store.insert(rec)
        return rec

    return _make


# ============================================================================
# Markers
# ============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests"
    )
    config.addinivalue_line(
        "markers", "unit: marks tests as unit tests"
    )
