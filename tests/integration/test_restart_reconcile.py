import json
import threading
import pytest
from plexd.pipeline.service import MediaService

pytestmark = pytest.mark.integration


def _start(app_config, encoder):
    svc = MediaService(app_config, ffmpeg_adapter=encoder)
    summary = svc.start(periodic_sweep=False)
    return svc, summary


def test_restart_after_clean_run_keeps_everything(app_config, fake_encoder_cls):
    first, _ = _start(app_config, fake_encoder_cls())
    rec = first.upload("clip.mp4", "video/mp4", [b"data"], set_name="evening").record
    assert first.scheduler.wait_idle(timeout=5)
    first.stop()

    encoder = fake_encoder_cls()
    second, summary = _start(app_config, encoder)
    try:
        assert summary["records"] == 1
        assert summary["reconcile"]["requeued"] == 0
        assert encoder.calls == []
        stored = second.store.get(rec.id)
        assert stored.derived_ready is True
        assert stored.set_name == "evening"
        assert second.derived_file(rec.id, "playlist.m3u8").is_file()
    finally:
        second.stop()


def test_interrupted_transcode_restarts_from_scratch_once(app_config, data_dir, make_record, hls_writer, blobs, fake_encoder_cls):
    rec = make_record()
    # Encoder died mid-run: manifest without end marker and a stray segment
    manifest = hls_writer(blobs.output_dir(rec.id), complete=False, segments=5)
    stray = manifest.parent / "segment_004.ts"

    gate = threading.Event()
    encoder = fake_encoder_cls(gate=gate)
    svc, summary = _start(app_config, encoder)
    try:
        assert summary["reconcile"]["requeued"] == 1
        assert encoder.started.acquire(timeout=5)
        assert not stray.exists()
        gate.set()
        assert svc.scheduler.wait_idle(timeout=5)
        assert len(encoder.calls) == 1
        assert svc.store.get(rec.id).derived_ready is True
    finally:
        gate.set()
        svc.stop()

    document = json.loads((data_dir / "metadata.json").read_text(encoding="utf-8"))
    assert document[rec.id]["derivedReady"] is True
    assert document[rec.id]["derivedPath"] == f"hls/{rec.id}/playlist.m3u8"


def test_finished_but_unflagged_output_is_adopted(app_config, make_record, hls_writer, blobs, fake_encoder_cls):
    rec = make_record()
    hls_writer(blobs.output_dir(rec.id), complete=True)

    encoder = fake_encoder_cls()
    svc, summary = _start(app_config, encoder)
    try:
        assert summary["reconcile"]["adopted"] == 1
        assert encoder.calls == []
        assert svc.transcode_status(rec.id) == {"status": "complete", "progress": 100}
    finally:
        svc.stop()


def test_corrupt_metadata_starts_empty_and_drops_orphans(app_config, data_dir, hls_writer, blobs, fake_encoder_cls):
    (data_dir / "metadata.json").write_text("{ not json", encoding="utf-8")
    orphan = blobs.output_dir("c" * 32)
    hls_writer(orphan)

    svc, summary = _start(app_config, fake_encoder_cls())
    try:
        assert summary["records"] == 0
        assert summary["reconcile"]["orphans"] == 1
        assert not orphan.exists()
        assert svc.list_files() == []
    finally:
        svc.stop()


def test_regenerate_after_deleting_derived_output(app_config, fake_encoder_cls):
    encoder = fake_encoder_cls()
    svc, _ = _start(app_config, encoder)
    try:
        rec = svc.upload("clip.mp4", "video/mp4", [b"data"]).record
        assert svc.scheduler.wait_idle(timeout=5)

        assert svc.delete(rec.id, mode="derived") is True
        assert svc.store.get(rec.id).derived_ready is False
        assert svc.list_files()[0]["status"] == "none"

        assert svc.trigger_transcode(rec.id) is True
        assert svc.scheduler.wait_idle(timeout=5)
        assert len(encoder.calls) == 2
        assert svc.store.get(rec.id).derived_ready is True
    finally:
        svc.stop()
