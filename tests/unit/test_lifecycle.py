import threading
import time
import pytest
from types import SimpleNamespace
from plexd.domain.models import FileNotFoundInStore, EncoderKind
from plexd.domain.events import FilesRemoved
from plexd.pipeline.lifecycle import LifecycleManager
from plexd.pipeline.scheduler import TranscodeScheduler
from plexd.pipeline.worker import TranscodeWorker

NOW = 2_000_000_000.0
HOUR = 3600.0


def _wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.005)
    return predicate()


def _ms(seconds):
    return int(seconds * 1000)


@pytest.fixture
def pipeline(app_config, store, blobs, event_bus, fake_encoder_cls):
    gate = threading.Event()
    gate.set()
    encoder = fake_encoder_cls(gate=gate)
    worker = TranscodeWorker(app_config, store, blobs, encoder, event_bus)
    scheduler = TranscodeScheduler(worker, 1, event_bus)
    lifecycle = LifecycleManager(app_config, store, blobs, scheduler, event_bus, clock=lambda: NOW)
    removed = []
    event_bus.subscribe(FilesRemoved, removed.append)
    yield SimpleNamespace(
        encoder=encoder, gate=gate, scheduler=scheduler, lifecycle=lifecycle, removed=removed,
    )
    gate.set()
    lifecycle.stop()
    scheduler.shutdown()


def test_associate_tags_known_ids(pipeline, store, make_record):
    a = make_record(name="a.mp4")
    b = make_record(name="b.mp4")

    assert pipeline.lifecycle.associate([a.id, b.id, "f" * 32], "evening") == 2
    assert store.get(a.id).set_name == "evening"
    assert store.get(b.id).set_name == "evening"
    # Idempotent
    assert pipeline.lifecycle.associate([a.id], "evening") == 1
    assert store.get(a.id).set_name == "evening"

def test_purge_set_removes_only_that_set(pipeline, store, blobs, make_record, hls_writer):
    a = make_record(name="a.mp4", set_name="s1", derived_ready=True)
    hls_writer(blobs.output_dir(a.id))
    b = make_record(name="b.mp4", set_name="s2")
    c = make_record(name="c.mp4")

    assert pipeline.lifecycle.purge("s1") == 1
    assert not store.contains(a.id)
    assert not blobs.has_blob(a.id)
    assert not blobs.output_dir(a.id).exists()
    assert store.contains(b.id) and store.contains(c.id)
    assert pipeline.removed[-1].set_name == "s1"

def test_purge_all(pipeline, store, make_record):
    make_record(name="a.mp4", set_name="s1")
    make_record(name="b.mp4")
    assert pipeline.lifecycle.purge() == 2
    assert len(store) == 0
    assert pipeline.lifecycle.purge() == 0

def test_expiry_sweep_respects_set_and_age(pipeline, store, blobs, make_record):
    old_free = make_record(name="old.mp4", saved_at=_ms(NOW - 25 * HOUR))
    young_free = make_record(name="young.mp4", saved_at=_ms(NOW - 23 * HOUR))
    boundary = make_record(name="edge.mp4", saved_at=_ms(NOW - 24 * HOUR))
    ancient_set = make_record(name="kept.mp4", set_name="favourites", saved_at=_ms(NOW - 24 * 365 * HOUR))

    assert pipeline.lifecycle.expiry_sweep() == 1

    assert not store.contains(old_free.id)
    assert not blobs.has_blob(old_free.id)
    assert store.contains(young_free.id)
    assert store.contains(boundary.id)
    assert store.contains(ancient_set.id)
    assert pipeline.removed[-1].reason == "expired"

def test_expiry_sweep_explicit_now(pipeline, store, make_record):
    rec = make_record(saved_at=_ms(NOW))
    assert pipeline.lifecycle.expiry_sweep(now=NOW + 24 * HOUR + 1) == 1
    assert not store.contains(rec.id)

def test_delete_all(pipeline, store, blobs, make_record, hls_writer):
    rec = make_record(derived_ready=True)
    hls_writer(blobs.output_dir(rec.id))

    assert pipeline.lifecycle.delete_all(rec.id) is True
    assert not store.contains(rec.id)
    assert not blobs.has_blob(rec.id)
    assert not blobs.output_dir(rec.id).exists()
    assert pipeline.lifecycle.delete_all(rec.id) is False

def test_delete_all_cancels_active_job(pipeline, store, blobs, make_record):
    pipeline.gate.clear()
    rec = make_record()
    assert pipeline.scheduler.enqueue(rec.id)
    assert pipeline.encoder.started.acquire(timeout=5)
    assert blobs.output_dir(rec.id).exists()

    assert pipeline.lifecycle.delete_all(rec.id) is True

    assert pipeline.scheduler.job_view(rec.id) is None
    assert pipeline.scheduler.active_count == 0
    assert not blobs.output_dir(rec.id).exists()
    assert not store.contains(rec.id)

def test_delete_all_cancels_queued_job(pipeline, store, make_record):
    pipeline.gate.clear()
    first = make_record(name="first.mp4")
    second = make_record(name="second.mp4")
    pipeline.scheduler.enqueue(first.id)
    pipeline.scheduler.enqueue(second.id)
    assert pipeline.scheduler.queued_ids() == [second.id]

    assert pipeline.lifecycle.delete_all(second.id) is True
    assert pipeline.scheduler.queued_ids() == []
    pipeline.gate.set()
    assert pipeline.scheduler.wait_idle(timeout=5)
    assert [c[0] for c in pipeline.encoder.calls] == [first.id]

def test_delete_original_only_keeps_ready_output(pipeline, store, blobs, make_record, hls_writer):
    rec = make_record(derived_ready=True)
    manifest = hls_writer(blobs.output_dir(rec.id))

    assert pipeline.lifecycle.delete_original_only(rec.id) is True
    assert not blobs.has_blob(rec.id)
    assert manifest.exists()
    assert store.get(rec.id).derived_ready is True

def test_delete_original_only_without_output_removes_record(pipeline, store, make_record):
    rec = make_record()
    assert pipeline.lifecycle.delete_original_only(rec.id) is True
    assert not store.contains(rec.id)

def test_delete_derived_only_then_regenerate(pipeline, store, blobs, make_record, hls_writer):
    rec = make_record(derived_ready=True)
    hls_writer(blobs.output_dir(rec.id))

    assert pipeline.lifecycle.delete_derived_only(rec.id) is True
    stored = store.get(rec.id)
    assert stored.derived_ready is False
    assert stored.derived_path is None
    assert blobs.has_blob(rec.id)
    assert not blobs.output_dir(rec.id).exists()

    assert pipeline.lifecycle.trigger_transcode(rec.id) is True
    assert pipeline.scheduler.wait_idle(timeout=5)
    assert store.get(rec.id).derived_ready is True
    assert blobs.manifest_path(rec.id).exists()

def test_delete_derived_only_without_original_removes_record(pipeline, store, blobs, make_record, hls_writer):
    rec = make_record(derived_ready=True, with_blob=False)
    hls_writer(blobs.output_dir(rec.id))
    assert pipeline.lifecycle.delete_derived_only(rec.id) is True
    assert not store.contains(rec.id)

def test_delete_unknown_ids(pipeline):
    assert pipeline.lifecycle.delete_original_only("f" * 32) is False
    assert pipeline.lifecycle.delete_derived_only("f" * 32) is False

def test_trigger_transcode_rules(pipeline, make_record):
    with pytest.raises(FileNotFoundInStore):
        pipeline.lifecycle.trigger_transcode("f" * 32)
    ready = make_record(name="ready.mp4", derived_ready=True)
    assert pipeline.lifecycle.trigger_transcode(ready.id) is False
    orphan = make_record(name="orphan.mp4", with_blob=False)
    assert pipeline.lifecycle.trigger_transcode(orphan.id) is False

def test_reconcile_adopts_finished_output(pipeline, store, blobs, make_record, hls_writer):
    rec = make_record()
    hls_writer(blobs.output_dir(rec.id), complete=True)

    counts = pipeline.lifecycle.reconcile_on_startup()

    assert counts["adopted"] == 1
    assert counts["requeued"] == 0
    stored = store.get(rec.id)
    assert stored.derived_ready is True
    assert stored.derived_path == blobs.relative_manifest_path(rec.id)
    assert pipeline.encoder.calls == []

def test_reconcile_requeues_partial_output_once(pipeline, store, blobs, make_record, hls_writer):
    pipeline.gate.clear()
    rec = make_record()
    partial = hls_writer(blobs.output_dir(rec.id), complete=False, segments=3)
    stale_segment = partial.parent / "segment_002.ts"

    counts = pipeline.lifecycle.reconcile_on_startup()

    assert counts["requeued"] == 1
    assert pipeline.encoder.started.acquire(timeout=5)
    # The encoder restarted from scratch; earlier segments are gone
    assert not stale_segment.exists()
    pipeline.gate.set()
    assert pipeline.scheduler.wait_idle(timeout=5)
    assert pipeline.encoder.calls == [(rec.id, EncoderKind.HARDWARE)]
    assert store.get(rec.id).derived_ready is True

def test_reconcile_resets_ready_record_with_missing_output(pipeline, store, make_record):
    pipeline.gate.clear()
    rec = make_record(derived_ready=True)

    counts = pipeline.lifecycle.reconcile_on_startup()

    assert counts["reset"] == 1
    assert counts["requeued"] == 1
    assert store.get(rec.id).derived_ready is False
    assert store.get(rec.id).derived_path is None

    pipeline.gate.set()
    assert pipeline.scheduler.wait_idle(timeout=5)
    assert store.get(rec.id).derived_ready is True

def test_reconcile_drops_records_with_nothing_on_disk(pipeline, store, make_record):
    rec = make_record(with_blob=False)
    counts = pipeline.lifecycle.reconcile_on_startup()
    assert counts["dropped"] == 1
    assert not store.contains(rec.id)

def test_reconcile_leaves_non_video_alone(pipeline, store, make_record):
    rec = make_record(name="poster.png", content_type="image/png")
    counts = pipeline.lifecycle.reconcile_on_startup()
    assert counts["requeued"] == 0
    assert store.contains(rec.id)

def test_reconcile_removes_orphan_output(pipeline, blobs, hls_writer):
    orphan = blobs.output_root / ("e" * 32)
    hls_writer(orphan)
    counts = pipeline.lifecycle.reconcile_on_startup()
    assert counts["orphans"] == 1
    assert not orphan.exists()

def test_periodic_sweep_runs_on_interval(app_config, store, blobs, event_bus, make_record, pipeline):
    app_config.lifecycle.sweep_interval_s = 0.05
    rec = make_record(saved_at=_ms(NOW - 48 * HOUR))

    pipeline.lifecycle.start_periodic_sweep()
    assert _wait_for(lambda: not store.contains(rec.id))
    pipeline.lifecycle.stop()
    assert pipeline.lifecycle._thread is None
