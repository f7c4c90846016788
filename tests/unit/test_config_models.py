import pytest
from pathlib import Path
from pydantic import ValidationError
from plexd.config.models import AppConfig, GeneralConfig, TranscodeConfig, ServerConfig, LifecycleConfig
from plexd.config.loader import load_config

def test_config_defaults():
    config = AppConfig()
    assert config.server.port == 8080
    assert config.storage.data_dir == "uploads"
    assert config.storage.metadata_file == "metadata.json"
    assert config.transcode.max_concurrent == 2
    assert config.transcode.hardware_encoder == "h264_videotoolbox"
    assert config.transcode.software_encoder == "libx264"
    assert config.transcode.manifest_name == "playlist.m3u8"
    assert config.transcode.timeout_s == 6 * 3600.0
    assert 187 in config.transcode.hardware_failure_exit_codes
    assert config.lifecycle.expiry_hours == 24
    assert config.lifecycle.sweep_interval_s == 3600

def test_invalid_max_concurrent():
    with pytest.raises(ValidationError):
        TranscodeConfig(max_concurrent=0)

def test_invalid_port():
    with pytest.raises(ValidationError):
        ServerConfig(port=70000)

def test_invalid_crf():
    with pytest.raises(ValidationError):
        TranscodeConfig(crf=52)

def test_invalid_manifest_name():
    with pytest.raises(ValidationError):
        TranscodeConfig(manifest_name="index.txt")
    with pytest.raises(ValidationError):
        TranscodeConfig(manifest_name="sub/playlist.m3u8")

def test_invalid_segment_pattern():
    with pytest.raises(ValidationError):
        TranscodeConfig(segment_pattern="segment.ts")

def test_log_rotation_settings():
    config = GeneralConfig()
    assert config.log_max_bytes == 10 * 1024 * 1024
    assert config.log_backups == 5
    assert GeneralConfig(log_max_bytes=0).log_max_bytes == 0
    with pytest.raises(ValidationError):
        GeneralConfig(log_backups=-1)

def test_expiry_must_be_positive():
    with pytest.raises(ValidationError):
        LifecycleConfig(expiry_hours=0)

def test_hardware_encoder_can_be_disabled():
    config = TranscodeConfig(hardware_encoder=None)
    assert config.hardware_encoder is None

def test_load_config_none_returns_defaults():
    config = load_config(None)
    assert config == AppConfig()

def test_load_config_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "missing.yaml")

def test_load_config_from_yaml(config_yaml_path):
    config = load_config(config_yaml_path)
    assert config.general.debug is True
    assert config.server.host == "127.0.0.1"
    assert config.server.port == 9090
    assert config.transcode.max_concurrent == 3
    assert config.transcode.hardware_encoder == "h264_nvenc"
    assert config.lifecycle.expiry_hours == 12
    # Untouched sections keep their defaults
    assert config.transcode.software_encoder == "libx264"

def test_load_config_root_max_concurrent_shorthand(tmp_path):
    path = tmp_path / "plexd.yaml"
    path.write_text("max_concurrent: 1\n")
    config = load_config(path)
    assert config.transcode.max_concurrent == 1

def test_load_config_empty_file(tmp_path):
    path = tmp_path / "empty.yaml"
    path.write_text("")
    assert load_config(path) == AppConfig()
