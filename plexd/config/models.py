from typing import List, Optional
from pydantic import BaseModel, Field, field_validator


class GeneralConfig(BaseModel):
    debug: bool = False
    log_path: Optional[str] = None
    log_max_bytes: int = Field(default=10 * 1024 * 1024, ge=0)  # 0 disables rotation
    log_backups: int = Field(default=5, ge=0)


class ServerConfig(BaseModel):
    host: str = "0.0.0.0"
    port: int = Field(default=8080, ge=1, le=65535)
    web_root: Optional[str] = None  # Static files served at "/" when set
    cors: bool = True


class StorageConfig(BaseModel):
    data_dir: str = "uploads"
    metadata_file: str = "metadata.json"
    output_dir_name: str = "hls"
    min_free_bytes: int = Field(default=512 * 1024 * 1024, ge=0)
    chunk_size: int = Field(default=1024 * 1024, gt=0)


def _default_hw_failure_patterns() -> List[str]:
    return [
        "Hardware is lacking required capabilities",
        "No capable devices found",
        "Cannot load nvcuda",
        "Device creation failed",
        "cannot create compression session",
        "Error while opening encoder",
        "Unknown encoder",
    ]


class TranscodeConfig(BaseModel):
    enabled: bool = True
    max_concurrent: int = Field(default=2, ge=1)
    ffmpeg_path: str = "ffmpeg"
    hardware_encoder: Optional[str] = "h264_videotoolbox"
    software_encoder: str = "libx264"
    software_preset: str = "veryfast"
    crf: int = Field(default=23, ge=0, le=51)
    video_bitrate: str = "5M"
    audio_bitrate: str = "128k"
    segment_seconds: int = Field(default=4, ge=1)
    manifest_name: str = "playlist.m3u8"
    segment_pattern: str = "segment_%03d.ts"
    hardware_failure_patterns: List[str] = Field(default_factory=_default_hw_failure_patterns)
    hardware_failure_exit_codes: List[int] = Field(default_factory=lambda: [187])
    timeout_s: Optional[float] = Field(default=6 * 3600.0, gt=0)
    terminate_grace_s: float = Field(default=5.0, gt=0)

    @field_validator("manifest_name")
    @classmethod
    def validate_manifest_name(cls, v: str) -> str:
        if not v.endswith(".m3u8") or "/" in v:
            raise ValueError(f"Invalid manifest name {v!r}. Must be a bare *.m3u8 file name.")
        return v

    @field_validator("segment_pattern")
    @classmethod
    def validate_segment_pattern(cls, v: str) -> str:
        if "%" not in v or "/" in v:
            raise ValueError(f"Invalid segment pattern {v!r}. Must be a bare printf-style name like segment_%03d.ts.")
        return v


class LifecycleConfig(BaseModel):
    expiry_hours: float = Field(default=24.0, gt=0)
    sweep_interval_s: float = Field(default=3600.0, gt=0)
    activity_feed_max_items: int = Field(default=20, ge=1, le=500)


class AppConfig(BaseModel):
    general: GeneralConfig = Field(default_factory=GeneralConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    transcode: TranscodeConfig = Field(default_factory=TranscodeConfig)
    lifecycle: LifecycleConfig = Field(default_factory=LifecycleConfig)
