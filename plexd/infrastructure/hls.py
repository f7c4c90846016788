from pathlib import Path
from typing import List, Optional, Tuple

ENDLIST_TAG = "#EXT-X-ENDLIST"
SEGMENT_SUFFIXES = (".ts", ".m4s", ".mp4")


def segment_names(manifest_text: str) -> List[str]:
    """Returns the media segment URIs listed in a manifest, in order."""
    names = []
    for line in manifest_text.splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        names.append(line)
    return names


def validate_manifest(manifest_path: Path, check_segments: bool = True) -> Tuple[bool, Optional[str]]:
    """
    Validate that a derived manifest is complete and well-formed.

    Args:
        manifest_path: Path to the .m3u8 manifest
        check_segments: If True, also verify all referenced segments exist and are non-empty

    Returns:
        (is_valid, error_message); error_message is None if valid
    """
    if not manifest_path.is_file():
        return False, "Manifest does not exist"

    try:
        content = manifest_path.read_text(encoding="utf-8", errors="replace")
    except OSError as e:
        return False, f"Manifest unreadable: {e}"

    if not content.startswith("#EXTM3U"):
        return False, "Missing #EXTM3U header"

    # The encoder appends the end marker only after the last segment is written
    if ENDLIST_TAG not in content:
        return False, f"Missing {ENDLIST_TAG} (incomplete transcode)"

    names = segment_names(content)
    if not names:
        return False, "Manifest lists no segments"

    if not check_segments:
        return True, None

    for name in names:
        segment = manifest_path.parent / name
        if not segment.is_file():
            return False, f"Missing segment file: {name}"
        if segment.stat().st_size == 0:
            return False, f"Empty segment file: {name}"

    return True, None


def is_manifest_complete(manifest_path: Path) -> bool:
    valid, _ = validate_manifest(manifest_path, check_segments=True)
    return valid


def is_segment_name(name: str) -> bool:
    return name.endswith(SEGMENT_SUFFIXES)
