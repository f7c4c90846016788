import logging
import shutil
from pathlib import Path
from typing import Iterable

class HousekeepingService:
    """Service for cleaning up leftovers from interrupted uploads and deleted records."""

    def __init__(self):
        self.logger = logging.getLogger(__name__)

    def cleanup_partial_uploads(self, directory: Path, suffix: str = ".part") -> int:
        """Removes upload files that never finished streaming."""
        removed = 0
        if not directory.is_dir():
            return removed
        for path in directory.iterdir():
            if path.is_file() and path.name.endswith(suffix):
                try:
                    path.unlink()
                    removed += 1
                except OSError as e:
                    self.logger.warning(f"Failed to remove partial upload {path}: {e}")
        if removed:
            self.logger.info(f"HOUSEKEEPING: removed {removed} partial upload(s)")
        return removed

    def cleanup_orphan_outputs(self, output_root: Path, known_ids: Iterable[str]) -> int:
        """Removes output directories that belong to no record."""
        removed = 0
        if not output_root.is_dir():
            return removed
        known = set(known_ids)
        for path in output_root.iterdir():
            if path.is_dir() and path.name not in known:
                try:
                    shutil.rmtree(path)
                    removed += 1
                except OSError as e:
                    self.logger.warning(f"Failed to remove orphan output {path}: {e}")
        if removed:
            self.logger.info(f"HOUSEKEEPING: removed {removed} orphan output dir(s)")
        return removed
