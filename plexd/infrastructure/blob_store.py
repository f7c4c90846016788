import logging
import shutil
from pathlib import Path
from typing import Iterable, Optional


class BlobStore:
    """Flat on-disk layout: one blob per file id plus one output directory per id.

    <root>/<id>                 original upload
    <root>/<id>.part            upload in progress (renamed on success)
    <root>/<output>/<id>/       derived manifest + segments
    """

    PARTIAL_SUFFIX = ".part"

    def __init__(self, root: Path, output_dir_name: str = "hls", manifest_name: str = "playlist.m3u8"):
        self.root = Path(root)
        self.output_root = self.root / output_dir_name
        self.manifest_name = manifest_name
        self.logger = logging.getLogger(__name__)

    def ensure_dirs(self) -> None:
        self.output_root.mkdir(parents=True, exist_ok=True)

    def blob_path(self, file_id: str) -> Path:
        return self.root / file_id

    def partial_path(self, file_id: str) -> Path:
        return self.root / f"{file_id}{self.PARTIAL_SUFFIX}"

    def output_dir(self, file_id: str) -> Path:
        return self.output_root / file_id

    def manifest_path(self, file_id: str) -> Path:
        return self.output_dir(file_id) / self.manifest_name

    def relative_manifest_path(self, file_id: str) -> str:
        return self.manifest_path(file_id).relative_to(self.root).as_posix()

    def has_blob(self, file_id: str) -> bool:
        return self.blob_path(file_id).is_file()

    def blob_size(self, file_id: str) -> Optional[int]:
        try:
            return self.blob_path(file_id).stat().st_size
        except OSError:
            return None

    def write_stream(self, file_id: str, chunks: Iterable[bytes]) -> int:
        """Streams chunks to the blob for file_id and returns the byte count.

        Bytes go to a ``.part`` file that is renamed into place only after the
        stream ends; any exception removes the partial file and propagates.
        """
        self.root.mkdir(parents=True, exist_ok=True)
        partial = self.partial_path(file_id)
        written = 0
        try:
            with open(partial, "wb") as f:
                for chunk in chunks:
                    if not chunk:
                        continue
                    f.write(chunk)
                    written += len(chunk)
            partial.replace(self.blob_path(file_id))
        except BaseException:
            try:
                partial.unlink()
            except FileNotFoundError:
                pass
            except OSError as e:
                self.logger.warning(f"Failed to remove partial upload {partial}: {e}")
            raise
        return written

    def delete_blob(self, file_id: str) -> bool:
        path = self.blob_path(file_id)
        try:
            path.unlink()
            return True
        except FileNotFoundError:
            return False
        except OSError as e:
            self.logger.warning(f"Failed to delete blob {path}: {e}")
            return False

    def delete_output(self, file_id: str) -> bool:
        path = self.output_dir(file_id)
        if not path.exists():
            return False
        try:
            shutil.rmtree(path)
            return True
        except OSError as e:
            self.logger.warning(f"Failed to delete output directory {path}: {e}")
            return False

    def prepare_output(self, file_id: str) -> Path:
        """Returns an empty output directory for file_id, discarding any previous content."""
        self.delete_output(file_id)
        path = self.output_dir(file_id)
        path.mkdir(parents=True, exist_ok=True)
        return path

    def free_bytes(self) -> int:
        target = self.root if self.root.exists() else self.root.parent
        return shutil.disk_usage(target).free
