import logging
import logging.handlers
from pathlib import Path
from typing import Optional

LOG_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'
DEFAULT_LOG_NAME = "server.log"


def setup_logging(
    data_dir: Path,
    debug: bool = False,
    log_path: Optional[Path] = None,
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 5,
) -> logging.Logger:
    """
    Setup logging for the long-running media server.

    Logs go to a size-rotated file (``server.log`` under data_dir unless
    log_path is given) so a server left running for weeks cannot fill the
    disk. Returns the plexd root logger.

    Args:
        data_dir: Directory holding uploads, derived output and metadata
        debug: If True, enable DEBUG level logging with encoder command lines
        log_path: Optional path to log file (overrides data_dir)
        max_bytes: Rotate once the file reaches this size; 0 never rotates
        backup_count: Number of rotated files kept beside the live one
    """
    data_dir.mkdir(parents=True, exist_ok=True)

    log_file = Path(log_path) if log_path else (data_dir / DEFAULT_LOG_NAME)
    log_file.parent.mkdir(parents=True, exist_ok=True)

    level = logging.DEBUG if debug else logging.INFO

    handler = logging.handlers.RotatingFileHandler(
        log_file,
        maxBytes=max_bytes,
        backupCount=backup_count,
        encoding="utf-8",
    )
    logging.basicConfig(level=level, format=LOG_FORMAT, handlers=[handler], force=True)

    # Per-request access lines from the HTTP layer only matter when debugging
    logging.getLogger("plexd.infrastructure.web_server.access").setLevel(level if debug else logging.WARNING)

    logger = logging.getLogger("plexd")
    logger.info(
        f"LOGGING_READY: {log_file} (debug={'ON' if debug else 'OFF'}, "
        f"rotate_at={max_bytes or 'never'}, backups={backup_count})"
    )
    return logger
