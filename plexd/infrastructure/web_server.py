"""HTTP interface for the media pipeline.

Uses stdlib http.server + socketserver only. Every route delegates to
MediaService; this module only translates between HTTP and service calls:
JSON bodies, byte ranges, cache headers, CORS and error status codes.
"""
from __future__ import annotations

import json
import logging
import re
import socketserver
import threading
from http.server import BaseHTTPRequestHandler
from pathlib import Path
from typing import TYPE_CHECKING, Any, Iterator, Optional, Tuple
from urllib.parse import parse_qs, unquote, urlsplit

from plexd.domain.models import (
    GENERIC_CONTENT_TYPE,
    MIME_TYPES,
    DeleteMode,
    FileNotFoundInStore,
    InvalidFileId,
    UploadError,
)

if TYPE_CHECKING:
    from plexd.pipeline.service import MediaService

logger = logging.getLogger(__name__)
access_logger = logging.getLogger(__name__ + ".access")

DEFAULT_PORT = 8080
MAX_JSON_BODY = 1024 * 1024

MANIFEST_CACHE_CONTROL = "no-cache, no-store, must-revalidate"
SEGMENT_CACHE_CONTROL = "public, max-age=31536000, immutable"

_FILE_ROUTE = re.compile(r"^/api/files/([^/]+)$")
_STATUS_ROUTE = re.compile(r"^/api/files/([^/]+)/transcode-status$")
_TRIGGER_ROUTE = re.compile(r"^/api/files/([^/]+)/transcode$")
_DERIVED_ROUTE = re.compile(r"^/api/files/([^/]+)/hls/([^/]+)$")


class RangeNotSatisfiable(Exception):
    """The requested byte range lies outside the resource."""


def parse_range(header: Optional[str], size: int) -> Optional[Tuple[int, int]]:
    """Parses a single ``bytes=`` range into an inclusive (start, end) pair.

    Returns None when the whole resource should be sent: no header, a
    malformed header, or a multi-range request. Raises RangeNotSatisfiable
    when the range starts past the end of the resource.
    """
    if not header:
        return None
    header = header.strip()
    if not header.startswith("bytes="):
        return None
    spec = header[len("bytes="):].strip()
    if "," in spec:
        return None
    match = re.fullmatch(r"(\d*)-(\d*)", spec)
    if not match:
        return None
    first, last = match.groups()
    if not first and not last:
        return None

    if not first:
        # Suffix range: the final N bytes
        suffix = int(last)
        if suffix == 0 or size == 0:
            raise RangeNotSatisfiable(header)
        return max(0, size - suffix), size - 1

    start = int(first)
    end = int(last) if last else size - 1
    if end < start:
        return None
    if start >= size:
        raise RangeNotSatisfiable(header)
    return start, min(end, size - 1)


def _header_text(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    return unquote(value)


class PlexdRequestHandler(BaseHTTPRequestHandler):
    """HTTP request handler for the media API.

    Class attributes are set on a per-server subclass by PlexdWebServer.
    """

    service: "MediaService"
    web_root: Optional[Path] = None
    cors: bool = True
    chunk_size: int = 1024 * 1024

    def log_message(self, format: str, *args) -> None:  # noqa: A002
        """Routes the stdlib access line into the log file instead of stderr."""
        access_logger.info("%s - %s", self.address_string(), format % args)

    def end_headers(self) -> None:
        if self.cors:
            self.send_header("Access-Control-Allow-Origin", "*")
            self.send_header("Access-Control-Allow-Methods", "GET, POST, DELETE, OPTIONS")
            self.send_header("Access-Control-Allow-Headers", "Content-Type, X-File-Name, X-Set-Name, Range")
            self.send_header("Access-Control-Expose-Headers", "Content-Range, Accept-Ranges, Content-Length")
        super().end_headers()

    # ------------------------------------------------------------------
    # Response helpers
    # ------------------------------------------------------------------

    def _send_json(self, payload: Any, status: int = 200) -> None:
        encoded = json.dumps(payload).encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(encoded)))
        self.send_header("Cache-Control", "no-cache")
        self.end_headers()
        self.wfile.write(encoded)

    def _send_error_json(self, status: int, message: str) -> None:
        self._send_json({"error": message}, status=status)

    def _send_text(self, status: int, text: str) -> None:
        encoded = text.encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "text/plain; charset=utf-8")
        self.send_header("Content-Length", str(len(encoded)))
        self.end_headers()
        self.wfile.write(encoded)

    def _copy_file(self, path: Path, start: int, length: int) -> None:
        with open(path, "rb") as f:
            f.seek(start)
            remaining = length
            while remaining > 0:
                data = f.read(min(self.chunk_size, remaining))
                if not data:
                    break
                self.wfile.write(data)
                remaining -= len(data)

    def _send_file(
        self,
        path: Path,
        content_type: str,
        cache_control: Optional[str] = None,
        allow_ranges: bool = False,
    ) -> None:
        size = path.stat().st_size
        byte_range = None
        if allow_ranges:
            try:
                byte_range = parse_range(self.headers.get("Range"), size)
            except RangeNotSatisfiable:
                self.send_response(416)
                self.send_header("Content-Range", f"bytes */{size}")
                self.send_header("Content-Length", "0")
                self.end_headers()
                return

        if byte_range is not None:
            start, end = byte_range
            length = end - start + 1
            self.send_response(206)
            self.send_header("Content-Range", f"bytes {start}-{end}/{size}")
        else:
            start, length = 0, size
            self.send_response(200)

        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(length))
        if allow_ranges:
            self.send_header("Accept-Ranges", "bytes")
        if cache_control:
            self.send_header("Cache-Control", cache_control)
        self.end_headers()
        self._copy_file(path, start, length)

    # ------------------------------------------------------------------
    # Request helpers
    # ------------------------------------------------------------------

    def _content_length(self) -> Optional[int]:
        raw = self.headers.get("Content-Length")
        if raw is None:
            return None
        try:
            value = int(raw)
        except ValueError:
            return None
        return value if value >= 0 else None

    def _read_json(self) -> Any:
        """Returns the decoded JSON body, or None for an empty body. Raises ValueError."""
        length = self._content_length() or 0
        if length > MAX_JSON_BODY:
            raise ValueError("request body too large")
        body = self.rfile.read(length) if length else b""
        if not body.strip():
            return None
        return json.loads(body.decode("utf-8"))

    def _body_chunks(self, length: int) -> Iterator[bytes]:
        remaining = length
        while remaining > 0:
            data = self.rfile.read(min(self.chunk_size, remaining))
            if not data:
                raise ConnectionError(f"client closed the connection with {remaining} bytes outstanding")
            remaining -= len(data)
            yield data

    def _route(self) -> Tuple[str, dict]:
        parts = urlsplit(self.path)
        return unquote(parts.path), parse_qs(parts.query)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def _dispatch(self, handler) -> None:
        path, query = self._route()
        try:
            handler(path, query)
        except (InvalidFileId, FileNotFoundInStore):
            self._send_error_json(404, "File not found")
        except UploadError as exc:
            logger.error("Upload failed: %s", exc)
            try:
                self._send_error_json(500, "Upload failed")
            except OSError:
                pass
        except (BrokenPipeError, ConnectionResetError) as exc:
            logger.debug("Client went away during %s %s: %s", self.command, path, exc)
        except Exception as exc:
            logger.exception("Request error for %s %s: %s", self.command, path, exc)
            try:
                self._send_error_json(500, "Internal server error")
            except OSError:
                pass

    def do_OPTIONS(self) -> None:
        self.send_response(204)
        self.send_header("Content-Length", "0")
        self.end_headers()

    def do_GET(self) -> None:
        self._dispatch(self._handle_get)

    def do_POST(self) -> None:
        self._dispatch(self._handle_post)

    def do_DELETE(self) -> None:
        self._dispatch(self._handle_delete)

    def _handle_get(self, path: str, query: dict) -> None:
        service = self.service
        if path == "/api/files/list":
            self._send_json(service.list_files())
            return
        if path == "/api/transcode/activity":
            self._send_json(service.activity_snapshot())
            return

        match = _STATUS_ROUTE.match(path)
        if match:
            self._send_json(service.transcode_status(match.group(1)))
            return

        match = _DERIVED_ROUTE.match(path)
        if match:
            file_id, name = match.groups()
            target = service.derived_file(file_id, name)
            if service.is_manifest(name):
                self._send_file(target, MIME_TYPES[".m3u8"], cache_control=MANIFEST_CACHE_CONTROL)
            else:
                content_type = MIME_TYPES.get(target.suffix.lower(), GENERIC_CONTENT_TYPE)
                self._send_file(target, content_type, cache_control=SEGMENT_CACHE_CONTROL)
            return

        match = _FILE_ROUTE.match(path)
        if match:
            file_id = match.group(1)
            rec = service.get_record(file_id)
            blob = service.original_path(file_id)
            self._send_file(blob, rec.content_type, allow_ranges=True)
            return

        self._serve_static(path)

    def _handle_post(self, path: str, query: dict) -> None:
        service = self.service
        if path == "/api/files/upload":
            self._handle_upload()
            return

        if path == "/api/files/purge":
            try:
                data = self._read_json()
            except ValueError:
                self._send_error_json(400, "Invalid JSON")
                return
            set_name = data.get("setName") if isinstance(data, dict) else None
            deleted = service.purge(set_name or None)
            self._send_json({"success": True, "deleted": deleted})
            return

        if path == "/api/files/associate":
            try:
                data = self._read_json()
            except ValueError:
                self._send_error_json(400, "Invalid JSON")
                return
            if not isinstance(data, dict):
                self._send_error_json(400, "Invalid JSON")
                return
            file_ids = data.get("fileIds") or []
            if not isinstance(file_ids, list):
                self._send_error_json(400, "fileIds must be a list")
                return
            updated = service.associate(file_ids, data.get("setName"))
            self._send_json({"success": True, "updated": updated})
            return

        match = _TRIGGER_ROUTE.match(path)
        if match:
            file_id = match.group(1)
            queued = service.trigger_transcode(file_id)
            payload = {"success": queued, "transcoding": service.transcoding_enabled}
            payload.update(service.transcode_status(file_id))
            self._send_json(payload)
            return

        self._send_error_json(404, "Not found")

    def _handle_upload(self) -> None:
        length = self._content_length()
        if length is None:
            self._send_error_json(411, "Content-Length required")
            return
        display_name = _header_text(self.headers.get("X-File-Name")) or "unknown"
        set_name = _header_text(self.headers.get("X-Set-Name"))
        result = self.service.upload(
            display_name,
            self.headers.get("Content-Type"),
            self._body_chunks(length),
            set_name=set_name or None,
            declared_size=length,
        )
        self._send_json(self.service.upload_response(result))

    def _handle_delete(self, path: str, query: dict) -> None:
        match = _FILE_ROUTE.match(path)
        if not match:
            self._send_error_json(404, "Not found")
            return
        raw_mode = (query.get("mode") or [DeleteMode.BOTH.value])[0]
        try:
            mode = DeleteMode(raw_mode)
        except ValueError:
            self._send_error_json(400, f"Invalid mode: {raw_mode}")
            return
        deleted = self.service.delete(match.group(1), mode)
        self._send_json({"success": deleted, "mode": mode.value})

    def _serve_static(self, path: str) -> None:
        """Serve a file from the configured web root."""
        if self.web_root is None:
            self._send_error_json(404, "Not found")
            return
        root = self.web_root.resolve()
        relative = "index.html" if path in ("", "/") else path.lstrip("/")
        filepath = (root / relative).resolve()
        # Path traversal guard (is_relative_to avoids prefix-match false positives)
        if not filepath.is_relative_to(root):
            self._send_text(403, "Forbidden")
            return
        if not filepath.is_file():
            self._send_text(404, "Not Found")
            return
        content_type = MIME_TYPES.get(filepath.suffix.lower(), GENERIC_CONTENT_TYPE)
        self._send_file(filepath, content_type)


class _ThreadingHTTPServer(socketserver.ThreadingMixIn, socketserver.TCPServer):
    """Thread-per-request HTTP server with address reuse and daemon threads."""

    allow_reuse_address = True
    daemon_threads = True  # request threads die when main thread exits


class PlexdWebServer:
    """Media API server running on a daemon thread.

    Usage::

        server = PlexdWebServer(service, host="0.0.0.0", port=8080)
        server.start()   # non-blocking
        ...
        server.stop()
    """

    def __init__(
        self,
        service: "MediaService",
        host: str = "0.0.0.0",
        port: int = DEFAULT_PORT,
        web_root: Optional[Path] = None,
        cors: bool = True,
    ) -> None:
        self.service = service
        self.host = host
        self.port = port
        self.web_root = Path(web_root) if web_root else None
        self.cors = cors
        self._server: Optional[_ThreadingHTTPServer] = None
        self._thread: Optional[threading.Thread] = None

    def _handler_class(self):
        return type(
            "BoundPlexdRequestHandler",
            (PlexdRequestHandler,),
            {
                "service": self.service,
                "web_root": self.web_root,
                "cors": self.cors,
                "chunk_size": self.service.config.storage.chunk_size,
            },
        )

    @property
    def bound_port(self) -> int:
        if self._server is None:
            return self.port
        return self._server.server_address[1]

    def start(self) -> None:
        """Bind and serve in a daemon background thread. Raises OSError if the port is taken."""
        try:
            self._server = _ThreadingHTTPServer((self.host, self.port), self._handler_class())
        except OSError as exc:
            logger.error("HTTP server: could not bind to %s:%d: %s", self.host, self.port, exc)
            raise

        self._thread = threading.Thread(
            target=self._server.serve_forever,
            name="plexd-http",
            daemon=True,
        )
        self._thread.start()
        display_host = "localhost" if self.host in ("0.0.0.0", "::") else self.host
        logger.info("HTTP server: http://%s:%d/", display_host, self.bound_port)

    def stop(self) -> None:
        """Gracefully stop the web server."""
        if self._server:
            self._server.shutdown()
            self._server.server_close()
            self._server = None
        if self._thread:
            self._thread.join(timeout=2.0)
            self._thread = None
