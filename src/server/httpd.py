"""HTTP API for the remote job service.

Endpoints:
    GET  /health            liveness probe
    GET  /profiles          profiles a job may request
    POST /jobs              {"path": ..., "profile": ...} -> 202 {"job_id": N}
    GET  /jobs?limit=N      most recent jobs, newest first
    GET  /jobs/{id}         job status, exit code, timestamps
    GET  /jobs/{id}/log     captured output (text/plain)
    GET  /projects          all known projects
"""

import json
import logging
import signal
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Optional
from urllib.parse import parse_qs, urlparse

from server.jobs import JobService, JobServiceError

logger = logging.getLogger(__name__)

# Default configuration
DEFAULT_PORT = 8742
DEFAULT_BIND = "127.0.0.1"
DEFAULT_LIST_LIMIT = 20
MAX_BODY_BYTES = 64 * 1024


def _error(code: str, message: str) -> dict:
    return {"error": {"code": code, "message": message}}


class JobRequestHandler(BaseHTTPRequestHandler):
    """HTTP request handler for the job service."""

    # Class-level state (shared across requests)
    service: Optional[JobService] = None

    def log_message(self, format: str, *args):
        """Override to use Python logging."""
        logger.info("%s - %s", self.address_string(), format % args)

    def send_json(self, data, status: int = 200):
        """Send JSON response."""
        body = json.dumps(data, indent=2).encode("utf-8")
        self.send_bytes(body, status, "application/json")

    def send_bytes(self, content: bytes, status: int, content_type: str):
        """Send bytes response."""
        self.send_response(status)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(content)))
        self.end_headers()
        self.wfile.write(content)

    def _job_id(self, raw: str) -> Optional[int]:
        try:
            return int(raw)
        except ValueError:
            self.send_json(_error("E101", f"Invalid job id: {raw}"), 400)
            return None

    def do_GET(self):
        """Handle GET requests."""
        parsed = urlparse(self.path)
        path = parsed.path.rstrip("/")
        parts = [p for p in path.split("/") if p]

        if path == "/health":
            self.send_json({"status": "ok"})
            return

        if self.service is None:
            self.send_json(_error("E500", "Job service not initialized"), 500)
            return

        if path == "/profiles":
            self.send_json({"profiles": self.service.profiles})
            return

        if path == "/projects":
            self.send_json({"projects": self.service.list_projects()})
            return

        if path == "/jobs":
            self._handle_list_jobs(parse_qs(parsed.query))
            return

        if len(parts) in (2, 3) and parts[0] == "jobs":
            job_id = self._job_id(parts[1])
            if job_id is None:
                return
            if len(parts) == 2:
                self._handle_job_status(job_id)
                return
            if parts[2] == "log":
                self._handle_job_log(job_id)
                return

        self.send_json(_error("E100", f"Unknown endpoint: {path}"), 404)

    def do_POST(self):
        """Handle POST requests."""
        path = urlparse(self.path).path.rstrip("/")
        if self.service is None:
            self.send_json(_error("E500", "Job service not initialized"), 500)
            return
        if path != "/jobs":
            self.send_json(_error("E100", f"Unknown endpoint: {path}"), 404)
            return

        body = self._read_json_body()
        if body is None:
            return

        try:
            job_id = self.service.submit(body.get("path", ""), body.get("profile"))
        except JobServiceError as e:
            self.send_json(_error("E102", str(e)), 400)
            return
        self.send_json({"job_id": job_id}, 202)

    def _read_json_body(self) -> Optional[dict]:
        try:
            length = int(self.headers.get("Content-Length", "0"))
        except ValueError:
            length = -1
        if length < 0 or length > MAX_BODY_BYTES:
            self.send_json(_error("E103", "Invalid Content-Length"), 400)
            return None
        raw = self.rfile.read(length) if length else b""
        try:
            data = json.loads(raw.decode("utf-8") or "{}")
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            self.send_json(_error("E103", f"Invalid JSON body: {e}"), 400)
            return None
        if not isinstance(data, dict):
            self.send_json(_error("E103", "JSON body must be an object"), 400)
            return None
        return data

    def _handle_list_jobs(self, query: dict):
        raw = query.get("limit", [str(DEFAULT_LIST_LIMIT)])[0]
        try:
            limit = int(raw)
        except ValueError:
            self.send_json(_error("E101", f"Invalid limit: {raw}"), 400)
            return
        if limit <= 0:
            self.send_json(_error("E101", "limit must be positive"), 400)
            return
        self.send_json({"jobs": self.service.list_jobs(limit)})

    def _handle_job_status(self, job_id: int):
        job = self.service.get_job(job_id)
        if job is None:
            self.send_json(_error("E104", f"Job not found: {job_id}"), 404)
            return
        self.send_json(job)

    def _handle_job_log(self, job_id: int):
        log = self.service.get_job_log(job_id)
        if log is None:
            self.send_json(_error("E104", f"Job not found: {job_id}"), 404)
            return
        self.send_bytes(log.encode("utf-8"), 200, "text/plain; charset=utf-8")


class Server:
    """HTTP server for the job service."""

    def __init__(self, service: JobService, bind: str = DEFAULT_BIND, port: int = DEFAULT_PORT):
        """Initialize server.

        Args:
            service: JobService handling requests
            bind: Address to bind to
            port: Port to listen on (0 picks a free port)
        """
        self.service = service
        self.bind = bind
        self.port = port
        self.server: Optional[ThreadingHTTPServer] = None
        self._serving = threading.Event()

    @property
    def url(self) -> str:
        return f"http://{self.bind}:{self.port}"

    def start(self, install_signal_handlers: bool = True):
        """Bind the listening socket."""
        handler = type("BoundJobRequestHandler", (JobRequestHandler,), {"service": self.service})
        self.server = ThreadingHTTPServer((self.bind, self.port), handler)
        self.server.daemon_threads = True
        self.port = self.server.server_address[1]

        orphaned = self.service.store.fail_orphaned_jobs()
        if orphaned:
            logger.warning("Marked %d orphaned job(s) as failed", orphaned)

        logger.info("Server starting on %s", self.url)
        logger.info("Profiles: %s", ", ".join(self.service.profiles))
        if install_signal_handlers:
            self._setup_signal_handlers()

    def serve_forever(self):
        """Start serving requests."""
        if not self.server:
            raise RuntimeError("Server not started")

        self._serving.set()
        try:
            self.server.serve_forever()
        except KeyboardInterrupt:
            logger.info("Shutdown requested")
        finally:
            self._serving.clear()
            self._close()

    def shutdown(self):
        """Stop the serve loop from another thread, or close an idle server."""
        server = self.server
        if not server:
            return
        logger.info("Shutting down server")
        if self._serving.is_set():
            # serve_forever closes the socket on its way out
            server.shutdown()
        else:
            self._close()

    def _close(self):
        if self.server:
            self.server.server_close()
            self.server = None

    def _setup_signal_handlers(self):
        def handle_sigterm(signum, frame):
            """Handle SIGTERM for graceful shutdown."""
            logger.info("Received SIGTERM")
            raise KeyboardInterrupt

        signal.signal(signal.SIGTERM, handle_sigterm)
