"""OTA distribution server.

Serves the install page, the itms-services manifest and the selected IPA
over HTTP(S). With serve-once enabled the process ends after the first IPA
download finishes (or fails).

Startup order:
1. scan for IPAs, pick the newest
2. resolve hostname and certificate (dev: self-signed, prod: Tailscale)
3. render manifest.plist and install.html into the dist directory
4. bind the listener

Shutdown is driven through a ShutdownSignal. Request handlers and signal
handlers only trigger it; serve_forever() waits for it in the main thread,
closes the listener and returns the exit code.
"""

import logging
import mimetypes
import shutil
import signal
import ssl
import threading
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from typing import Optional
from urllib.parse import unquote, urlparse

from common import CommandRunner, run_command
from config import ServerConfig
from ipa.scanner import ArchiveInfo, find_ipa_files
from server.provision import provision
from server.render import (
    INSTALL_PAGE_FILENAME,
    MANIFEST_FILENAME,
    ManifestData,
    build_install_url,
    generate_install_page,
    generate_manifest,
)
from server.tls import CertificateBundle

logger = logging.getLogger(__name__)

IPA_ROUTE = "/latest.ipa"
MANIFEST_ROUTE = f"/{MANIFEST_FILENAME}"
ICON_SMALL_NAME = "icon57.png"
ICON_LARGE_NAME = "icon512.png"

# Content-type overrides for static files
CONTENT_TYPES = {
    ".ipa": "application/octet-stream",
    ".plist": "application/xml",
    ".html": "text/html; charset=utf-8",
}

# Shutdown reasons
REASON_DOWNLOAD_COMPLETE = "download-complete"
REASON_DOWNLOAD_FAILED = "download-failed"
REASON_SIGNAL = "signal"

# Seconds an idle client connection is kept open
REQUEST_TIMEOUT = 30


class StartupError(Exception):
    """Server cannot start."""


class ShutdownSignal:
    """One-shot shutdown request shared between handlers and the run loop.

    The first trigger() wins: it records the exit code and reason and
    returns True. Later calls return False and change nothing.
    """

    def __init__(self):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self.exit_code: Optional[int] = None
        self.reason: Optional[str] = None

    def trigger(self, exit_code: int, reason: str) -> bool:
        with self._lock:
            if self._event.is_set():
                return False
            self.exit_code = exit_code
            self.reason = reason
            self._event.set()
            return True

    def is_set(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._event.wait(timeout)


class OTAHTTPServer(ThreadingHTTPServer):
    """Threaded listener carrying the state request handlers read."""

    daemon_threads = True

    def __init__(
        self,
        address: tuple[str, int],
        dist_dir: Path,
        ipa: ArchiveInfo,
        serve_once: bool,
        shutdown_signal: ShutdownSignal,
    ):
        self.dist_dir = dist_dir
        self.ipa = ipa
        self.serve_once = serve_once
        self.shutdown_signal = shutdown_signal
        super().__init__(address, OTAHandler)


class OTAHandler(BaseHTTPRequestHandler):
    """HTTP request handler for the OTA server."""

    server: OTAHTTPServer
    timeout = REQUEST_TIMEOUT

    def handle(self):
        """Complete the TLS handshake in this worker thread, then serve."""
        if isinstance(self.connection, ssl.SSLSocket):
            try:
                self.connection.do_handshake()
            except OSError as e:
                logger.debug("TLS handshake with %s failed: %s", self.client_address[0], e)
                return
        super().handle()

    def log_message(self, format: str, *args):
        """Override to use Python logging."""
        logger.info("%s - %s", self.address_string(), format % args)

    def send_bytes(self, content: bytes, status: int, content_type: str, head_only: bool = False):
        """Send bytes response."""
        self.send_response(status)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(content)))
        self.end_headers()
        if not head_only:
            self.wfile.write(content)

    def send_not_found(self, head_only: bool = False):
        self.send_bytes(b"Not Found\n", 404, "text/plain; charset=utf-8", head_only)

    def do_GET(self):
        """Handle GET requests."""
        self._dispatch(head_only=False)

    def do_HEAD(self):
        """Handle HEAD requests (headers only, never ends a serve-once run)."""
        self._dispatch(head_only=True)

    def _dispatch(self, head_only: bool):
        path = unquote(urlparse(self.path).path)

        if path in ("/", f"/{INSTALL_PAGE_FILENAME}"):
            self._send_file(self.server.dist_dir / INSTALL_PAGE_FILENAME, head_only)
            return

        if path == MANIFEST_ROUTE:
            self._send_file(self.server.dist_dir / MANIFEST_FILENAME, head_only)
            return

        if path == IPA_ROUTE:
            self._send_ipa(head_only)
            return

        self._send_static(path, head_only)

    def _send_file(self, file_path: Path, head_only: bool):
        """Send a generated artifact or static file."""
        try:
            content = file_path.read_bytes()
        except (FileNotFoundError, IsADirectoryError):
            self.send_not_found(head_only)
            return
        self.send_bytes(content, 200, content_type_for(file_path), head_only)

    def _send_static(self, path: str, head_only: bool):
        """Serve other files from the dist directory (icons etc.).

        The certificate directory and anything outside the root are 404.
        """
        root = self.server.dist_dir.resolve()
        try:
            target = (root / path.lstrip("/")).resolve()
        except (OSError, ValueError):
            # Embedded null bytes and unresolvable names
            self.send_not_found(head_only)
            return
        if not target.is_relative_to(root) or target == root:
            self.send_not_found(head_only)
            return
        if target.relative_to(root).parts[0] == "certs":
            self.send_not_found(head_only)
            return
        self._send_file(target, head_only)

    def _send_ipa(self, head_only: bool):
        """Stream the selected IPA with an explicit Content-Length."""
        ipa = self.server.ipa
        once = self.server.serve_once and not head_only

        try:
            f = open(ipa.path, "rb")
        except OSError as e:
            logger.error("IPA download error: %s", e)
            self.send_bytes(b"Internal Server Error\n", 500, "text/plain; charset=utf-8", head_only)
            if once:
                self._finish_once(1, REASON_DOWNLOAD_FAILED)
            return

        with f:
            self.send_response(200)
            self.send_header("Content-Type", CONTENT_TYPES[".ipa"])
            self.send_header("Content-Length", str(ipa.size))
            self.end_headers()
            if head_only:
                return

            if once:
                logger.info("IPA download started, will exit after completion (serve-once)")
            try:
                shutil.copyfileobj(f, self.wfile)
                self.wfile.flush()
            except OSError as e:
                # Client went away (BrokenPipe, ConnectionReset, TLS errors)
                logger.error("IPA download error: %s", e)
                self.close_connection = True
                if once:
                    self._finish_once(1, REASON_DOWNLOAD_FAILED)
                return

        if once:
            self._finish_once(0, REASON_DOWNLOAD_COMPLETE)

    def _finish_once(self, exit_code: int, reason: str):
        if self.server.shutdown_signal.trigger(exit_code, reason):
            if exit_code == 0:
                logger.info("IPA download completed, shutting down server...")
            else:
                logger.info("IPA download failed, shutting down server...")


def content_type_for(path: Path) -> str:
    """Content type for a served file, with .ipa/.plist overrides."""
    suffix = path.suffix.lower()
    if suffix in CONTENT_TYPES:
        return CONTENT_TYPES[suffix]
    guessed, _ = mimetypes.guess_type(path.name)
    return guessed or "application/octet-stream"


class OTAServer:
    """OTA distribution server for the newest IPA in the working directory."""

    def __init__(
        self,
        config: ServerConfig,
        runner: CommandRunner = run_command,
        shutdown_signal: Optional[ShutdownSignal] = None,
    ):
        """Initialize server.

        Args:
            config: Server configuration
            runner: Command runner for openssl / tailscale
            shutdown_signal: One-shot shutdown signal (created if None)
        """
        self.config = config
        self.runner = runner
        self.shutdown_signal = shutdown_signal or ShutdownSignal()
        self.ipa: Optional[ArchiveInfo] = None
        self.hostname: Optional[str] = None
        self.certs: Optional[CertificateBundle] = None
        self.base_url: Optional[str] = None
        self.install_url: Optional[str] = None
        self.server: Optional[OTAHTTPServer] = None
        self._thread: Optional[threading.Thread] = None

    def prepare(self):
        """Select the IPA, provision TLS and generate the artifacts.

        Raises:
            StartupError: If no IPA is found, HTTPS is required but no
                certificate is available, or artifacts cannot be written
            ProvisionError: Production mode without a Tailscale hostname
        """
        config = self.config

        try:
            config.dist_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StartupError(f"Cannot create {config.dist_dir}: {e}") from e

        try:
            ipa_files = find_ipa_files(config.work_dir, config.ipa_path)
        except OSError as e:
            raise StartupError(f"Cannot scan {config.work_dir}: {e}") from e
        if not ipa_files:
            raise StartupError(f"No IPA files found in {config.work_dir}")

        self.ipa = ipa_files[0]
        logger.info("Using IPA: %s v%s (%s)", self.ipa.display_name, self.ipa.version, self.ipa.path.name)

        self.hostname, self.certs = provision(config, runner=self.runner)

        if config.use_https and not self.certs.exists:
            raise StartupError("TLS certificates not available")

        self.base_url = f"{config.protocol}://{self.hostname}:{config.port}"
        self.install_url = build_install_url(self.base_url)

        manifest_data = ManifestData(
            bundle_id=self.ipa.bundle_id,
            version=self.ipa.version,
            title=self.ipa.display_name,
            ipa_url=f"{self.base_url}{IPA_ROUTE}",
            icon_small_url=f"{self.base_url}/{ICON_SMALL_NAME}",
            icon_large_url=f"{self.base_url}/{ICON_LARGE_NAME}",
        )
        try:
            generate_manifest(manifest_data, config.dist_dir, config.templates_dir)
            generate_install_page(self.ipa, self.install_url, config.dist_dir, config.templates_dir)
        except OSError as e:
            raise StartupError(f"Failed to write artifacts: {e}") from e

    def start(self, install_signal_handlers: bool = True):
        """Bind the listener.

        Args:
            install_signal_handlers: Register SIGINT/SIGTERM handlers
                (main thread only)

        Raises:
            StartupError: If prepare() has not run or the port cannot be bound
        """
        if self.ipa is None or self.base_url is None:
            raise StartupError("Server not prepared")

        try:
            self.server = OTAHTTPServer(
                (self.config.bind, self.config.port),
                dist_dir=self.config.dist_dir,
                ipa=self.ipa,
                serve_once=self.config.serve_once,
                shutdown_signal=self.shutdown_signal,
            )
        except OSError as e:
            raise StartupError(f"Cannot bind {self.config.bind}:{self.config.port}: {e}") from e

        if self.config.use_https:
            # Wrap with TLS
            try:
                context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
                context.load_cert_chain(
                    certfile=str(self.certs.cert_path),
                    keyfile=str(self.certs.key_path),
                )
            except (OSError, ssl.SSLError) as e:
                self.server.server_close()
                self.server = None
                raise StartupError(f"Cannot load TLS certificate: {e}") from e
            # Handshakes run in the per-connection worker, not in accept()
            self.server.socket = context.wrap_socket(
                self.server.socket, server_side=True, do_handshake_on_connect=False
            )

        # Log startup info
        logger.info("OTA server started on %s:%d", self.config.bind, self.config.port)
        logger.info("App: %s v%s", self.ipa.display_name, self.ipa.version)
        logger.info("Install URL: %s/", self.base_url)
        logger.info("Direct install: %s", self.install_url)
        logger.info("Mode: %s", "Development" if self.config.dev_mode else "Production")
        if self.config.serve_once:
            logger.info("Serve-once: exiting after the first IPA download")

        if install_signal_handlers:
            self._setup_signal_handlers()

    def serve_forever(self, poll_interval: float = 0.5) -> int:
        """Serve until shutdown is signalled.

        Returns:
            Exit code recorded by the shutdown signal (0 for interrupts)
        """
        if not self.server:
            raise StartupError("Server not started")

        self._thread = threading.Thread(
            target=self.server.serve_forever,
            kwargs={"poll_interval": poll_interval},
            name="ota-listener",
            daemon=True,
        )
        self._thread.start()

        try:
            # Short waits keep the main thread responsive to signals
            while not self.shutdown_signal.wait(poll_interval):
                pass
        except KeyboardInterrupt:
            logger.info("Shutdown requested")
            self.shutdown_signal.trigger(0, REASON_SIGNAL)

        if self.shutdown_signal.reason in (REASON_DOWNLOAD_COMPLETE, REASON_DOWNLOAD_FAILED):
            # Let the last bytes of the transfer flush
            time.sleep(self.config.grace_delay)

        self.shutdown()
        return self.shutdown_signal.exit_code or 0

    def shutdown(self):
        """Close the listener."""
        if self.server:
            logger.info("Shutting down server...")
            if self._thread and self._thread.is_alive():
                self.server.shutdown()
            self.server.server_close()
            self.server = None

    def _setup_signal_handlers(self):
        """Setup signal handlers for shutdown."""

        def handle_shutdown(signum, frame):
            logger.info("Received %s", signal.Signals(signum).name)
            self.shutdown_signal.trigger(0, REASON_SIGNAL)

        signal.signal(signal.SIGINT, handle_shutdown)
        signal.signal(signal.SIGTERM, handle_shutdown)
