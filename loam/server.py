"""HTTP serving for Loam.

Two servers live here:
- StaticServer serves a published output tree. Each request runs on its own
  thread; directory paths map to ``index.html``, missing paths get a 404
  (``404.html`` when present), and a file that cannot be read gets a 500
  without affecting other requests.
- DevServer builds a project, serves it, watches the sources and rebuilds on
  change, then tells connected browsers to reload over a WebSocket.

Key classes:
- StaticRequestHandler: Request handler mapping URL paths to files.
- StaticServer: Threaded HTTP server bound to a document root.
- DevServer: Build, serve, watch and live-reload loop.
"""

from __future__ import annotations

import asyncio
import email.utils
import functools
import json
import logging
import os
import signal
import threading
import time
import urllib.parse
from http import HTTPStatus
from http.server import SimpleHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path

import websockets
from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from . import __version__
from .build import CONFIG_FILENAME, build_site, load_config
from .errors import BindError, LoamError
from .html_utils import inject_before_body_end

logger = logging.getLogger(__name__)


class StaticRequestHandler(SimpleHTTPRequestHandler):
    """Serve files from ``directory`` without ever listing directories."""

    server_version = f"loam/{__version__}"
    index_name = "index.html"
    not_found_name = "404.html"

    def log_message(self, format, *args):
        logger.info("%s - %s", self.address_string(), format % args)

    def list_directory(self, path):
        return self._send_not_found()

    def _send_html(self, status: int, content: str):
        encoded = content.encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "text/html; charset=utf-8")
        self.send_header("Content-Length", str(len(encoded)))
        self.end_headers()
        if self.command != "HEAD":
            self.wfile.write(encoded)
        return None

    def _send_not_found(self):
        error_page = Path(self.directory) / self.not_found_name
        if error_page.is_file():
            try:
                return self._send_html(
                    HTTPStatus.NOT_FOUND, error_page.read_text(encoding="utf-8")
                )
            except OSError:
                logger.exception("Cannot read %s", error_page)
        self.send_error(HTTPStatus.NOT_FOUND, "File not found")
        return None

    def _redirect_to_directory(self):
        parts = urllib.parse.urlsplit(self.path)
        location = urllib.parse.urlunsplit(
            (parts[0], parts[1], parts[2] + "/", parts[3], parts[4])
        )
        self.send_response(HTTPStatus.MOVED_PERMANENTLY)
        self.send_header("Location", location)
        self.send_header("Content-Length", "0")
        self.end_headers()
        return None

    def resolve(self) -> Path | None:
        """Map the request path to a file under the document root.

        Returns:
            The file path, or None when nothing matches.
        """
        path = Path(self.translate_path(self.path))
        if path.is_dir():
            path = path / self.index_name
        return path if path.is_file() else None

    def send_head(self):
        translated = Path(self.translate_path(self.path))
        if translated.is_dir() and not urllib.parse.urlsplit(self.path).path.endswith("/"):
            return self._redirect_to_directory()

        path = self.resolve()
        if path is None:
            return self._send_not_found()
        return self._open(path)

    def _open(self, path: Path):
        try:
            f = open(path, "rb")
        except OSError:
            logger.exception("Cannot open %s", path)
            self.send_error(HTTPStatus.INTERNAL_SERVER_ERROR, "Cannot read file")
            return None
        try:
            fs = os.fstat(f.fileno())
            self.send_response(HTTPStatus.OK)
            self.send_header("Content-Type", self.guess_type(str(path)))
            self.send_header("Content-Length", str(fs.st_size))
            self.send_header(
                "Last-Modified", email.utils.formatdate(fs.st_mtime, usegmt=True)
            )
            self.end_headers()
        except BaseException:
            f.close()
            raise
        return f

    def copyfile(self, source, outputfile):
        try:
            super().copyfile(source, outputfile)
        except (ConnectionError, TimeoutError):
            logger.debug("Client went away while sending %s", self.path)


class _LoamHTTPServer(ThreadingHTTPServer):
    daemon_threads = True

    def handle_error(self, request, client_address):
        logger.exception("Error while handling request from %s", client_address)


class StaticServer:
    """Threaded HTTP server for a document root.

    Attributes:
        root: Directory being served.
        host: Interface to bind.
        port: Port to bind (0 picks a free one).
        handler_class: Request handler class.
    """

    def __init__(
        self,
        root: Path,
        host: str = "0.0.0.0",
        port: int = 1313,
        handler_class: type[StaticRequestHandler] = StaticRequestHandler,
    ):
        self.root = root
        self.host = host
        self.port = port
        self.handler_class = handler_class
        self._httpd: ThreadingHTTPServer | None = None

    def bind(self) -> ThreadingHTTPServer:
        """Create the listening socket.

        Raises:
            BindError: The address is unavailable.
        """
        # The root is resolved per request, so a symlinked root follows
        # atomic publishes.
        handler = functools.partial(self.handler_class, directory=str(self.root))
        try:
            self._httpd = _LoamHTTPServer((self.host, self.port), handler)
        except OSError as exc:
            raise BindError(self.host, self.port, exc) from exc
        self.port = self._httpd.server_address[1]
        return self._httpd

    @property
    def url(self) -> str:
        host = "localhost" if self.host in ("", "0.0.0.0", "::") else self.host
        return f"http://{host}:{self.port}"

    def serve_forever(self, install_signal_handlers: bool = True) -> None:
        """Serve until shut down, or until SIGTERM/SIGINT in the main thread."""
        httpd = self._httpd or self.bind()
        if install_signal_handlers and threading.current_thread() is threading.main_thread():
            for signum in (signal.SIGTERM, signal.SIGINT):
                signal.signal(signum, self._on_signal)
        logger.info("Serving %s at %s", self.root, self.url)
        try:
            httpd.serve_forever()
        finally:
            httpd.server_close()
            logger.info("Server stopped")

    def _on_signal(self, signum, frame) -> None:
        logger.info("Received %s, shutting down", signal.Signals(signum).name)
        # shutdown() blocks until serve_forever returns, so it cannot run on
        # the thread that is serving.
        threading.Thread(target=self.shutdown, daemon=True).start()

    def shutdown(self) -> None:
        if self._httpd is not None:
            self._httpd.shutdown()


def serve(root: Path, host: str = "0.0.0.0", port: int = 1313) -> None:
    """Serve ``root`` until the process is terminated.

    Raises:
        FileNotFoundError: ``root`` is not a directory.
        BindError: The address is unavailable.
    """
    if not root.is_dir():
        raise FileNotFoundError(f"Document root {root} does not exist")
    server = StaticServer(root, host=host, port=port)
    server.bind()
    server.serve_forever()


class _ReloadHandler(StaticRequestHandler):
    """Static handler that injects the live-reload client into HTML pages."""

    reload_script_template = """
    <script>
    (() => {{
      const ws = new WebSocket('ws://' + location.hostname + ':{ws_port}');
      ws.onmessage = (event) => {{
        const data = JSON.parse(event.data || '{{}}');
        if (data.type === 'reload') location.reload();
      }};
    }})();
    </script>
    """
    reload_script = reload_script_template.format(ws_port=1314)

    def end_headers(self):
        self.send_header("Cache-Control", "no-cache, no-store, must-revalidate")
        super().end_headers()

    def _send_html(self, status: int, content: str):
        return super()._send_html(status, inject_before_body_end(content, self.reload_script))

    def _open(self, path: Path):
        if path.suffix != ".html":
            return super()._open(path)
        try:
            content = path.read_text(encoding="utf-8")
        except OSError:
            logger.exception("Cannot read %s", path)
            self.send_error(HTTPStatus.INTERNAL_SERVER_ERROR, "Cannot read file")
            return None
        return self._send_html(HTTPStatus.OK, content)


WATCHED_FOLDERS = ("content", "layouts", "static", "data")


class DevServer:
    """Development server with rebuild on change and live reload.

    Attributes:
        project_root: Root directory of the project.
        config: Site configuration.
        output_dir: Published output directory being served.
        http_port: Port for HTTP.
        ws_port: Port for the reload WebSocket.
    """

    def __init__(
        self,
        project_root: Path,
        http_port: int | None = None,
        ws_port: int | None = None,
        host: str | None = None,
    ):
        self.project_root = project_root
        self.config = load_config(project_root)
        self.output_dir = project_root / str(self.config.get("output_dir", "public"))
        self.host = host or str(self.config.get("host") or "0.0.0.0")
        self.http_port = int(http_port or self.config.get("port", 1313))
        if ws_port is not None:
            self.ws_port = ws_port
        elif http_port is not None:
            self.ws_port = self.http_port + 1
        else:
            self.ws_port = int(self.config.get("ws_port", self.http_port + 1))
        self._reload_script = _ReloadHandler.reload_script_template.format(ws_port=self.ws_port)
        # Pages link to the dev server itself.
        self._base_url = f"http://localhost:{self.http_port}"
        self._observer: Observer | None = None
        self._server: StaticServer | None = None
        self._ws_clients: set = set()
        self._loop = asyncio.new_event_loop()
        self._rebuilding = False
        self._last_rebuild_at = 0.0
        self._last_signature: tuple | None = None
        self._debounce_seconds = 0.05
        self._post_build_delay = 0.05

    def start(self, include_drafts: bool = False) -> None:  # pragma: no cover - integration path
        self._build(include_drafts)
        self._last_signature = self._compute_signature()
        handler_cls = type(
            "_ReloadHandlerWithPort",
            (_ReloadHandler,),
            {"reload_script": self._reload_script},
        )
        self._server = StaticServer(
            self.output_dir, host=self.host, port=self.http_port, handler_class=handler_cls
        )
        self._server.bind()
        threading.Thread(target=self._start_ws, daemon=True).start()
        self._start_watcher(include_drafts)
        try:
            self._server.serve_forever()
        finally:
            self.stop()

    def stop(self) -> None:
        if self._observer:
            self._observer.stop()
            self._observer.join()
            self._observer = None
        self._loop.call_soon_threadsafe(self._loop.stop)

    def _build(self, include_drafts: bool) -> None:
        result = build_site(
            self.project_root,
            include_drafts=include_drafts,
            base_url=self._base_url,
            output_dir=self.output_dir,
        )
        logger.info("Built %d pages", len(result.pages))

    def _start_ws(self) -> None:  # pragma: no cover - integration path
        asyncio.set_event_loop(self._loop)
        try:
            self._loop.run_until_complete(self._run_ws_server())
        except OSError as exc:
            logger.error("WebSocket server failed to start (port %s): %s", self.ws_port, exc)

    async def _run_ws_server(self) -> None:  # pragma: no cover - integration path
        async with websockets.serve(self._ws_handler, self.host, self.ws_port):
            await asyncio.Future()

    async def _ws_handler(self, websocket):
        self._ws_clients.add(websocket)
        try:
            await websocket.wait_closed()
        finally:
            self._ws_clients.discard(websocket)

    def _broadcast_reload(self) -> None:
        message = json.dumps({"type": "reload"})
        asyncio.run_coroutine_threadsafe(self._async_broadcast(message), self._loop)

    async def _async_broadcast(self, message: str) -> None:
        stale = set()
        for ws in list(self._ws_clients):
            try:
                await ws.send(message)
            except Exception:
                stale.add(ws)
        for ws in stale:
            self._ws_clients.discard(ws)

    def _start_watcher(self, include_drafts: bool) -> None:
        handler = _ChangeHandler(self, include_drafts)
        observer = Observer()
        for folder in WATCHED_FOLDERS:
            watch_path = self.project_root / folder
            if watch_path.exists():
                observer.schedule(handler, str(watch_path), recursive=True)
        observer.schedule(handler, str(self.project_root), recursive=False)
        observer.start()
        self._observer = observer

    def rebuild(self, include_drafts: bool) -> None:
        """Rebuild after a change; failures keep the previous tree online."""
        now = time.time()
        if self._rebuilding or (now - self._last_rebuild_at) < self._debounce_seconds:
            return
        signature = self._compute_signature()
        if signature is not None and signature == self._last_signature:
            return
        self._rebuilding = True
        try:
            logger.info("Change detected; rebuilding")
            try:
                self._build(include_drafts)
            except (LoamError, OSError) as exc:
                logger.error("Rebuild failed: %s", exc)
                return
            self._last_signature = signature
            if self._post_build_delay:
                time.sleep(self._post_build_delay)
            self._broadcast_reload()
        finally:
            self._rebuilding = False
            self._last_rebuild_at = time.time()

    def _compute_signature(self) -> tuple | None:
        entries: list[tuple] = []
        roots = [self.project_root / folder for folder in WATCHED_FOLDERS]
        for root in roots:
            if not root.exists():
                continue
            for path in sorted(root.rglob("*")):
                if path.is_dir():
                    continue
                try:
                    stat = path.stat()
                except OSError:
                    continue
                rel = path.relative_to(self.project_root)
                entries.append((rel.as_posix(), stat.st_mtime_ns, stat.st_size))
        config_path = self.project_root / CONFIG_FILENAME
        if config_path.exists():
            stat = config_path.stat()
            entries.append((CONFIG_FILENAME, stat.st_mtime_ns, stat.st_size))
        return tuple(entries) if entries else None


class _ChangeHandler(FileSystemEventHandler):
    def __init__(self, server: DevServer, include_drafts: bool):
        super().__init__()
        self.server = server
        self.include_drafts = include_drafts

    def on_any_event(self, event):
        if event.is_directory:
            return
        path = Path(os.fsdecode(event.src_path))
        try:
            rel = path.relative_to(self.server.project_root)
        except ValueError:
            return
        # Skips the output symlink and the hidden generation directories.
        output_name = self.server.output_dir.name
        if rel.parts and rel.parts[0] == output_name:
            return
        if any(part.startswith(".") for part in rel.parts):
            return
        self.server.rebuild(self.include_drafts)
