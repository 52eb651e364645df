import asyncio
import http.client
import socket
import threading
from pathlib import Path

import pytest

from loam.build import build_site
from loam.errors import BindError
from loam.server import DevServer, StaticRequestHandler, StaticServer, _ChangeHandler, _ReloadHandler, serve

from .conftest import write


@pytest.fixture
def running(request):
    servers = []

    def start(root: Path, handler_class=StaticRequestHandler) -> StaticServer:
        server = StaticServer(root, host="127.0.0.1", port=0, handler_class=handler_class)
        server.bind()
        thread = threading.Thread(
            target=server.serve_forever, kwargs={"install_signal_handlers": False}, daemon=True
        )
        thread.start()
        servers.append((server, thread))
        return server

    yield start
    for server, thread in servers:
        server.shutdown()
        thread.join(timeout=5)


def get(server: StaticServer, path: str, method: str = "GET"):
    conn = http.client.HTTPConnection("127.0.0.1", server.port, timeout=5)
    try:
        conn.request(method, path)
        response = conn.getresponse()
        return response.status, dict(response.getheaders()), response.read()
    finally:
        conn.close()


def test_serves_published_site(project, running):
    build_site(project)
    server = running(project / "public")

    status, headers, body = get(server, "/hello/")
    assert status == 200
    assert headers["Content-Type"].startswith("text/html")
    assert b"Hello, Paste!" in body

    status, _, body = get(server, "/hello/index.html")
    assert status == 200

    status, headers, _ = get(server, "/css/site.css")
    assert status == 200
    assert headers["Content-Type"].startswith("text/css")

    status, _, _ = get(server, "/secret/")
    assert status == 404


def test_directory_without_slash_redirects(project, running):
    build_site(project)
    server = running(project / "public")
    status, headers, _ = get(server, "/hello?x=1")
    assert status == 301
    assert headers["Location"] == "/hello/?x=1"


def test_directory_without_index_is_not_listed(tmp_path, running):
    (tmp_path / "empty").mkdir()
    server = running(tmp_path)
    status, _, body = get(server, "/empty/")
    assert status == 404
    assert b"<li>" not in body


def test_custom_not_found_page(tmp_path, running):
    write(tmp_path / "404.html", "<h1>Lost</h1>")
    server = running(tmp_path)
    status, _, body = get(server, "/nowhere/")
    assert status == 404
    assert body == b"<h1>Lost</h1>"


def test_head_has_no_body(tmp_path, running):
    write(tmp_path / "index.html", "home")
    server = running(tmp_path)
    status, headers, body = get(server, "/", method="HEAD")
    assert status == 200
    assert headers["Content-Length"] == "4"
    assert body == b""


def test_unreadable_file_is_500_and_server_keeps_going(tmp_path, running, monkeypatch):
    write(tmp_path / "index.html", "home")
    write(tmp_path / "broken.html", "never")
    server = running(tmp_path)

    real_open = open

    def flaky_open(path, *args, **kwargs):
        if str(path).endswith("broken.html"):
            raise PermissionError("denied")
        return real_open(path, *args, **kwargs)

    monkeypatch.setattr("builtins.open", flaky_open)
    status, _, _ = get(server, "/broken.html")
    assert status == 500
    status, _, body = get(server, "/")
    assert status == 200
    assert body == b"home"


def test_path_traversal_stays_in_root(tmp_path, running):
    write(tmp_path / "secret.txt", "outside")
    root = tmp_path / "site"
    write(root / "index.html", "inside")
    server = running(root)
    status, _, body = get(server, "/../secret.txt")
    assert status == 404
    assert b"outside" not in body


def test_serves_new_generation_after_publish(project, running):
    build_site(project)
    server = running(project / "public")
    assert b"Hello, Paste!" in get(server, "/hello/")[2]

    write(project / "content" / "hello.md", "---\ntitle: Hello\n---\nUpdated!\n")
    build_site(project)
    assert b"Updated!" in get(server, "/hello/")[2]


def test_bind_error_when_port_taken(tmp_path):
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        sock.listen()
        port = sock.getsockname()[1]
        with pytest.raises(BindError) as excinfo:
            StaticServer(tmp_path, host="127.0.0.1", port=port).bind()
    assert excinfo.value.port == port


def test_serve_requires_existing_root(tmp_path):
    with pytest.raises(FileNotFoundError):
        serve(tmp_path / "missing")


def test_url_uses_localhost_for_wildcard(tmp_path):
    assert StaticServer(tmp_path, host="0.0.0.0", port=8080).url == "http://localhost:8080"


def test_reload_handler_injects_script(tmp_path, running):
    write(tmp_path / "index.html", "<html><body>home</body></html>")
    handler = type("Handler", (_ReloadHandler,), {"reload_script": "<script>r()</script>"})
    server = running(tmp_path, handler_class=handler)
    status, headers, body = get(server, "/")
    assert status == 200
    assert body == b"<html><body>home<script>r()</script></body></html>"
    assert headers["Cache-Control"].startswith("no-cache")


class DummyEvent:
    def __init__(self, path, is_directory=False):
        self.src_path = path
        self.is_directory = is_directory


def test_change_handler_filters_events(tmp_path):
    server = DevServer(tmp_path)
    calls = []
    server.rebuild = lambda include_drafts: calls.append(include_drafts)
    handler = _ChangeHandler(server, include_drafts=True)

    handler.on_any_event(DummyEvent(str(tmp_path / "public" / "index.html")))
    handler.on_any_event(DummyEvent(str(tmp_path / ".public.abc123" / "index.html")))
    handler.on_any_event(DummyEvent(str(tmp_path / "content" / ".swp")))
    handler.on_any_event(DummyEvent(str(tmp_path / "content"), is_directory=True))
    handler.on_any_event(DummyEvent("/elsewhere/file.md"))
    assert calls == []

    handler.on_any_event(DummyEvent(str(tmp_path / "content" / "hello.md")))
    assert calls == [True]


def test_dev_server_ports(tmp_path):
    assert DevServer(tmp_path).ws_port == 1314
    server = DevServer(tmp_path, http_port=5055)
    assert (server.http_port, server.ws_port) == (5055, 5056)
    explicit = DevServer(tmp_path, http_port=5055, ws_port=6000)
    assert explicit.ws_port == 6000
    assert ":6000" in explicit._reload_script

    write(tmp_path / "loam.yaml", "port: 4000\nws_port: 4500\n")
    configured = DevServer(tmp_path)
    assert (configured.http_port, configured.ws_port) == (4000, 4500)


def test_rebuild_broadcasts_after_success(project, monkeypatch):
    server = DevServer(project)
    server._post_build_delay = 0
    calls = []
    monkeypatch.setattr(server, "_broadcast_reload", lambda: calls.append("reload"))

    server.rebuild(include_drafts=False)
    assert calls == ["reload"]
    assert (project / "public" / "hello" / "index.html").exists()

    # Unchanged sources do not trigger another build.
    server._last_rebuild_at = 0
    server.rebuild(include_drafts=False)
    assert calls == ["reload"]


def test_failed_rebuild_keeps_previous_tree(project, monkeypatch):
    server = DevServer(project)
    server._post_build_delay = 0
    server._build(include_drafts=False)
    calls = []
    monkeypatch.setattr(server, "_broadcast_reload", lambda: calls.append("reload"))

    write(project / "layouts" / "single.html.jinja", '{% extends "missing" %}')
    server.rebuild(include_drafts=False)

    assert calls == []
    assert "Hello, Paste!" in (project / "public" / "hello" / "index.html").read_text()


def test_async_broadcast_drops_stale_clients(tmp_path):
    server = DevServer(tmp_path)

    class GoodWS:
        def __init__(self):
            self.messages = []

        async def send(self, msg):
            self.messages.append(msg)

    class BadWS:
        async def send(self, msg):
            raise ConnectionError("gone")

    good, bad = GoodWS(), BadWS()
    server._ws_clients = {good, bad}
    asyncio.run(server._async_broadcast("reload"))
    assert good.messages == ["reload"]
    assert server._ws_clients == {good}
