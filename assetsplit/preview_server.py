"""Static HTTP server for exercising a split tree locally.

Used by the ``preview`` command and by tests that resolve assets against a
real server instead of a mocked transport.
"""

from __future__ import annotations

import contextlib
import logging
import threading
from dataclasses import dataclass
from http.server import SimpleHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from typing import Any, Iterator

logger = logging.getLogger(__name__)


class _ThreadingHTTPServer(ThreadingHTTPServer):
    daemon_threads = True
    allow_reuse_address = True


def make_request_handler(directory: Path, *, quiet: bool = False) -> type[SimpleHTTPRequestHandler]:
    """Create a request handler rooted at ``directory``.

    Chunk files (``*.partN``) have no registered type and are served as
    ``application/octet-stream``.
    """
    directory_path = str(directory)

    class PreviewRequestHandler(SimpleHTTPRequestHandler):
        def __init__(self, *args: Any, **kwargs: Any) -> None:
            super().__init__(*args, directory=directory_path, **kwargs)

        extensions_map = dict(SimpleHTTPRequestHandler.extensions_map)
        extensions_map.update(
            {
                ".wasm": "application/wasm",
                ".data": "application/octet-stream",
                ".gz": "application/gzip",
                ".json": "application/json; charset=utf-8",
                ".js": "application/javascript; charset=utf-8",
            }
        )

        def log_message(self, format: str, *args: Any) -> None:
            if not quiet:
                logger.info("%s - %s", self.address_string(), format % args)

    return PreviewRequestHandler


@contextlib.contextmanager
def serve(
    host: str,
    port: int,
    handler: type[SimpleHTTPRequestHandler],
) -> Iterator[ThreadingHTTPServer]:
    """Context manager that creates and cleans up the HTTP server."""
    server = _ThreadingHTTPServer((host, port), handler)
    try:
        yield server
    finally:
        server.server_close()


@dataclass(slots=True)
class PreviewServerHandle:
    """A preview server answering requests from a daemon thread."""

    server: ThreadingHTTPServer
    thread: threading.Thread
    host: str
    port: int

    @property
    def url(self) -> str:
        return f"http://{self.host}:{self.port}/"

    def stop(self, timeout: float = 2.0) -> None:
        self.server.shutdown()
        self.server.server_close()
        self.thread.join(timeout)


def start_preview(
    directory: Path,
    *,
    host: str = "127.0.0.1",
    port: int = 0,
    quiet: bool = False,
) -> PreviewServerHandle:
    """Serve ``directory`` in the background until ``stop()`` is called.

    With ``port=0`` the OS picks a free port; read it back from the handle.
    Bind failures propagate as ``OSError``.
    """
    handler = make_request_handler(directory.resolve(), quiet=quiet)
    server = _ThreadingHTTPServer((host, port), handler)
    bound_host, bound_port = bound_address(server)
    thread = threading.Thread(target=server.serve_forever, name=f"preview-{bound_port}", daemon=True)
    thread.start()
    logger.debug("Serving %s at %s:%d", directory, bound_host, bound_port)
    return PreviewServerHandle(server=server, thread=thread, host=bound_host, port=bound_port)


def bound_address(server: ThreadingHTTPServer) -> tuple[str, int]:
    raw_host = server.server_address[0]
    host = raw_host.decode("utf-8", "ignore") if isinstance(raw_host, bytes) else str(raw_host)
    if host in {"0.0.0.0", ""}:
        host = "127.0.0.1"
    return host, int(server.server_address[1])
