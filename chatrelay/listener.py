"""TCP listener that hands every accepted connection to a callback."""

from __future__ import annotations

import logging
import os
import socket
import threading
from typing import Callable, Optional

Log = Callable[[str], None]
ConnectionHandler = Callable[[socket.socket], None]

_ACCEPT_POLL = 0.2

_logger = logging.getLogger(__name__)


class ConnectionListener:
    """Accept TCP connections on a background thread.

    Each accepted socket is passed to ``on_connection``; the callback owns it
    from then on.
    """

    def __init__(
        self,
        host: str,
        port: int,
        on_connection: ConnectionHandler,
        log: Optional[Log] = None,
    ) -> None:
        self.host = host
        self.port = port
        self._on_connection = on_connection
        self._log = log or _logger.debug
        self._sock: Optional[socket.socket] = None
        self._thread: Optional[threading.Thread] = None
        self._stopped = threading.Event()

    def start(self) -> "ConnectionListener":
        """Bind, listen and begin accepting connections."""
        if self._sock is not None:
            raise RuntimeError("listener already started")
        family = socket.AF_INET6 if ":" in self.host else socket.AF_INET
        sock = socket.socket(family, socket.SOCK_STREAM)
        if os.name != "nt":
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((self.host, self.port))
            sock.listen()
        except OSError:
            sock.close()
            self._log(f"not listening on {self.host}:{self.port}")
            raise
        sock.settimeout(_ACCEPT_POLL)
        self._sock = sock
        self._stopped.clear()
        self._thread = threading.Thread(
            target=self._accept_loop,
            args=(sock,),
            name=f"listener-{self.port}",
            daemon=True,
        )
        self._thread.start()
        host, port = self.address
        self._log(f"listening on {host}:{port}")
        return self

    def _accept_loop(self, sock: socket.socket) -> None:
        while not self._stopped.is_set():
            try:
                conn, peer = sock.accept()
            except socket.timeout:
                continue
            except OSError:
                break
            self._log(f"client {peer[0]}:{peer[1]} trying to connect")
            try:
                self._on_connection(conn)
            except Exception as exc:  # the handler failed; drop the client
                self._log(f"connection handler failed: {exc!r}")
                conn.close()

    def close(self) -> None:
        """Stop accepting and release the listening socket."""
        self._stopped.set()
        if self._thread is not None:
            self._thread.join()
            self._thread = None
        if self._sock is not None:
            self._sock.close()
            self._sock = None

    def __enter__(self) -> "ConnectionListener":
        if self._sock is None:
            self.start()
        return self

    def __exit__(self, *args) -> None:
        self.close()

    @property
    def address(self) -> tuple[str, int]:
        """The (host, port) the listener is bound to."""
        if self._sock is None:
            raise RuntimeError("listener is not started")
        host, port = self._sock.getsockname()[:2]
        return host, port