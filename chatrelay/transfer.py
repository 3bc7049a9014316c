"""File upload and download over TCP, one connection per file."""

from __future__ import annotations

import json
import socket
import time
from concurrent.futures import ThreadPoolExecutor
from functools import partial
from pathlib import Path
from typing import Callable, Optional

from chatrelay.filelib import FileInfo, FileLibrary
from chatrelay.listener import ConnectionListener, Log

UPLOAD_PORT = 10018
DOWNLOAD_PORT = 10019
TIMEOUT = 5.0
CHUNK_SIZE = 4 * 1024
PAUSE = 0.1
_RECV_SIZE = 64 * 1024


def _recv(conn: socket.socket, timeout: float) -> Optional[bytes]:
    """Read what is available; None on timeout, b"" when the peer closed."""
    conn.settimeout(timeout)
    try:
        return conn.recv(_RECV_SIZE)
    except socket.timeout:
        return None


def _wait_closed(conn: socket.socket, timeout: float) -> None:
    """Drain the connection until the peer closes it or it goes quiet."""
    try:
        while _recv(conn, timeout):
            pass
    except OSError:
        pass


def receive_file(
    conn: socket.socket,
    library: FileLibrary,
    directory: Path | str,
    timeout: float = TIMEOUT,
) -> Optional[str]:
    """Receive one uploaded file and return its new key, or None on failure.

    The client sends a JSON array ``[suffix, size]``, gets the key back, then
    streams the file and is answered with ``success`` or ``faile``.
    """
    header = _recv(conn, timeout)
    if not header:
        return None
    try:
        suffix, size = json.loads(header.decode("utf-8"))[:2]
    except (ValueError, TypeError) as exc:
        raise ValueError(f"malformed upload header: {header!r}") from exc
    if not isinstance(suffix, str) or not isinstance(size, (int, float)):
        raise ValueError(f"malformed upload header: {header!r}")
    size = int(size)

    key = library.reserve_key()
    path = Path(directory) / f"{key}{suffix}"
    received = 0
    with path.open("wb") as out:
        conn.sendall(key.encode("utf-8"))
        while received < size:
            chunk = _recv(conn, timeout)
            if not chunk:
                break
            out.write(chunk)
            received += len(chunk)

    ok = received == size
    try:
        conn.sendall(b"success" if ok else b"faile")
    except OSError:
        pass
    _wait_closed(conn, timeout)
    if not ok:
        return None
    library.add(key, FileInfo(suffix, size, time.strftime("%H:%M:%S")))
    return key


def send_file(
    conn: socket.socket,
    library: FileLibrary,
    directory: Path | str,
    timeout: float = TIMEOUT,
    chunk_size: int = CHUNK_SIZE,
    pause: float = PAUSE,
) -> Optional[int]:
    """Send the file whose key the client asks for; return the bytes sent.

    Returns None when no key arrives in time. An unknown key raises KeyError.
    """
    request = _recv(conn, timeout)
    if not request:
        return None
    key = request.decode("utf-8")
    info = library.get(key)
    path = Path(directory) / f"{key}{info.suffix}"

    conn.sendall(str(info.size).encode("ascii"))
    _recv(conn, timeout)  # the client acknowledges with "pleaseSend"

    sent = 0
    with path.open("rb") as source:
        for chunk in iter(partial(source.read, chunk_size), b""):
            conn.sendall(chunk)
            sent += len(chunk)
            if pause:
                time.sleep(pause)
    _wait_closed(conn, timeout)
    return sent


class FileTransferService:
    """Upload and download listeners backed by a worker pool."""

    def __init__(
        self,
        library: FileLibrary,
        directory: Path | str,
        log: Optional[Log] = None,
        upload_port: int = UPLOAD_PORT,
        download_port: int = DOWNLOAD_PORT,
    ) -> None:
        self.library = library
        self.directory = Path(directory)
        self._log = log or (lambda message: None)
        self.upload_port = upload_port
        self.download_port = download_port
        self._pool: Optional[ThreadPoolExecutor] = None
        self._listeners: list[ConnectionListener] = []

    def start(self, host: str) -> None:
        if self._pool is not None:
            raise RuntimeError("file transfer service already started")
        self._pool = ThreadPoolExecutor(thread_name_prefix="file-transfer")
        self._listeners = [
            ConnectionListener(host, self.upload_port, partial(self._dispatch, self._upload), self._log),
            ConnectionListener(host, self.download_port, partial(self._dispatch, self._download), self._log),
        ]
        try:
            for listener in self._listeners:
                listener.start()
        except OSError:
            self.close()
            raise
        self._log("file transfer service started")

    def _dispatch(self, job: Callable[[socket.socket], None], conn: socket.socket) -> None:
        if self._pool is None:
            conn.close()
            return
        self._pool.submit(job, conn)

    def _upload(self, conn: socket.socket) -> None:
        with conn:
            peer = _peer_name(conn)
            self._log(f"upload from {peer}")
            try:
                key = receive_file(conn, self.library, self.directory)
            except (OSError, ValueError, LookupError) as exc:
                self._log(f"upload from {peer} failed: {exc}")
                return
            if key is None:
                self._log(f"upload from {peer} failed")
            else:
                self._log(f"upload from {peer} succeeded: {key}")

    def _download(self, conn: socket.socket) -> None:
        with conn:
            peer = _peer_name(conn)
            self._log(f"download by {peer}")
            try:
                sent = send_file(conn, self.library, self.directory)
            except (OSError, ValueError, KeyError) as exc:
                self._log(f"download by {peer} failed: {exc}")
                return
            self._log(f"download by {peer} finished: {sent} bytes")

    def close(self) -> None:
        for listener in self._listeners:
            listener.close()
        self._listeners = []
        if self._pool is not None:
            self._pool.shutdown(wait=True)
            self._pool = None


def _peer_name(conn: socket.socket) -> str:
    try:
        host, port = conn.getpeername()[:2]
    except (OSError, ValueError):
        return "unknown peer"
    return f"{host}:{port}"