"""Lookup of users by id for the add-friend dialog, served over UDP."""

from __future__ import annotations

import json
import logging
import socket
import threading
from typing import Mapping, Optional

from chatrelay.listener import Log

Address = tuple[str, int]
FriendDirectory = Mapping[str, tuple[str, str]]

FRIEND_PORT = 10030
RESULT_TYPE = "findfriendreslute"
_POLL = 0.2
_MAX_DATAGRAM = 65535

_logger = logging.getLogger(__name__)


def find_friend(request: bytes, directory: FriendDirectory) -> bytes:
    """Answer a lookup for the user id carried in ``request``.

    The reply is a JSON array starting with ``findfriendreslute``; when the id
    is known it is followed by the id, the user's name and picture.
    """
    user_id = request.decode("utf-8", errors="replace")
    result: list[str] = [RESULT_TYPE]
    found = directory.get(user_id)
    if found is not None:
        name, picture = found
        result.extend([user_id, name, picture])
    return json.dumps(result, indent=4, ensure_ascii=False).encode("utf-8")


class FriendFinderService:
    """UDP endpoint answering friend lookups from a shared id directory."""

    def __init__(
        self,
        directory: FriendDirectory,
        log: Optional[Log] = None,
        port: int = FRIEND_PORT,
    ) -> None:
        self.directory = directory
        self._log = log or _logger.debug
        self.port = port
        self.address: Optional[Address] = None
        self._sock: Optional[socket.socket] = None
        self._thread: Optional[threading.Thread] = None
        self._stopped = threading.Event()

    def start(self, host: str) -> None:
        if self._sock is not None:
            raise RuntimeError("friend finder already started")
        family = socket.AF_INET6 if ":" in host else socket.AF_INET
        sock = socket.socket(family, socket.SOCK_DGRAM)
        try:
            sock.bind((host, self.port))
        except OSError:
            sock.close()
            self._log(f"friend finder cannot bind {host}:{self.port}")
            raise
        sock.settimeout(_POLL)
        self._sock = sock
        bound_host, bound_port = sock.getsockname()[:2]
        self.address = (bound_host, bound_port)
        self._stopped.clear()
        self._thread = threading.Thread(target=self._serve, args=(sock,), name="friends", daemon=True)
        self._thread.start()
        self._log(f"friend finder on {bound_host}:{bound_port}")

    def _serve(self, sock: socket.socket) -> None:
        while not self._stopped.is_set():
            try:
                request, peer = sock.recvfrom(_MAX_DATAGRAM)
            except socket.timeout:
                continue
            except ConnectionResetError:
                continue
            except OSError:
                break
            try:
                self.handle(request, (peer[0], peer[1]))
            except OSError as exc:
                self._log(f"friend lookup reply to {peer[0]}:{peer[1]} failed: {exc}")

    def handle(self, request: bytes, address: Address) -> bytes:
        """Answer one lookup, send the reply to ``address`` and return it."""
        if self._sock is None:
            raise RuntimeError("friend finder is not started")
        reply = find_friend(request, self.directory)
        user_id = request.decode("utf-8", errors="replace")
        outcome = "found" if user_id in self.directory else "not found"
        self._log(f"{address[0]} find friend {user_id}: {outcome}")
        self._sock.sendto(reply, address)
        return reply

    def close(self) -> None:
        self._stopped.set()
        if self._thread is not None:
            self._thread.join()
            self._thread = None
        if self._sock is not None:
            self._sock.close()
            self._sock = None
        self.address = None