"""Routing of chat messages between users over UDP."""

from __future__ import annotations

import json
import logging
import socket
import threading
from typing import Any, Optional, Protocol

from chatrelay.listener import Log

Address = tuple[str, int]

MESSAGE_PORT = 10016
_POLL = 0.2
_MAX_DATAGRAM = 65535

_logger = logging.getLogger(__name__)


class Registry(Protocol):
    def __contains__(self, user_id: object) -> bool: ...

    def address_of(self, user_id: str) -> Address: ...


class MessageRouter:
    """Decide where a message goes: to an online recipient or into its inbox.

    A message is a JSON array whose second item is the sender and third the
    recipient.
    """

    def __init__(
        self,
        registry: Registry,
        undelivered: dict[str, dict[str, list]],
        log: Optional[Log] = None,
    ) -> None:
        self.registry = registry
        self.undelivered = undelivered
        self._log = log or _logger.debug

    def route(self, payload: bytes) -> Optional[Address]:
        """Return the recipient's address when online; otherwise store the message."""
        try:
            message: Any = json.loads(payload)
        except ValueError as exc:
            raise ValueError(f"malformed message: {payload!r}") from exc
        if (
            not isinstance(message, list)
            or len(message) < 3
            or not isinstance(message[1], str)
            or not isinstance(message[2], str)
        ):
            raise ValueError(f"malformed message: {payload!r}")
        sender, recipient = message[1], message[2]

        if recipient in self.registry:
            try:
                address = self.registry.address_of(recipient)
            except KeyError:
                pass
            else:
                self._log(f"message {sender} -> {recipient} at {address[0]}:{address[1]}")
                return address

        try:
            inbox = self.undelivered[recipient]
        except KeyError:
            raise KeyError(f"unknown recipient: {recipient!r}") from None
        inbox.setdefault(sender, []).append(message)
        self._log(f"message {sender} -> {recipient} stored, recipient offline")
        return None


class MessageService:
    """UDP endpoint that receives messages and forwards them to online users."""

    def __init__(self, router: MessageRouter, log: Optional[Log] = None, port: int = MESSAGE_PORT) -> None:
        self.router = router
        self._log = log or _logger.debug
        self.port = port
        self.address: Optional[Address] = None
        self._sock: Optional[socket.socket] = None
        self._thread: Optional[threading.Thread] = None
        self._stopped = threading.Event()

    def start(self, host: str) -> None:
        if self._sock is not None:
            raise RuntimeError("message service already started")
        family = socket.AF_INET6 if ":" in host else socket.AF_INET
        sock = socket.socket(family, socket.SOCK_DGRAM)
        try:
            sock.bind((host, self.port))
        except OSError:
            sock.close()
            self._log(f"message service cannot bind {host}:{self.port}")
            raise
        sock.settimeout(_POLL)
        self._sock = sock
        bound_host, bound_port = sock.getsockname()[:2]
        self.address = (bound_host, bound_port)
        self._stopped.clear()
        self._thread = threading.Thread(target=self._serve, args=(sock,), name="messages", daemon=True)
        self._thread.start()
        self._log(f"message service on {bound_host}:{bound_port}")

    def _serve(self, sock: socket.socket) -> None:
        while not self._stopped.is_set():
            try:
                payload, peer = sock.recvfrom(_MAX_DATAGRAM)
            except socket.timeout:
                continue
            except ConnectionResetError:
                continue
            except OSError:
                break
            self._log(f"message from {peer[0]}:{peer[1]}")
            try:
                target = self.router.route(payload)
            except (ValueError, KeyError) as exc:
                self._log(f"message dropped: {exc}")
                continue
            if target is not None:
                try:
                    self.send(payload, target)
                except OSError as exc:
                    self._log(f"message to {target[0]}:{target[1]} failed: {exc}")

    def send(self, payload: bytes, address: Address) -> None:
        """Send one datagram from the service's socket."""
        if self._sock is None:
            raise RuntimeError("message service is not started")
        self._sock.sendto(payload, address)
        self._log(f"message sent to {address[0]}:{address[1]}")

    def close(self) -> None:
        self._stopped.set()
        if self._thread is not None:
            self._thread.join()
            self._thread = None
        if self._sock is not None:
            self._sock.close()
            self._sock = None
        self.address = None