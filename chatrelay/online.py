"""Connected users and the registry that admits them after login."""

from __future__ import annotations

import json
import logging
import socket
import threading
import time
from pathlib import Path
from typing import Any, Callable, Optional

from chatrelay.listener import Log

Address = tuple[str, int]
DisconnectHandler = Callable[[str, Address, str], None]

LOGIN_TIMEOUT = 5.0
SAVE_TIMEOUT = 10.0
_RECV_SIZE = 64 * 1024

_logger = logging.getLogger(__name__)


def _now() -> str:
    return time.strftime("%H:%M:%S")


def _recv(conn: socket.socket, timeout: Optional[float]) -> Optional[bytes]:
    """Read what is available; None on timeout, b"" when the peer closed."""
    conn.settimeout(timeout)
    try:
        return conn.recv(_RECV_SIZE)
    except socket.timeout:
        return None


def _recv_upto(conn: socket.socket, size: int, timeout: float) -> bytes:
    """Collect data until at least ``size`` bytes arrived, the peer closed or it went quiet."""
    data = bytearray()
    while len(data) < size:
        chunk = _recv(conn, timeout)
        if not chunk:
            break
        data += chunk
    return bytes(data)


def _to_json(value: Any) -> bytes:
    return json.dumps(value, indent=4, ensure_ascii=False).encode("utf-8")


def user_info_path(user_dir: Path | str, user_id: str) -> Path:
    """Where the saved state of one user lives."""
    return Path(user_dir) / user_id / f"{user_id}.json"


class OnlineUser:
    """One logged-in user and the connection it keeps open."""

    def __init__(
        self,
        user_dir: Path | str,
        user_id: str,
        address: Address,
        conn: socket.socket,
        on_disconnect: Optional[DisconnectHandler] = None,
    ) -> None:
        self.user_dir = Path(user_dir)
        self.user_id = user_id
        self._address = (address[0], address[1])
        self._conn = conn
        self._on_disconnect = on_disconnect
        self.login_time = _now()
        self._closed = threading.Event()
        self._reported = False
        self._report_lock = threading.Lock()

    @property
    def address(self) -> Address:
        """The (host, port) the user is connected from."""
        return self._address

    @property
    def save_path(self) -> Path:
        return user_info_path(self.user_dir, self.user_id)

    def receive_saved_state(self, timeout: float = SAVE_TIMEOUT) -> bool:
        """Receive one upload of the user's state and store it.

        The client announces the size, is answered ``send``, streams the data
        and is answered ``getok`` or ``getfaile``. Raises ConnectionError when
        the client has gone away before announcing anything.
        """
        header = _recv(self._conn, None)
        if not header:
            raise ConnectionError(f"{self.user_id} closed the connection")
        try:
            size = float(header.decode("ascii").strip())
        except (UnicodeDecodeError, ValueError):
            size = -1.0
        if size < 0 or not size.is_integer():
            self._conn.sendall(b"getfaile")
            return False

        self._conn.sendall(b"send")
        data = _recv_upto(self._conn, int(size), timeout)
        if len(data) != size:
            self._conn.sendall(b"getfaile")
            return False
        self._conn.sendall(b"getok")
        path = self.save_path
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        return True

    def serve(self) -> None:
        """Accept state uploads until the connection ends, then report the disconnect."""
        try:
            while not self._closed.is_set():
                self.receive_saved_state()
        except OSError:
            pass
        finally:
            self._report_disconnect()

    def _report_disconnect(self) -> None:
        with self._report_lock:
            if self._reported:
                return
            self._reported = True
        if self._on_disconnect is not None:
            self._on_disconnect(self.user_id, self._address, _now())

    def close(self) -> None:
        """Close the user's connection."""
        self._closed.set()
        try:
            self._conn.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        self._conn.close()


class OnlineRegistry:
    """Users currently connected, keyed by user id.

    ``pending_logins`` maps login keys handed out at login to user ids;
    ``undelivered`` maps a user id to the messages that arrived for it while
    it was away, grouped by sender.
    """

    def __init__(
        self,
        user_dir: Path | str,
        pending_logins: dict[int, str],
        undelivered: dict[str, dict[str, list]],
        log: Optional[Log] = None,
        on_connect: Optional[Callable[[str, Address, str], None]] = None,
        on_disconnect: Optional[Callable[[str, str], None]] = None,
    ) -> None:
        self.user_dir = Path(user_dir)
        self.pending_logins = pending_logins
        self.undelivered = undelivered
        self._log = log or _logger.debug
        self._on_connect = on_connect
        self._on_disconnect = on_disconnect
        self._users: dict[str, OnlineUser] = {}
        self._lock = threading.Lock()

    def __contains__(self, user_id: object) -> bool:
        with self._lock:
            return user_id in self._users

    def address_of(self, user_id: str) -> Address:
        with self._lock:
            try:
                return self._users[user_id].address
            except KeyError:
                raise KeyError(f"user is not online: {user_id!r}") from None

    def load_user_info(self, user_id: str) -> Optional[Any]:
        """The user's saved state, or None when there is none readable."""
        try:
            return json.loads(user_info_path(self.user_dir, user_id).read_bytes())
        except (OSError, ValueError):
            return None

    def accept(self, conn: socket.socket, timeout: float = LOGIN_TIMEOUT) -> Optional[OnlineUser]:
        """Admit a client that presents a pending login key.

        Returns the new online user, or None when the client is turned away;
        a turned-away connection is closed.
        """
        try:
            user = self._admit(conn, timeout)
        except OSError as exc:
            self._log(f"login failed: {exc}")
            user = None
        if user is None:
            conn.close()
        return user

    def _admit(self, conn: socket.socket, timeout: float) -> Optional[OnlineUser]:
        data = _recv(conn, timeout)
        if not data:
            self._log("login timed out")
            return None
        try:
            login_key = int(data.decode("ascii").strip())
        except (UnicodeDecodeError, ValueError):
            login_key = 0
        user_id = self.pending_logins.pop(login_key, None)
        if user_id is None:
            self._log(f"login key {login_key} does not exist")
            return None

        host, port = conn.getpeername()[:2]
        address = (host, port)

        waiting = self.undelivered.get(user_id)
        payload = b""
        if waiting:
            payload = _to_json(dict(waiting))
            waiting.clear()
        self._send_sized(conn, payload, timeout)

        if _recv(conn, timeout) == b"GetAllInfo":
            info = self.load_user_info(user_id)
            self._send_sized(conn, b"" if info is None else _to_json(info), timeout)

        user = OnlineUser(self.user_dir, user_id, address, conn, self._user_left)
        with self._lock:
            previous = self._users.get(user_id)
            self._users[user_id] = user
        if previous is not None:
            previous.close()
        threading.Thread(target=user.serve, name=f"user-{user_id}", daemon=True).start()
        if self._on_connect is not None:
            self._on_connect(user_id, address, user.login_time)
        self._log(f"client connected: {user_id} {host}:{port}")
        return user

    @staticmethod
    def _send_sized(conn: socket.socket, payload: bytes, timeout: float) -> None:
        conn.sendall(str(len(payload)).encode("ascii"))
        _recv(conn, timeout)  # the client acknowledges before the data
        if payload:
            conn.sendall(payload)

    def _user_left(self, user_id: str, address: Address, when: str) -> None:
        with self._lock:
            current = self._users.get(user_id)
            if current is None or current.address != address:
                return
            del self._users[user_id]
        current.close()
        self._notify_left(user_id, address, when)

    def disconnect(self, user_id: str) -> None:
        """Drop an online user and close its connection."""
        with self._lock:
            try:
                user = self._users.pop(user_id)
            except KeyError:
                raise KeyError(f"user is not online: {user_id!r}") from None
        user.close()
        self._notify_left(user_id, user.address, _now())

    def _notify_left(self, user_id: str, address: Address, when: str) -> None:
        self._log(f"user disconnected: {user_id} {address[0]}:{address[1]}")
        if self._on_disconnect is not None:
            self._on_disconnect(user_id, when)

    def close(self) -> None:
        """Close every online user's connection."""
        with self._lock:
            users = list(self._users.values())
            self._users.clear()
        for user in users:
            user.close()