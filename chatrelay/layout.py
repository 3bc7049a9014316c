"""On-disk layout of the server and the command that starts it."""

from __future__ import annotations

import argparse
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

from chatrelay.filelib import INDEX_NAME, FileLibrary
from chatrelay.friends import FriendFinderService
from chatrelay.listener import ConnectionListener
from chatrelay.messages import MessageRouter, MessageService
from chatrelay.online import OnlineRegistry
from chatrelay.transfer import FileTransferService

FILE_DIR = "AllFile"
USER_DIR = "AllUserInfo"
USER_INDEX_NAME = "AllUserBaseInfo.json"
SERVER_FILE_DIR = "ServerFile"
LOG_NAME = "log.txt"
LOG_HEADER = "==================================log================================="
EMPTY_INDEX = "{\n}\n"
CONNECT_PORT = 8888


@dataclass(frozen=True)
class ServerLayout:
    """Paths of every directory and file the server keeps under its root."""

    root: Path
    file_dir: Path
    file_index: Path
    user_dir: Path
    user_index: Path
    server_file_dir: Path
    log_path: Path

    @classmethod
    def from_root(cls, root: Path | str) -> "ServerLayout":
        root = Path(root).absolute()
        file_dir = root / FILE_DIR
        user_dir = root / USER_DIR
        return cls(
            root=root,
            file_dir=file_dir,
            file_index=file_dir / INDEX_NAME,
            user_dir=user_dir,
            user_index=user_dir / USER_INDEX_NAME,
            server_file_dir=root / SERVER_FILE_DIR,
            log_path=root / LOG_NAME,
        )


def prepare_layout(root: Path | str) -> ServerLayout:
    """Create whatever part of the layout is missing and return it.

    A newly created file or user directory gets an empty JSON index; a
    missing log file is started with a header line.
    """
    layout = ServerLayout.from_root(root)
    layout.root.mkdir(parents=True, exist_ok=True)
    if not layout.file_dir.exists():
        layout.file_dir.mkdir()
        layout.file_index.write_text(EMPTY_INDEX, encoding="utf-8")
    if not layout.user_dir.exists():
        layout.user_dir.mkdir()
        layout.user_index.write_text(EMPTY_INDEX, encoding="utf-8")
    layout.server_file_dir.mkdir(exist_ok=True)
    if not layout.log_path.exists():
        layout.log_path.write_text(LOG_HEADER, encoding="utf-8")
    return layout


class _FileLog:
    """Append timestamped lines to the server log."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._lock = threading.Lock()

    def __call__(self, message: str) -> None:
        line = f"\n{time.strftime('%Y-%m-%d %H:%M:%S')} {message}"
        with self._lock, self.path.open("a", encoding="utf-8") as out:
            out.write(line)


def _serve(layout: ServerLayout, host: str) -> None:
    log = _FileLog(layout.log_path)
    pending_logins: dict[int, str] = {}
    undelivered: dict[str, dict[str, list]] = {}
    friend_directory: dict[str, tuple[str, str]] = {}

    library = FileLibrary(layout.file_dir)
    transfers = FileTransferService(library, layout.file_dir, log)
    registry = OnlineRegistry(layout.user_dir, pending_logins, undelivered, log)
    router = MessageRouter(registry, undelivered, log)
    messages = MessageService(router, log)
    friends = FriendFinderService(friend_directory, log)

    def admit(conn) -> None:
        threading.Thread(target=registry.accept, args=(conn,), daemon=True).start()

    connections = ConnectionListener(host, CONNECT_PORT, admit, log)
    stopped = threading.Event()
    try:
        transfers.start(host)
        messages.start(host)
        friends.start(host)
        connections.start()
        log("server started")
        while not stopped.wait(1.0):
            pass
    except KeyboardInterrupt:
        pass
    finally:
        connections.close()
        friends.close()
        messages.close()
        transfers.close()
        registry.close()
        library.save()
        log("server stopped")


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog="chatrelay", description="Chat relay server.")
    parser.add_argument("--root", default=".", help="directory holding the server data")
    parser.add_argument("--host", default="0.0.0.0", help="address to listen on")
    parser.add_argument(
        "--prepare-only",
        action="store_true",
        help="create the data layout and exit",
    )
    args = parser.parse_args(argv)
    layout = prepare_layout(args.root)
    if args.prepare_only:
        print(layout.root)
        return 0
    _serve(layout, args.host)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())