# chatrelay

A small chat relay server. Clients go online over a TCP connection that
they keep open, exchange chat messages over UDP, look up other users by
id and upload or download files. Messages for users who are offline are
kept in memory and handed over the next time they connect.

Only the standard library is used at run time.

## Installing

```
pip install .
```

To run the tests:

```
pip install .[test]
pytest
```

## The command

```
chatrelay --root /srv/chat --prepare-only
```

creates the data layout under `--root` (default: the current directory)
if it is not there yet, prints the root and exits:

- `AllFile/` holds uploaded files; a newly created one gets an empty
  `AllFile/keyAndinfo.json`, the index of stored files.
- `AllUserInfo/` holds per-user data; a newly created one gets an empty
  `AllUserInfo/AllUserBaseInfo.json`.
- `ServerFile/` is created empty.
- `log.txt` is started with a header line if missing.

```
chatrelay --root /srv/chat --host 127.0.0.1
```

prepares the layout the same way and then runs the server on `--host`
(default `0.0.0.0`) until interrupted with Ctrl-C. Every service appends
timestamped lines to `log.txt`. On shutdown the file index is saved.

From Python, `prepare_layout(root)` in `chatrelay.layout` does the
preparing and returns a `ServerLayout` naming every path;
`ServerLayout.from_root(root)` computes the paths without touching the
disk.

## Services

Each part of the server is an object that is started on a host address
and closed when done.

| Service | Module | Transport | Port |
| --- | --- | --- | --- |
| `ConnectionListener` (clients going online) | `chatrelay.listener` | TCP | given by the caller; the command uses 8888 |
| `MessageService` (chat messages) | `chatrelay.messages` | UDP | 10016 |
| `FileTransferService` upload | `chatrelay.transfer` | TCP | 10018 |
| `FileTransferService` download | `chatrelay.transfer` | TCP | 10019 |
| `FriendFinderService` (user lookup) | `chatrelay.friends` | UDP | 10030 |

The UDP services and `FileTransferService` take their ports as
constructor arguments; after `start`, `MessageService.address` and
`FriendFinderService.address` hold the bound address, and
`ConnectionListener.address` does the same for the listener.

### Going online

`ConnectionListener` accepts TCP connections on a background thread and
passes each socket to a callback. `OnlineRegistry.accept(conn)` in
`chatrelay.online` is the usual one:

1. The client sends a login key. The registry removes it from
   `pending_logins` (a `dict[int, str]` of key to user id); an unknown
   key closes the connection.
2. The registry sends the size of the user's undelivered messages, waits
   for an acknowledgement and sends them as a JSON object keyed by
   sender, then clears them.
3. If the client then sends `GetAllInfo`, the registry sends the user's
   saved state from `AllUserInfo/<id>/<id>.json` the same way (size,
   acknowledgement, data).

The user then stays in the registry as an `OnlineUser` until the
connection closes or `OnlineRegistry.disconnect(user_id)` is called.
While online the client may push its state: it sends the size, is
answered `send`, sends the data and is answered `getok` (and the data is
written to `AllUserInfo/<id>/<id>.json`) or `getfaile`.

`user_id in registry` and `registry.address_of(user_id)` tell whether a
user is online and from where.

### Messages

A chat message is a JSON array whose second and third items are the
sender and recipient ids. `MessageRouter.route(payload)` returns the
recipient's address when they are online; otherwise it appends the
message under the sender in the recipient's undelivered messages and
returns `None`. A malformed message raises `ValueError`; a recipient
with no entry in the undelivered map raises `KeyError`.
`MessageService` receives datagrams, routes them and forwards those with
an address; `MessageService.send(payload, address)` sends one datagram.

### Friend lookup

`find_friend(request, directory)` takes a user id and a mapping of id to
`(name, picture)` and answers with a JSON array starting with
`"findfriendreslute"`, followed by the id, name and picture when the id
is known. `FriendFinderService` answers such requests over UDP.

### Files

`FileLibrary` in `chatrelay.filelib` keeps the index of stored files as
`FileInfo(suffix, size, time)` entries keyed by a random number below
100000, plus a stock of unused keys prepared when it is opened. It saves
its index with `save()` or on leaving a `with` block.

For an upload, `receive_file` reads a JSON array `[suffix, size]`,
answers with a fresh key, receives the content into
`<directory>/<key><suffix>`, replies `success` or `faile`, and returns
the key (or `None`). For a download, `send_file` reads a key, sends the
file's size, waits for the client's acknowledgement and sends the
content in chunks; an unknown key raises `KeyError`.
`FileTransferService` runs both on their own ports with a worker pool.

```python
from chatrelay.filelib import FileLibrary
from chatrelay.layout import prepare_layout
from chatrelay.transfer import FileTransferService

layout = prepare_layout("/srv/chat")
with FileLibrary(layout.file_dir, 50) as library:
    service = FileTransferService(library, layout.file_dir, print, 10018, 10019)
    service.start("127.0.0.1")
    ...
    service.close()
```

## What it does not do

- There is no login or registration service and no store of user
  accounts or passwords. Nothing in the package puts keys into
  `pending_logins`, so under the `chatrelay` command no client can go
  online; a program embedding the registry has to fill it.
- The command starts with an empty undelivered-message map and an empty
  friend directory, so offline messages are dropped as having an unknown
  recipient and every friend lookup answers "not found". Undelivered
  messages are held in memory only.
- There is no graphical or interactive console; the server is controlled
  only through the command-line options above.