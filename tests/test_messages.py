import json
import socket
import time

import pytest

from chatrelay.messages import MessageRouter, MessageService


class StubRegistry:
    def __init__(self, online):
        self.online = dict(online)

    def __contains__(self, user_id):
        return user_id in self.online

    def address_of(self, user_id):
        return self.online[user_id]


def encode(message):
    return json.dumps(message).encode("utf-8")


def test_route_offline_stores_message():
    undelivered = {"bob": {}}
    router = MessageRouter(StubRegistry({}), undelivered)
    message = ["message", "alice", "bob", "hello", "10:00:00"]
    assert router.route(encode(message)) is None
    assert undelivered == {"bob": {"alice": [message]}}


def test_route_offline_appends_in_order():
    undelivered = {"bob": {}}
    router = MessageRouter(StubRegistry({}), undelivered)
    first = ["message", "alice", "bob", "one", "10:00:00"]
    second = ["message", "alice", "bob", "two", "10:00:01"]
    router.route(encode(first))
    router.route(encode(second))
    assert undelivered["bob"]["alice"] == [first, second]


def test_route_online_returns_address():
    undelivered = {"bob": {}}
    router = MessageRouter(StubRegistry({"bob": ("127.0.0.1", 4000)}), undelivered)
    message = ["message", "alice", "bob", "hello", "10:00:00"]
    assert router.route(encode(message)) == ("127.0.0.1", 4000)
    assert undelivered == {"bob": {}}


def test_route_unknown_recipient():
    router = MessageRouter(StubRegistry({}), {})
    with pytest.raises(KeyError):
        router.route(encode(["message", "alice", "nobody", "hello", "10:00:00"]))


@pytest.mark.parametrize("payload", [b"not json", b'["only"]', b'{"a": 1}', b"[1, 2, 3]"])
def test_route_malformed(payload):
    router = MessageRouter(StubRegistry({}), {"bob": {}})
    with pytest.raises(ValueError):
        router.route(payload)


@pytest.fixture
def receiver():
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sock.bind(("127.0.0.1", 0))
    sock.settimeout(5)
    yield sock
    sock.close()


def test_service_forwards_to_online_user(receiver):
    registry = StubRegistry({"bob": receiver.getsockname()})
    service = MessageService(MessageRouter(registry, {"bob": {}}), port=0)
    service.start("127.0.0.1")
    try:
        payload = encode(["message", "alice", "bob", "hello", "10:00:00"])
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sender:
            sender.sendto(payload, service.address)
        data, source = receiver.recvfrom(65535)
        assert data == payload
        assert source == service.address
    finally:
        service.close()


def test_service_stores_for_offline_user():
    undelivered = {"carol": {}}
    service = MessageService(MessageRouter(StubRegistry({}), undelivered), port=0)
    service.start("127.0.0.1")
    try:
        message = ["message", "alice", "carol", "hello", "10:00:00"]
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sender:
            sender.sendto(encode(message), service.address)
        deadline = time.monotonic() + 5
        while not undelivered["carol"] and time.monotonic() < deadline:
            time.sleep(0.02)
        assert undelivered["carol"] == {"alice": [message]}
    finally:
        service.close()


def test_service_send_directly(receiver):
    service = MessageService(MessageRouter(StubRegistry({}), {}), port=0)
    service.start("127.0.0.1")
    try:
        service.send(b"ping", receiver.getsockname())
        data, _ = receiver.recvfrom(65535)
        assert data == b"ping"
    finally:
        service.close()
    assert service.address is None


def test_send_before_start_fails():
    service = MessageService(MessageRouter(StubRegistry({}), {}), port=0)
    with pytest.raises(RuntimeError):
        service.send(b"ping", ("127.0.0.1", 9))