import uuid

import pytest
import zmq


def test_ping_pong(zmq_client):
    msg_id = str(uuid.uuid4())
    zmq_client.send_json({"cmd": "ping", "id": msg_id})
    resp = zmq_client.recv_json()
    assert resp["id"] == msg_id
    assert resp["status"] == "alive"
    assert isinstance(resp["uptime_s"], float)
    assert resp["configured"] is False


def test_ping_socket(zmq_ping_client):
    msg_id = str(uuid.uuid4())
    resp = zmq_ping_client.request({"cmd": "ping", "id": msg_id})
    assert resp["id"] == msg_id
    assert resp["status"] == "alive"


def test_ping_socket_rejects_bad_token(zmq_server):
    ctx = zmq.Context()
    sock = ctx.socket(zmq.REQ)
    sock.connect(f"tcp://127.0.0.1:{zmq_server.ping_port}")
    sock.send_json({"cmd": "ping", "id": "x", "_token": "wrong"})
    resp = sock.recv_json()
    assert resp["ok"] is False
    assert "token" in resp["error"]
    sock.close()
    ctx.term()


def test_unknown_command(zmq_client):
    msg_id = str(uuid.uuid4())
    zmq_client.send_json({"cmd": "foobar", "id": msg_id})
    resp = zmq_client.recv_json()
    assert resp["id"] == msg_id
    assert resp["ok"] is False
    assert "unknown" in resp["error"]


def test_missing_token_rejected(zmq_server):
    ctx = zmq.Context()
    sock = ctx.socket(zmq.REQ)
    sock.connect(f"tcp://127.0.0.1:{zmq_server.port}")
    sock.send_json({"cmd": "ping", "id": "no-token"})
    resp = sock.recv_json()
    assert resp["id"] == "no-token"
    assert resp["ok"] is False
    assert "auth token" in resp["error"]
    sock.close()
    ctx.term()


def test_malformed_json_answered(zmq_server):
    ctx = zmq.Context()
    sock = ctx.socket(zmq.REQ)
    sock.connect(f"tcp://127.0.0.1:{zmq_server.port}")
    sock.send(b"{not json")
    resp = sock.recv_json()
    assert resp["ok"] is False
    assert "Invalid message format" in resp["error"]
    sock.close()
    ctx.term()


def test_non_object_message_answered(zmq_server):
    ctx = zmq.Context()
    sock = ctx.socket(zmq.REQ)
    sock.connect(f"tcp://127.0.0.1:{zmq_server.port}")
    sock.send_json([1, 2, 3])
    resp = sock.recv_json()
    assert resp["ok"] is False
    sock.close()
    ctx.term()


def test_shutdown(zmq_server_disposable):
    ctx = zmq.Context()
    sock = ctx.socket(zmq.REQ)
    sock.connect(f"tcp://127.0.0.1:{zmq_server_disposable.port}")
    msg_id = str(uuid.uuid4())
    sock.send_json(
        {"cmd": "shutdown", "id": msg_id, "_token": zmq_server_disposable.token}
    )
    resp = sock.recv_json()
    assert resp["id"] == msg_id
    assert resp["ok"] is True
    assert zmq_server_disposable.running is False
    sock.close()
    ctx.term()


def test_ping_socket_non_object_keeps_server_alive(zmq_server_disposable):
    """A JSON array on the ping port gets an error reply; the loop keeps serving."""
    srv = zmq_server_disposable
    ctx = zmq.Context()
    sock = ctx.socket(zmq.REQ)
    sock.setsockopt(zmq.RCVTIMEO, 5_000)
    sock.connect(f"tcp://127.0.0.1:{srv.ping_port}")

    sock.send(b"[1]")
    resp = sock.recv_json()
    assert resp["ok"] is False
    assert "Invalid message format" in resp["error"]

    sock.send_json({"cmd": "ping", "id": "after", "_token": srv.token})
    resp = sock.recv_json()
    assert resp["id"] == "after"
    assert resp["status"] == "alive"
    assert srv.running is True
    sock.close()
    ctx.term()


@pytest.mark.parametrize("raw", [b"[1]", b"42", b'"ping"', b"null", b"\x80abc", b"{"])
def test_handle_ping_rejects_malformed(zmq_server, raw):
    resp = zmq_server.handle_ping(raw)
    assert resp == {"ok": False, "error": "Invalid message format"}


def test_handle_ping_checks_token(zmq_server):
    resp = zmq_server.handle_ping(b'{"id": "p", "_token": "wrong"}')
    assert resp["ok"] is False
    assert "token" in resp["error"]
