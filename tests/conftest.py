import os
import shutil
import threading
import time
import uuid
from pathlib import Path

import numpy as np
import pytest
import zmq

from config.schema import RemapConfig
from engine.mapping import build_scramble_map
from engine.resample import sample_dependent
from video.still import save_image
from video.writer import VideoWriter
from zmq_server import ZMQServer

FIXTURE_DIR = Path.home() / ".cache" / "tileremap" / "test-fixtures"

# 8x6 grid of 16px cells: frame and region grids coincide exactly
SMALL_CONFIG = {
    "seed": "fixture-seed",
    "width": 128,
    "height": 96,
    "cell_size_x": 16,
    "cell_size_y": 16,
    "regions": [[0, 0, 128, 96]],
}


def make_gradient_frame(width: int, height: int, shift: int = 0) -> np.ndarray:
    """RGBA frame whose every pixel is distinguishable by (R, G)."""
    frame = np.zeros((height, width, 4), dtype=np.uint8)
    xs = np.arange(width, dtype=np.int64)
    ys = np.arange(height, dtype=np.int64)
    frame[:, :, 0] = (xs * 255 // max(1, width - 1))[np.newaxis, :]
    frame[:, :, 1] = (ys * 255 // max(1, height - 1))[:, np.newaxis]
    frame[:, :, 2] = (128 + shift) % 256
    frame[:, :, 3] = 255
    return frame


def _wait_for_server(srv: ZMQServer, timeout: float = 2.0) -> bool:
    """Ping the server until it responds or timeout expires."""
    ctx = zmq.Context()
    sock = ctx.socket(zmq.REQ)
    sock.setsockopt(zmq.LINGER, 0)
    sock.setsockopt(zmq.RCVTIMEO, 500)
    sock.connect(f"tcp://127.0.0.1:{srv.port}")
    deadline = time.monotonic() + timeout
    alive = False
    while time.monotonic() < deadline:
        try:
            sock.send_json({"cmd": "ping", "id": "health", "_token": srv.token})
            resp = sock.recv_json()
            if resp.get("status") == "alive":
                alive = True
                break
        except zmq.Again:
            time.sleep(0.05)
    sock.close()
    ctx.term()
    return alive


@pytest.fixture(scope="session")
def _zmq_server_session():
    """Start ONE ZMQ server per xdist worker (session-scoped)."""
    srv = ZMQServer()
    thread = threading.Thread(target=srv.run, daemon=True)
    thread.start()
    if not _wait_for_server(srv):
        pytest.skip("ZMQ server failed to start within 2s")
    yield srv
    srv.running = False
    time.sleep(0.6)


@pytest.fixture
def zmq_server(_zmq_server_session):
    """Function-scoped wrapper: resets state between tests, shares session server."""
    _zmq_server_session.reset_state()
    yield _zmq_server_session


@pytest.fixture
def zmq_server_disposable():
    """Fresh server per test, for tests that shut it down."""
    srv = ZMQServer()
    thread = threading.Thread(target=srv.run, daemon=True)
    thread.start()
    if not _wait_for_server(srv):
        pytest.skip("ZMQ server failed to start within 2s")
    yield srv
    srv.running = False
    time.sleep(0.6)


class AuthenticatedZmqClient:
    """Wraps a ZMQ REQ socket and auto-injects the auth token."""

    def __init__(self, sock: zmq.Socket, token: str):
        self._sock = sock
        self._token = token

    def send_json(self, msg: dict) -> None:
        msg["_token"] = self._token
        self._sock.send_json(msg)

    def recv_json(self) -> dict:
        return self._sock.recv_json()

    def request(self, msg: dict) -> dict:
        self.send_json(msg)
        return self.recv_json()

    def close(self) -> None:
        self._sock.close()


@pytest.fixture
def zmq_client(zmq_server):
    """REQ socket connected to the test server (auto-injects auth token)."""
    ctx = zmq.Context()
    sock = ctx.socket(zmq.REQ)
    sock.setsockopt(zmq.RCVTIMEO, 10_000)
    sock.connect(f"tcp://127.0.0.1:{zmq_server.port}")
    client = AuthenticatedZmqClient(sock, zmq_server.token)
    yield client
    sock.close()
    ctx.term()


@pytest.fixture
def zmq_ping_client(zmq_server):
    """REQ socket connected to the test server's ping port."""
    ctx = zmq.Context()
    sock = ctx.socket(zmq.REQ)
    sock.connect(f"tcp://127.0.0.1:{zmq_server.ping_port}")
    client = AuthenticatedZmqClient(sock, zmq_server.token)
    yield client
    sock.close()
    ctx.term()


@pytest.fixture
def small_config() -> RemapConfig:
    return RemapConfig.from_dict(SMALL_CONFIG)


@pytest.fixture(scope="session")
def original_frame() -> np.ndarray:
    return make_gradient_frame(SMALL_CONFIG["width"], SMALL_CONFIG["height"])


@pytest.fixture(scope="session")
def scrambled_frame(original_frame) -> np.ndarray:
    surface = build_scramble_map(RemapConfig.from_dict(SMALL_CONFIG))
    return sample_dependent(original_frame, surface)


@pytest.fixture(scope="session")
def scrambled_image_path(scrambled_frame):
    """Lossless scrambled still under ~/ (required by validate_upload)."""
    FIXTURE_DIR.mkdir(parents=True, exist_ok=True)
    path = str(FIXTURE_DIR / f"scrambled_{uuid.uuid4().hex[:8]}.png")
    save_image(scrambled_frame, path)
    yield path
    os.unlink(path)


@pytest.fixture(scope="session")
def scrambled_video_path():
    """Synthetic 1s 128x96 scrambled video under ~/."""
    config = RemapConfig.from_dict(SMALL_CONFIG)
    surface = build_scramble_map(config)

    FIXTURE_DIR.mkdir(parents=True, exist_ok=True)
    path = str(FIXTURE_DIR / f"scrambled_{uuid.uuid4().hex[:8]}.mp4")
    w = VideoWriter(path, config.width, config.height, fps=30)
    for i in range(30):
        frame = make_gradient_frame(config.width, config.height, shift=i * 4)
        w.write_frame(sample_dependent(frame, surface))
    w.close()
    yield path
    os.unlink(path)


@pytest.fixture
def home_tmp_path():
    """tmp_path equivalent under ~/ for tests that go through validate_upload."""
    base = Path.home() / ".cache" / "tileremap" / "test-tmp"
    base.mkdir(parents=True, exist_ok=True)
    d = base / f"test_{uuid.uuid4().hex[:8]}"
    d.mkdir()
    yield d
    shutil.rmtree(d, ignore_errors=True)
