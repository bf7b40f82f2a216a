import collections
import json
import logging
import time
import uuid

import sentry_sdk
import zmq

from config.schema import ConfigurationError, RemapConfig
from engine.export import ExportManager
from engine.resample import Resampler
from security import (
    IMAGE_EXTENSIONS,
    VIDEO_EXTENSIONS,
    validate_frame_count,
    validate_output_path,
    validate_upload,
)
from video.ingest import geometry_warnings, probe
from video.reader import VideoReader
from video.still import encode_preview, load_rgba, to_base64

logger = logging.getLogger(__name__)

INTERNAL_ERROR = "Internal processing error"


class ZMQServer:
    """REQ/REP command server around one Resampler.

    Every message carries ``_token``. Health checks go to a separate ping
    socket. ``configure`` with ``wait: false`` builds the mapping on a
    background thread so the loop keeps answering meanwhile.
    """

    def __init__(self, resampler: Resampler | None = None):
        self.context = zmq.Context()
        self.socket = self.context.socket(zmq.REP)
        self.socket.setsockopt(zmq.MAXMSGSIZE, 1_048_576)  # 1 MB limit
        self.port = self.socket.bind_to_random_port("tcp://127.0.0.1")
        self.ping_socket = self.context.socket(zmq.REP)
        self.ping_socket.setsockopt(zmq.MAXMSGSIZE, 4096)  # 4 KB limit (pings only)
        self.ping_port = self.ping_socket.bind_to_random_port("tcp://127.0.0.1")
        self.token = str(uuid.uuid4())
        self.start_time = time.time()
        self.running = False
        self.resampler = resampler if resampler is not None else Resampler()
        self.readers: collections.OrderedDict[str, VideoReader] = (
            collections.OrderedDict()
        )
        self._max_readers = 4
        self.last_frame_ms = 0.0
        self.export_manager = ExportManager()

    def reset_state(self):
        """Drop mapping, readers and exports without closing sockets.

        Used by session-scoped test fixtures between tests.
        """
        for reader in self.readers.values():
            reader.close()
        self.readers.clear()
        self.resampler.wait(timeout=5.0)
        self.resampler = Resampler()
        self.export_manager.cancel()
        self.export_manager = ExportManager()
        self.last_frame_ms = 0.0

    def _validate_token(self, message: dict) -> str | None:
        """Validate auth token. Returns error message or None if valid."""
        if message.get("_token") != self.token:
            return "invalid or missing auth token"
        return None

    def _make_ping_response(self, msg_id: str | None) -> dict:
        return {
            "id": msg_id,
            "status": "alive",
            "uptime_s": round(time.time() - self.start_time, 1),
            "last_frame_ms": self.last_frame_ms,
            "configured": self.resampler.surface is not None,
        }

    def handle_ping(self, raw: bytes) -> dict:
        """Answer one ping-socket message. Always returns a reply."""
        try:
            message = json.loads(raw)
        except ValueError:
            return {"ok": False, "error": "Invalid message format"}
        if not isinstance(message, dict):
            return {"ok": False, "error": "Invalid message format"}
        msg_id = message.get("id")
        token_err = self._validate_token(message)
        if token_err:
            return {"id": msg_id, "ok": False, "error": token_err}
        return self._make_ping_response(msg_id)

    def handle_message(self, message: dict) -> dict:
        cmd = message.get("cmd")
        msg_id = message.get("id")

        token_err = self._validate_token(message)
        if token_err:
            return {"id": msg_id, "ok": False, "error": token_err}

        if cmd == "ping":
            return self._make_ping_response(msg_id)
        elif cmd == "shutdown":
            self.running = False
            return {"id": msg_id, "ok": True}
        elif cmd == "configure":
            return self._handle_configure(message, msg_id)
        elif cmd == "mapping_info":
            return self._handle_mapping_info(msg_id)
        elif cmd == "ingest":
            return self._handle_ingest(message, msg_id)
        elif cmd == "decode_frame":
            return self._handle_decode_frame(message, msg_id)
        elif cmd == "decode_image":
            return self._handle_decode_image(message, msg_id)
        elif cmd == "export_start":
            return self._handle_export_start(message, msg_id)
        elif cmd == "export_status":
            status = self.export_manager.get_status()
            return {"id": msg_id, "ok": True, **status}
        elif cmd == "export_cancel":
            return {"id": msg_id, "ok": True, "cancelled": self.export_manager.cancel()}
        elif cmd == "render_stats":
            return {"id": msg_id, "ok": True, "stats": self.resampler.stats()}
        else:
            return {"id": msg_id, "ok": False, "error": f"unknown: {cmd}"}

    def _handle_configure(self, message: dict, msg_id: str | None) -> dict:
        direction = message.get("direction", "decode")
        sampling = message.get("sampling", "nearest")
        try:
            config = RemapConfig.from_dict(message.get("config"))
        except ConfigurationError as e:
            return {"id": msg_id, "ok": False, "error": str(e)}

        try:
            if (
                direction != self.resampler.direction
                or sampling != self.resampler.sampling
            ):
                resampler = Resampler(direction=direction, sampling=sampling)
            else:
                resampler = self.resampler
        except ValueError as e:
            return {"id": msg_id, "ok": False, "error": str(e)}

        try:
            if message.get("wait", True):
                surface = resampler.reconfigure(config)
                self.resampler = resampler
                return {"id": msg_id, "ok": True, "mapping": surface.info()}
            resampler.reconfigure_async(config)
            self.resampler = resampler
            return {"id": msg_id, "ok": True, "pending": True}
        except Exception as e:
            sentry_sdk.capture_exception(e)
            logger.error("Configure handler error: %s", type(e).__name__)
            return {"id": msg_id, "ok": False, "error": INTERNAL_ERROR}

    def _handle_mapping_info(self, msg_id: str | None) -> dict:
        pending = not self.resampler.wait(timeout=0)
        surface = self.resampler.surface
        if surface is None:
            if pending:
                return {"id": msg_id, "ok": True, "pending": True}
            if self.resampler.last_error is not None:
                return {"id": msg_id, "ok": False, "error": "mapping build failed"}
            return {"id": msg_id, "ok": False, "error": "not configured"}
        return {
            "id": msg_id,
            "ok": True,
            "pending": pending,
            "direction": self.resampler.direction,
            "mapping": surface.info(),
        }

    def _require_mapping(self, msg_id: str | None) -> dict | None:
        if self.resampler.surface is None:
            return {"id": msg_id, "ok": False, "error": "not configured"}
        return None

    def _handle_ingest(self, message: dict, msg_id: str | None) -> dict:
        path = message.get("path")
        if not path:
            return {"id": msg_id, "ok": False, "error": "missing path"}

        errors = validate_upload(path, VIDEO_EXTENSIONS)
        if errors:
            return {"id": msg_id, "ok": False, "error": "; ".join(errors)}

        result = probe(path)
        result["id"] = msg_id

        if result.get("ok") and result.get("frame_count", 0) > 0:
            fc_errors = validate_frame_count(result["frame_count"])
            if fc_errors:
                return {"id": msg_id, "ok": False, "error": "; ".join(fc_errors)}

        if result.get("ok"):
            config = self.resampler.config
            if config is not None:
                result["warnings"] = geometry_warnings(result, config)
            self._get_reader(path)

        return result

    def _handle_decode_frame(self, message: dict, msg_id: str | None) -> dict:
        path = message.get("path")
        if not path:
            return {"id": msg_id, "ok": False, "error": "missing path"}

        errors = validate_upload(path, VIDEO_EXTENSIONS)
        if errors:
            return {"id": msg_id, "ok": False, "error": "; ".join(errors)}

        missing = self._require_mapping(msg_id)
        if missing:
            return missing

        try:
            reader = self._get_reader(path)
            if "frame_index" in message:
                frame_index = int(message["frame_index"])
            else:
                frame_index = int(float(message.get("time", 0.0)) * reader.fps)

            if frame_index < 0:
                return {
                    "id": msg_id,
                    "ok": False,
                    "error": "frame_index must be non-negative",
                }
            if reader.frame_count and frame_index >= reader.frame_count:
                return {
                    "id": msg_id,
                    "ok": False,
                    "error": f"frame_index {frame_index} exceeds frame count {reader.frame_count}",
                }

            t0 = time.time()
            frame = reader.decode_frame(frame_index)
            output = self.resampler.render(frame)
            jpeg_bytes = encode_preview(output)
            self.last_frame_ms = round((time.time() - t0) * 1000, 2)
            return {
                "id": msg_id,
                "ok": True,
                "frame_index": frame_index,
                "frame_data": to_base64(jpeg_bytes),
                "width": output.shape[1],
                "height": output.shape[0],
            }
        except Exception as e:
            sentry_sdk.capture_exception(e)
            logger.error("Decode frame handler error: %s", type(e).__name__)
            return {"id": msg_id, "ok": False, "error": INTERNAL_ERROR}

    def _handle_decode_image(self, message: dict, msg_id: str | None) -> dict:
        path = message.get("path")
        if not path:
            return {"id": msg_id, "ok": False, "error": "missing path"}

        errors = validate_upload(path, IMAGE_EXTENSIONS)
        if errors:
            return {"id": msg_id, "ok": False, "error": "; ".join(errors)}

        missing = self._require_mapping(msg_id)
        if missing:
            return missing

        try:
            t0 = time.time()
            output = self.resampler.render(load_rgba(path))
            # Scrambled output keeps transparent gaps, so it needs alpha
            fmt = "PNG" if self.resampler.direction == "scramble" else "JPEG"
            data = encode_preview(output, fmt=fmt)
            self.last_frame_ms = round((time.time() - t0) * 1000, 2)
            return {
                "id": msg_id,
                "ok": True,
                "format": fmt.lower(),
                "frame_data": to_base64(data),
                "width": output.shape[1],
                "height": output.shape[0],
            }
        except Exception as e:
            sentry_sdk.capture_exception(e)
            logger.error("Decode image handler error: %s", type(e).__name__)
            return {"id": msg_id, "ok": False, "error": INTERNAL_ERROR}

    def _handle_export_start(self, message: dict, msg_id: str | None) -> dict:
        input_path = message.get("input_path")
        output_path = message.get("output_path")

        if not input_path:
            return {"id": msg_id, "ok": False, "error": "missing input_path"}
        if not output_path:
            return {"id": msg_id, "ok": False, "error": "missing output_path"}

        errors = validate_upload(input_path, VIDEO_EXTENSIONS)
        if errors:
            return {"id": msg_id, "ok": False, "error": "; ".join(errors)}

        out_errors = validate_output_path(output_path)
        if out_errors:
            return {"id": msg_id, "ok": False, "error": "; ".join(out_errors)}

        if "config" in message:
            try:
                config = RemapConfig.from_dict(message["config"])
            except ConfigurationError as e:
                return {"id": msg_id, "ok": False, "error": str(e)}
        else:
            config = self.resampler.config
            if config is None:
                return {"id": msg_id, "ok": False, "error": "not configured"}

        try:
            self.export_manager.start(
                input_path, output_path, config, direction=self.resampler.direction
            )
            return {"id": msg_id, "ok": True}
        except RuntimeError as e:
            return {"id": msg_id, "ok": False, "error": str(e)}
        except Exception as e:
            sentry_sdk.capture_exception(e)
            logger.error("Export start error: %s", type(e).__name__)
            return {"id": msg_id, "ok": False, "error": INTERNAL_ERROR}

    def _get_reader(self, path: str) -> VideoReader:
        if path in self.readers:
            self.readers.move_to_end(path)
            return self.readers[path]
        while len(self.readers) >= self._max_readers:
            _, oldest = self.readers.popitem(last=False)
            oldest.close()
        reader = VideoReader(path)
        self.readers[path] = reader
        return reader

    def run(self):
        self.running = True
        poller = zmq.Poller()
        poller.register(self.socket, zmq.POLLIN)
        poller.register(self.ping_socket, zmq.POLLIN)
        while self.running:
            events = dict(poller.poll(timeout=500))

            # Ping first, it is cheap
            if self.ping_socket in events:
                try:
                    reply = self.handle_ping(self.ping_socket.recv())
                    self.ping_socket.send_json(reply)
                except zmq.ZMQError:
                    logger.error("ZMQ error on ping socket")
                    break

            if self.socket in events:
                try:
                    message = json.loads(self.socket.recv())
                except ValueError:
                    # REP must reply before the next recv
                    self.socket.send_json(
                        {"ok": False, "error": "Invalid message format"}
                    )
                    continue
                except zmq.ZMQError:
                    logger.error("ZMQ error on main socket")
                    break

                if not isinstance(message, dict):
                    self.socket.send_json(
                        {"ok": False, "error": "Invalid message format"}
                    )
                    continue

                try:
                    response = self.handle_message(message)
                except Exception as e:
                    sentry_sdk.capture_exception(e)
                    logger.error("Unhandled handler error: %s", type(e).__name__)
                    response = {"ok": False, "error": INTERNAL_ERROR}

                self.socket.send_json(response)
        self.close()

    def close(self):
        self.export_manager.cancel()
        for reader in self.readers.values():
            reader.close()
        self.readers.clear()
        self.ping_socket.close()
        self.socket.close()
        self.context.term()
