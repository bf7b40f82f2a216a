"""Decoded-frame sink via PyAV."""

import av
import numpy as np


class VideoWriter:
    """H.264 writer. yuv420p needs even dimensions, so odd sizes lose
    their last row/column."""

    def __init__(
        self, path: str, width: int, height: int, fps: int = 30, codec: str = "libx264"
    ):
        self.width = width - width % 2
        self.height = height - height % 2
        if self.width <= 0 or self.height <= 0:
            raise ValueError(f"frame size {width}x{height} too small to encode")
        self.container = av.open(path, mode="w")
        self.stream = self.container.add_stream(codec, rate=fps)
        self.stream.width = self.width
        self.stream.height = self.height
        self.stream.pix_fmt = "yuv420p"
        self.frame_count = 0

    def write_frame(self, frame_rgba: np.ndarray):
        """Write an RGBA (or RGB) frame."""
        rgb = np.ascontiguousarray(frame_rgba[: self.height, : self.width, :3])
        frame = av.VideoFrame.from_ndarray(rgb, format="rgb24")
        for packet in self.stream.encode(frame):
            self.container.mux(packet)
        self.frame_count += 1

    def close(self):
        for packet in self.stream.encode():
            self.container.mux(packet)
        self.container.close()
