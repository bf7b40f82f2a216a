"""Scrambled-frame source via PyAV."""

from typing import Iterator

import av
import numpy as np


class VideoReader:
    """Read-only frame source. Frames are RGBA uint8 (H, W, 4)."""

    def __init__(self, path: str):
        self.path = path
        self.container = av.open(path)
        self.stream = self.container.streams.video[0]
        self.stream.thread_type = "AUTO"
        self.fps = float(self.stream.average_rate) if self.stream.average_rate else 0.0
        if self.stream.duration is not None:
            self.duration = float(self.stream.duration * self.stream.time_base)
        elif self.container.duration:
            self.duration = float(self.container.duration / av.time_base)
        else:
            self.duration = 0.0
        self.width = self.stream.width
        self.height = self.stream.height
        self.frame_count = self.stream.frames or int(self.duration * self.fps)
        self.current_frame: np.ndarray | None = None
        self._last_decoded_index: int = -1
        self._decoder = self.container.decode(video=0)

    def decode_frame(self, frame_index: int) -> np.ndarray:
        """Decode a frame by index. Returns RGBA uint8 array.

        Sequential access (index == last + 1) advances the open decoder;
        anything else seeks first.
        """
        if frame_index == self._last_decoded_index + 1:
            return self._decode_next_sequential(frame_index)
        return self._decode_with_seek(frame_index)

    def frames(self) -> Iterator[np.ndarray]:
        """Yield every frame from the start, in presentation order."""
        index = 0
        while True:
            try:
                yield self.decode_frame(index)
            except IndexError:
                return
            index += 1

    def _store(self, frame, frame_index: int) -> np.ndarray:
        self._last_decoded_index = frame_index
        self.current_frame = frame.to_ndarray(format="rgba")
        return self.current_frame

    def _decode_next_sequential(self, frame_index: int) -> np.ndarray:
        try:
            frame = next(self._decoder)
        except StopIteration:
            raise IndexError(f"Frame {frame_index} not found (end of stream)")
        return self._store(frame, frame_index)

    def _decode_with_seek(self, frame_index: int) -> np.ndarray:
        if self.fps <= 0:
            raise IndexError(f"Frame {frame_index} not seekable (unknown frame rate)")
        time_s = frame_index / self.fps
        self.container.seek(int(time_s / self.stream.time_base), stream=self.stream)
        self._decoder = self.container.decode(video=0)
        for frame in self._decoder:
            if frame.pts is not None:
                current_idx = int(float(frame.pts * self.stream.time_base) * self.fps)
                if current_idx >= frame_index:
                    return self._store(frame, frame_index)
        raise IndexError(f"Frame {frame_index} not found")

    def close(self):
        self.container.close()
