"""Approximate-time pairing of image and camera-info messages."""

from __future__ import annotations

import threading
from collections import deque
from typing import Callable, Optional

from .msgs import CameraInfoMsg, ImageMsg

PairCallback = Callable[[ImageMsg, CameraInfoMsg], None]

_IMAGE = 0
_INFO = 1


class ApproximateTimeSynchronizer:
    """Pair messages from two inputs whose stamps lie within ``slop`` seconds.

    Each input keeps at most ``queue_size`` pending messages; the oldest is
    dropped when the queue is full. A match consumes the two paired messages
    and everything older on either side, so unmatched messages never hold
    back the stream.
    """

    def __init__(self, callback: PairCallback, queue_size: int = 3, slop: float = 0.1):
        if queue_size < 1:
            raise ValueError("queue_size must be >= 1")
        if slop < 0:
            raise ValueError("slop must be >= 0")
        self.callback = callback
        self.queue_size = queue_size
        self.slop = slop
        self.dropped = 0
        self._queues = (deque(maxlen=queue_size), deque(maxlen=queue_size))
        self._lock = threading.Lock()

    def add_image(self, msg: ImageMsg) -> None:
        self._add(_IMAGE, msg)

    def add_camera_info(self, msg: CameraInfoMsg) -> None:
        self._add(_INFO, msg)

    def pending(self) -> tuple[int, int]:
        with self._lock:
            return len(self._queues[_IMAGE]), len(self._queues[_INFO])

    def reset(self) -> None:
        with self._lock:
            for q in self._queues:
                q.clear()

    def _add(self, index: int, msg) -> None:
        with self._lock:
            queue = self._queues[index]
            if len(queue) == queue.maxlen:
                self.dropped += 1
            queue.append(msg)
            pair = self._match(index, msg)
        if pair is not None:
            self.callback(*pair)

    def _match(self, index: int, msg) -> Optional[tuple[ImageMsg, CameraInfoMsg]]:
        other = self._queues[1 - index]
        if not other:
            return None
        stamp = msg.header.stamp
        best = min(other, key=lambda m: abs(m.header.stamp - stamp))
        if abs(best.header.stamp - stamp) > self.slop:
            return None

        self._consume(index, stamp)
        self._consume(1 - index, best.header.stamp)
        if index == _IMAGE:
            return msg, best
        return best, msg

    def _consume(self, index: int, stamp: float) -> None:
        queue = self._queues[index]
        kept = [m for m in queue if m.header.stamp > stamp]
        self.dropped += len(queue) - len(kept) - 1
        queue.clear()
        queue.extend(kept)
