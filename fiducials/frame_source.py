"""Camera feeds and the synchronized, reference-counted frame source.

A feed produces image and camera-info messages:
- Device cameras (USB via V4L2)
- Synthetic black frames for dry runs

The frame source pairs them with an approximate-time synchronizer and only
keeps the feed running while at least one consumer holds a subscription.
"""

from __future__ import annotations

import logging
import re
import threading
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Optional

import cv2
import numpy as np

from .calib import load_calib
from .msgs import CameraInfoMsg, Header, ImageMsg
from .sync import ApproximateTimeSynchronizer, PairCallback

ImageCallback = Callable[[ImageMsg], None]
InfoCallback = Callable[[CameraInfoMsg], None]


class CameraFeed(ABC):
    """Abstract upstream of image and camera-info messages."""

    @abstractmethod
    def start(self, on_image: ImageCallback, on_camera_info: InfoCallback) -> None:
        """Start delivering messages to the callbacks."""
        ...

    @abstractmethod
    def stop(self) -> None:
        """Stop delivering messages and release resources."""
        ...

    @property
    @abstractmethod
    def running(self) -> bool: ...


class _ThreadedFeed(CameraFeed):
    """Runs ``_grab`` in a background thread until stopped.

    The capture thread owns the device between ``_open`` and ``_close``; a
    feed is not restarted while an earlier capture thread is still alive.
    """

    stop_timeout = 2.0

    def __init__(self, fps: int, frame_id: str):
        self.fps = fps
        self.frame_id = frame_id
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._on_image: Optional[ImageCallback] = None
        self._on_info: Optional[InfoCallback] = None
        self.log = logging.getLogger(__name__)

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive() and not self._stop_event.is_set()

    def start(self, on_image: ImageCallback, on_camera_info: InfoCallback) -> None:
        if self.running:
            return
        stale = self._thread
        if stale is not None:
            stale.join(timeout=self.stop_timeout)
            if stale.is_alive():
                raise RuntimeError(f"{type(self).__name__}: previous capture thread still stopping")
            self._thread = None

        self._on_image = on_image
        self._on_info = on_camera_info
        self._open()
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name=type(self).__name__, daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        thread = self._thread
        if thread is None or thread is threading.current_thread():
            return
        thread.join(timeout=self.stop_timeout)
        if thread.is_alive():
            self.log.warning("%s capture thread did not stop within %.1fs", thread.name, self.stop_timeout)
            return
        self._thread = None

    def _loop(self) -> None:
        try:
            while not self._stop_event.is_set():
                try:
                    img = self._grab()
                except Exception:
                    self.log.exception("frame grab failed")
                    break
                if img is None:
                    continue
                header = Header(stamp=time.time(), frame_id=self.frame_id)
                try:
                    self._on_image(ImageMsg(header, img))
                    self._on_info(self._camera_info(header))
                except Exception:
                    self.log.exception("frame callback failed")
        finally:
            self._close()

    def _open(self) -> None:
        return None

    def _close(self) -> None:
        return None

    @abstractmethod
    def _grab(self) -> Optional[np.ndarray]: ...

    @abstractmethod
    def _camera_info(self, header: Header) -> CameraInfoMsg: ...


class DeviceCameraFeed(_ThreadedFeed):
    """USB camera feed using OpenCV's V4L2 interface.

    Intrinsics come from an OpenCV calibration file and are attached to every
    image as a camera-info message with the same stamp.
    """

    def __init__(
        self,
        device: int | str,
        fps: int,
        width: int,
        height: int,
        calibration_path: str,
        frame_id: str = "camera_optical_frame",
    ):
        super().__init__(fps, frame_id)
        self.device = device
        self.width = width
        self.height = height
        self.calibration_path = calibration_path
        self.cap: Any = None
        self._K: Optional[list[float]] = None
        self._size = (width, height)

    def _open(self) -> None:
        K, self._size = load_calib(self.calibration_path)
        self._K = [float(v) for v in K.reshape(9)]

        if isinstance(self.device, int):
            self.cap = cv2.VideoCapture(self.device, cv2.CAP_V4L2)
        else:
            dev_str = str(self.device)
            match = re.match(r"^/dev/video(\d+)$", dev_str)
            if match:
                self.cap = cv2.VideoCapture(int(match.group(1)), cv2.CAP_V4L2)
            else:
                self.cap = cv2.VideoCapture(dev_str)

        self.cap.set(cv2.CAP_PROP_FRAME_WIDTH, self.width)
        self.cap.set(cv2.CAP_PROP_FRAME_HEIGHT, self.height)
        self.cap.set(cv2.CAP_PROP_FPS, self.fps)

        if not self.cap.isOpened():
            self.cap = None
            raise RuntimeError(f"Failed to open camera: {self.device}")

    def _close(self) -> None:
        if self.cap is not None:
            self.cap.release()
            self.cap = None

    def _grab(self) -> Optional[np.ndarray]:
        ok, img = self.cap.read()
        if not ok:
            time.sleep(0.01)
            return None
        return img

    def _camera_info(self, header: Header) -> CameraInfoMsg:
        return CameraInfoMsg(header, list(self._K), width=self._size[0], height=self._size[1])


class SyntheticCameraFeed(_ThreadedFeed):
    """Black frames at a fixed rate with a fixed camera matrix."""

    def __init__(
        self,
        fps: int,
        width: int,
        height: int,
        camera_matrix: Optional[np.ndarray] = None,
        frame_id: str = "camera_optical_frame",
    ):
        super().__init__(fps, frame_id)
        self.width = width
        self.height = height
        if camera_matrix is None:
            camera_matrix = np.array([[width, 0.0, width / 2.0],
                                      [0.0, width, height / 2.0],
                                      [0.0, 0.0, 1.0]])
        self._K = [float(v) for v in np.asarray(camera_matrix).reshape(9)]
        self._last = 0.0

    def _open(self) -> None:
        self._last = time.time()

    def _grab(self) -> Optional[np.ndarray]:
        if self.fps > 0:
            wait = max(0.0, (1.0 / self.fps) - (time.time() - self._last))
            if self._stop_event.wait(wait):
                return None
        self._last = time.time()
        return np.zeros((self.height, self.width, 3), dtype=np.uint8)

    def _camera_info(self, header: Header) -> CameraInfoMsg:
        return CameraInfoMsg(header, list(self._K), width=self.width, height=self.height)


class SubscriptionHandle:
    """One consumer's claim on the frame source; release with close() or ``with``."""

    def __init__(self, release: Callable[[], None]):
        self._release = release
        self._closed = False
        self._lock = threading.Lock()

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
        self._release()

    def __enter__(self) -> "SubscriptionHandle":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


class SynchronizedFrameSource:
    """Feeds synchronized (image, camera-info) pairs to ``on_frame``.

    The upstream feed is started when the first subscriber attaches and
    stopped when the last one detaches.
    """

    def __init__(
        self,
        feed: CameraFeed,
        on_frame: PairCallback,
        queue_size: int = 3,
        slop: float = 0.1,
        logger: Optional[logging.Logger] = None,
    ):
        self.feed = feed
        self.log = logger or logging.getLogger(__name__)
        self._sync = ApproximateTimeSynchronizer(on_frame, queue_size=queue_size, slop=slop)
        self._count = 0
        self._lock = threading.Lock()

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return self._count

    @property
    def synchronizer(self) -> ApproximateTimeSynchronizer:
        return self._sync

    def subscribe(self) -> SubscriptionHandle:
        with self._lock:
            if self._count == 0:
                self.log.info("Subscribing to camera topics")
                self._sync.reset()
                self.feed.start(self._sync.add_image, self._sync.add_camera_info)
            self._count += 1
            self.log.info("%i subscribers on camera topics [OK]", self._count)
        return SubscriptionHandle(self._unsubscribe)

    def _unsubscribe(self) -> None:
        with self._lock:
            if self._count == 0:
                return
            self._count -= 1
            if self._count == 0:
                self.log.info("Unsubscribing from camera topics")
                self.feed.stop()
            self.log.info("%i subscribers on camera topics [OK]", self._count)
