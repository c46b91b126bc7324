import threading

import cv2
import numpy as np
import pytest

from fiducials.frame_source import (
    DeviceCameraFeed,
    SubscriptionHandle,
    SynchronizedFrameSource,
    SyntheticCameraFeed,
)
from conftest import FakeFeed


def test_subscription_is_reference_counted():
    feed = FakeFeed()
    source = SynchronizedFrameSource(feed, lambda i, c: None)

    first = source.subscribe()
    second = source.subscribe()
    assert feed.starts == 1
    assert source.subscriber_count == 2

    first.close()
    assert feed.stops == 0
    assert feed.running

    second.close()
    assert feed.stops == 1
    assert source.subscriber_count == 0


def test_handle_close_is_idempotent():
    feed = FakeFeed()
    source = SynchronizedFrameSource(feed, lambda i, c: None)
    keep = source.subscribe()
    handle = source.subscribe()

    handle.close()
    handle.close()

    assert handle.closed
    assert source.subscriber_count == 1
    keep.close()


def test_handle_releases_on_exception():
    feed = FakeFeed()
    source = SynchronizedFrameSource(feed, lambda i, c: None)

    with pytest.raises(RuntimeError):
        with source.subscribe() as handle:
            assert isinstance(handle, SubscriptionHandle)
            raise RuntimeError("boom")

    assert source.subscriber_count == 0
    assert feed.stops == 1


def test_failed_feed_start_does_not_count():
    feed = FakeFeed()
    feed.fail_start = RuntimeError("no camera")
    source = SynchronizedFrameSource(feed, lambda i, c: None)

    with pytest.raises(RuntimeError):
        source.subscribe()
    assert source.subscriber_count == 0


def test_synchronized_pairs_reach_callback():
    pairs = []
    feed = FakeFeed()
    source = SynchronizedFrameSource(feed, lambda i, c: pairs.append((i, c)))

    with source.subscribe():
        feed.emit(stamp=4.0)
        feed.emit(stamp=5.0)

    assert [p[0].header.stamp for p in pairs] == [4.0, 5.0]
    assert pairs[0][1].K[0] == 1000.0


def test_synthetic_feed_emits_frames_with_intrinsics():
    got = threading.Event()
    images, infos = [], []

    def on_info(msg):
        infos.append(msg)
        got.set()

    feed = SyntheticCameraFeed(fps=50, width=64, height=48, frame_id="synthetic")
    feed.start(images.append, on_info)
    try:
        assert got.wait(2.0)
    finally:
        feed.stop()

    assert not feed.running
    assert images[0].image.shape == (48, 64, 3)
    assert images[0].header.frame_id == "synthetic"
    assert infos[0].header.stamp == images[0].header.stamp
    assert infos[0].K[0] == 64.0
    assert infos[0].K[8] == 1.0


def _write_calib(path):
    fs = cv2.FileStorage(str(path), cv2.FILE_STORAGE_WRITE)
    fs.write("camera_matrix", np.array([[900.0, 0, 640], [0, 900.0, 360], [0, 0, 1]]))
    fs.write("image_width", 1280)
    fs.write("image_height", 720)
    fs.release()


def test_device_feed_missing_calibration(tmp_path):
    feed = DeviceCameraFeed(0, 15, 640, 480, str(tmp_path / "missing.yml"))
    with pytest.raises(FileNotFoundError):
        feed.start(lambda m: None, lambda m: None)
    assert not feed.running


def test_device_feed_unopenable_device(tmp_path):
    calib = tmp_path / "calib.yml"
    _write_calib(calib)
    feed = DeviceCameraFeed(str(tmp_path / "no_such_video.mp4"), 15, 640, 480, str(calib))

    with pytest.raises(RuntimeError):
        feed.start(lambda m: None, lambda m: None)
    assert not feed.running


def _capture_threads():
    return [t for t in threading.enumerate() if t.name == "SyntheticCameraFeed" and t.is_alive()]


def test_feed_is_not_restarted_while_capture_thread_is_busy():
    entered = threading.Event()
    release = threading.Event()

    def slow_image(msg):
        entered.set()
        release.wait(5.0)

    feed = SyntheticCameraFeed(fps=100, width=16, height=12)
    feed.stop_timeout = 0.1
    feed.start(slow_image, lambda m: None)
    try:
        assert entered.wait(2.0)
        feed.stop()
        assert not feed.running

        with pytest.raises(RuntimeError, match="still stopping"):
            feed.start(lambda m: None, lambda m: None)
        assert len(_capture_threads()) == 1
    finally:
        release.set()

    feed.stop_timeout = 2.0
    feed.start(lambda m: None, lambda m: None)
    assert len(_capture_threads()) == 1
    feed.stop()
    assert _capture_threads() == []


class _BrokenFeed(SyntheticCameraFeed):
    def __init__(self):
        super().__init__(fps=0, width=4, height=4)
        self.closed = threading.Event()

    def _grab(self):
        raise AttributeError("'NoneType' object has no attribute 'read'")

    def _close(self):
        self.closed.set()


def test_grab_failure_ends_loop_and_releases_device(caplog):
    feed = _BrokenFeed()
    feed.start(lambda m: None, lambda m: None)

    assert feed.closed.wait(2.0)
    feed.stop()
    assert not feed.running
    assert "frame grab failed" in caplog.text
