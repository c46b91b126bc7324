import threading

import numpy as np
import pytest

from fiducials.config import FiducialsConfig
from fiducials.estimator import EstimatorInitError, MarkerPose, PoseEstimator
from fiducials.frame_source import CameraFeed
from fiducials.msgs import CameraInfoMsg, Header, ImageMsg
from fiducials.transport import MemoryPublisher, Publishers

K_LIST = [1000.0, 0.0, 320.0, 0.0, 1000.0, 240.0, 0.0, 0.0, 1.0]


class FakeEstimator(PoseEstimator):
    """Returns canned poses; can be told to fail init or estimation."""

    def __init__(self, poses=None, fail_init=False, error=None):
        self.poses = list(poses or [])
        self.fail_init = fail_init
        self.error = error
        self.init_calls = []
        self.estimate_calls = 0
        self._ready = False

    @property
    def initialized(self):
        return self._ready

    def initialize(self, camera_matrix, model_path):
        self.init_calls.append((np.array(camera_matrix), model_path))
        if self.fail_init:
            raise EstimatorInitError("model could not be loaded")
        self._ready = True

    def estimate(self, image):
        self.estimate_calls += 1
        if self.error is not None:
            raise self.error
        return list(self.poses)


class FakeFeed(CameraFeed):
    """Records start/stop; tests push messages with emit()."""

    def __init__(self, emit_on_start=False, delay=0.02):
        self.starts = 0
        self.stops = 0
        self.emit_on_start = emit_on_start
        self.delay = delay
        self.fail_start = None
        self._on_image = None
        self._on_info = None

    @property
    def running(self):
        return self._on_image is not None

    def start(self, on_image, on_camera_info):
        if self.fail_start is not None:
            raise self.fail_start
        self.starts += 1
        self._on_image = on_image
        self._on_info = on_camera_info
        if self.emit_on_start:
            threading.Timer(self.delay, self.emit).start()

    def stop(self):
        self.stops += 1
        self._on_image = None
        self._on_info = None

    def emit(self, stamp=1.0, frame_id="head_cam", image=None, K=None):
        on_image, on_info = self._on_image, self._on_info
        if on_image is None:
            return
        if image is None:
            image = np.zeros((480, 640, 3), dtype=np.uint8)
        header = Header(stamp, frame_id)
        on_image(ImageMsg(header, image))
        on_info(CameraInfoMsg(Header(stamp, frame_id), list(K or K_LIST), 640, 480))


def identity_pose(z=1.0, marker_id=None):
    return MarkerPose(np.eye(3), np.array([0.0, 0.0, z]), marker_id)


@pytest.fixture
def camera_matrix():
    return np.array(K_LIST).reshape(3, 3)


@pytest.fixture
def publishers():
    return Publishers(
        detections=MemoryPublisher(),
        image=MemoryPublisher(),
        transforms=MemoryPublisher(),
        markers=MemoryPublisher(),
    )


@pytest.fixture
def make_config(tmp_path):
    def _make(mode="MODE_TOPIC_AND_SERVICE", **overrides):
        cfg = FiducialsConfig(
            ros_node_mode=mode,
            model_directory=str(tmp_path),
            model_filename="model.yml",
            publish_marker_array=True,
            publish_tf=True,
            publish_2d_image=True,
        )
        return cfg.apply_overrides(**overrides)

    return _make
