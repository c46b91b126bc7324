from __future__ import annotations

import threading
from enum import Enum
from typing import Optional

import numpy as np

from .calib import camera_matrix_from_k
from .config import FiducialsConfig
from .estimator import ArucoPoseEstimator, EstimatorInitError, PoseEstimator
from .frame_source import CameraFeed, SubscriptionHandle, SynchronizedFrameSource
from .logging_utils import setup_logger
from .msgs import CameraInfoMsg, DetectResponse, ImageMsg
from .pipeline import DetectionPipeline, DetectionResult, Frame, PipelineOptions
from .transport import Publishers


class InitState(Enum):
    PENDING = "pending"
    READY = "ready"
    FAILED = "failed"


class FiducialsNode:
    """Detects fiducials on synchronized camera frames.

    Two call paths reach the detection pipeline: ``handle_frame`` runs it for
    every synchronized frame in topic mode, ``detect`` waits for the next
    frame and returns the result in service mode. One lock guards the
    camera matrix, estimator setup, the latest frame and detection itself, so
    a frame cannot be replaced while it is being processed.
    """

    def __init__(
        self,
        config: FiducialsConfig,
        feed: CameraFeed,
        publishers: Optional[Publishers] = None,
        estimator: Optional[PoseEstimator] = None,
        logger=None,
    ):
        self.config = config
        self.mode = config.mode
        self.log = logger or setup_logger(config.node_name, config.log_level)
        self.publishers = publishers or Publishers()
        self.estimator = estimator or ArucoPoseEstimator()
        self.source = SynchronizedFrameSource(
            feed,
            self.handle_frame,
            queue_size=config.sync_queue_size,
            slop=config.sync_slop_sec,
            logger=self.log,
        )
        self.pipeline = DetectionPipeline(
            self.estimator,
            self.publishers,
            PipelineOptions(
                publish_2d_image=config.publish_2d_image,
                publish_tf=config.publish_tf,
                publish_marker_array=config.publish_marker_array,
                detector_name=config.detector_name,
                tf_prefix=config.tf_prefix,
            ),
            self.log,
        )

        self._cond = threading.Condition(threading.Lock())
        self._camera_matrix: Optional[np.ndarray] = None
        self._init_state = InitState.PENDING
        self._latest: Optional[Frame] = None
        self._seq = 0
        self._topic_handle: Optional[SubscriptionHandle] = None

    @property
    def camera_matrix(self) -> Optional[np.ndarray]:
        with self._cond:
            return self._camera_matrix

    @property
    def init_state(self) -> InitState:
        with self._cond:
            return self._init_state

    @property
    def frames_received(self) -> int:
        with self._cond:
            return self._seq

    def start(self) -> None:
        if self.mode.topic and self._topic_handle is None:
            self._topic_handle = self.source.subscribe()
        self.log.info("Initializing [OK] mode=%s", self.mode.value)
        self.log.info("Up and running")

    def shutdown(self) -> None:
        if self._topic_handle is not None:
            self._topic_handle.close()
            self._topic_handle = None
        self.publishers.close()
        self.log.info("Shut down")

    def handle_frame(self, image_msg: ImageMsg, info_msg: CameraInfoMsg) -> None:
        """Synchronizer callback: store the frame, detect in topic mode, wake waiters."""
        with self._cond:
            self.log.debug("color image callback")
            if not self._ensure_initialized(info_msg):
                return

            header = image_msg.header
            self._latest = Frame(image_msg.image.copy(), header.stamp, header.frame_id)

            if self.mode.topic:
                result = self._run_pipeline(self._latest)
                if result is not None:
                    self._publish_detections(result)

            self._seq += 1
            self._cond.notify_all()

    def detect(self, timeout_ms: Optional[int] = None) -> DetectResponse:
        """Wait for the next synchronized frame and detect fiducials on it."""
        self.log.debug("Service Callback")
        if not self.mode.service:
            return DetectResponse(False, message=f"service disabled in {self.mode.value}")

        if timeout_ms is None:
            timeout_ms = self.config.service_timeout_ms
        timeout = max(timeout_ms, 0) / 1000.0
        with self._cond:
            seq0 = self._seq

        try:
            handle = self.source.subscribe()
        except Exception as e:
            self.log.error("Could not subscribe to camera topics: %s", e)
            return DetectResponse(False, message=f"camera unavailable: {e}")

        with handle:
            with self._cond:
                self.log.info("Waiting for image data")
                if not self._cond.wait_for(lambda: self._seq != seq0, timeout):
                    self.log.warning("Could not receive image data from ApproximateTime synchronizer")
                    return DetectResponse(False, message="timeout")
                self.log.info("Waiting for image data [OK]")
                result = self._run_pipeline(self._latest)

        if result is None:
            return DetectResponse(False, message="detection failed")
        return DetectResponse(result.succeeded, result.detections, message=result.status.value)

    def _ensure_initialized(self, info_msg: CameraInfoMsg) -> bool:
        if self._init_state is InitState.READY:
            return True
        if self._init_state is InitState.FAILED:
            return False

        self.log.info("Initializing fiducial detector with camera matrix")
        try:
            camera_matrix = camera_matrix_from_k(info_msg.K)
            self.estimator.initialize(camera_matrix, self.config.model_path)
        except (EstimatorInitError, ValueError) as e:
            self._init_state = InitState.FAILED
            self.log.error("Initializing fiducial detector with camera matrix [FAILED]: %s", e)
            return False

        self._camera_matrix = camera_matrix
        self._init_state = InitState.READY
        self.log.info("Initializing fiducial detector with camera matrix [OK]")
        return True

    def _run_pipeline(self, frame: Frame) -> Optional[DetectionResult]:
        try:
            return self.pipeline.run(frame.copy(), self._camera_matrix)
        except Exception:
            self.log.exception("Fiducial detection raised")
            return None

    def _publish_detections(self, result: DetectionResult) -> None:
        try:
            self.publishers.detections.publish(result.detections)
        except Exception as e:
            self.log.warning("Detection publish failed: %s", e)
