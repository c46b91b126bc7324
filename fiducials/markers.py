from __future__ import annotations

from dataclasses import replace
from typing import Sequence

from .msgs import (
    ColorRGBA,
    Header,
    Marker,
    MarkerAction,
    MarkerArray,
    MarkerType,
    Pose,
    Quaternion,
    Vector3,
)
from .pose_math import PoseVec7

ID_START_IDX = 2351
ARROW_LENGTH = 0.2
SHAFT_DIAMETER = 0.01
HEAD_DIAMETER = 0.015
MARKER_ALPHA = 0.85
MARKERS_PER_POSE = 3


def _axis_arrow(axis: int) -> tuple[list[Vector3], ColorRGBA]:
    tip = [0.0, 0.0, 0.0]
    tip[axis] = ARROW_LENGTH
    rgb = [0.0, 0.0, 0.0]
    rgb[axis] = 1.0
    return [Vector3(), Vector3(*tip)], ColorRGBA(*rgb, a=MARKER_ALPHA)


class MarkerLifecycleManager:
    """Keeps the visualization marker array consistent across frames.

    Every pose is drawn as three arrows (its x/y/z axes). When fewer poses are
    published than last time, the trailing entries are flagged DELETE so the
    viewer drops them instead of showing stale axes.
    """

    def __init__(self, namespace: str = "fiducials", id_base: int = ID_START_IDX, lifetime: float = 1.0):
        self.namespace = namespace
        self.id_base = id_base
        self.lifetime = lifetime
        self.previous_size = 0
        self._markers: list[Marker] = []

    def update(self, poses: Sequence[PoseVec7], header: Header) -> MarkerArray:
        new_size = MARKERS_PER_POSE * len(poses)
        if new_size >= self.previous_size:
            del self._markers[new_size:]
            self._markers.extend(Marker() for _ in range(new_size - len(self._markers)))

        for i, vec7 in enumerate(poses):
            x, y, z, qw, qx, qy, qz = vec7
            for j in range(MARKERS_PER_POSE):
                idx = MARKERS_PER_POSE * i + j
                points, color = _axis_arrow(j)
                self._markers[idx] = Marker(
                    header=Header(header.stamp, header.frame_id),
                    ns=self.namespace,
                    id=self.id_base + idx,
                    type=MarkerType.ARROW,
                    action=MarkerAction.ADD,
                    pose=Pose(Vector3(x, y, z), Quaternion(qx, qy, qz, qw)),
                    scale=Vector3(SHAFT_DIAMETER, HEAD_DIAMETER, 0.0),  # head length 0 = default
                    color=color,
                    points=points,
                    lifetime=self.lifetime,
                )

        for idx in range(new_size, self.previous_size):
            self._markers[idx] = replace(self._markers[idx], action=MarkerAction.DELETE)

        self.previous_size = new_size
        return MarkerArray(list(self._markers))
