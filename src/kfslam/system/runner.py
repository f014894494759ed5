# src/kfslam/system/runner.py
from __future__ import annotations

import logging

import numpy as np

from ..config import SensorType, SlamConfig
from ..geom.se3 import inv_T
from ..graph.map import Map
from .local_mapping import LocalMapping
from .state import TrackedPose
from .telemetry import Telemetry
from .tracking import Tracking

logger = logging.getLogger(__name__)


class System:
    """
    Wires the map, the background mapper and tracking together.

    Responsibilities:
      1) own the Map and the Telemetry sink
      2) start/stop the local mapping thread
      3) forward frames to Tracking and record one TrackedPose per frame

    Conventions:
      - Tracking works with T_cw (world -> camera)
      - trajectory exports convert to T_wc where noted
    """

    def __init__(self, config: SlamConfig, sensor: SensorType | None = None, start_mapping_thread: bool = True,
                 **tracking_kwargs):
        self.config = config
        self.sensor = sensor if sensor is not None else config.sensor
        self.map = Map()
        self.telemetry = Telemetry()
        self.local_mapper = LocalMapping(self.map, self.sensor != SensorType.RGBD)
        self.tracker = Tracking(
            config,
            self.map,
            self.sensor,
            local_mapper=self.local_mapper,
            telemetry=self.telemetry,
            **tracking_kwargs,
        )
        self.trajectory: list[TrackedPose] = []
        if start_mapping_thread:
            self.local_mapper.start()
        logger.info("system up: sensor=%s, mapping thread=%s", self.sensor.value, start_mapping_thread)

    def _record(self, T_cw: np.ndarray, ts: float) -> np.ndarray:
        frame = self.tracker.current_frame
        self.trajectory.append(TrackedPose(
            frame_id=frame.id if frame is not None else -1,
            ts=float(ts),
            T_cw=T_cw.copy(),
            state=self.tracker.state,
            reference_kf_id=frame.reference_kf_id if frame is not None else -1,
        ))
        return T_cw

    def track_monocular(self, image: np.ndarray, timestamp: float = 0.0) -> np.ndarray:
        return self._record(self.tracker.track_monocular(image, timestamp), timestamp)

    def track_rgbd(self, image: np.ndarray, depth: np.ndarray, timestamp: float = 0.0) -> np.ndarray:
        return self._record(self.tracker.track_rgbd(image, depth, timestamp), timestamp)

    def track_inertial(self, image: np.ndarray, imu, timestamp: float = 0.0) -> np.ndarray:
        return self._record(self.tracker.track_inertial(image, imu, timestamp), timestamp)

    def reset(self) -> None:
        self.tracker.reset()
        self.trajectory = []

    def shutdown(self, timeout: float = 5.0) -> None:
        self.local_mapper.request_finish()
        self.local_mapper.join(timeout)
        logger.info("system shut down")

    def keyframe_trajectory(self) -> list[tuple[float, np.ndarray]]:
        """(timestamp, T_wc) for every live keyframe, oldest first."""
        with self.map.update():
            return [(kf.timestamp, inv_T(kf.get_pose())) for kf in self.map.get_all_keyframes()]
