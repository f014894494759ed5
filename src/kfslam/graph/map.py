# src/kfslam/graph/map.py
from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Iterator

import numpy as np

from .keyframe import KeyFrame
from .map_point import MapPoint

logger = logging.getLogger(__name__)


class Map:
    """Arena owning every KeyFrame and MapPoint, addressed by integer handles.

    Structural changes (and a whole tracking cycle) happen inside
    ``with graph.update():``. Removal is a bad flag, never a physical delete,
    so handles held elsewhere stay resolvable until ``clear``.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._keyframes: dict[int, KeyFrame] = {}
        self._map_points: dict[int, MapPoint] = {}
        self._temporal_points: dict[int, MapPoint] = {}
        self.reference_map_points: list[int] = []
        self.keyframe_origins: list[int] = []
        self.version = 0

        self._next_frame_id = 0
        self._next_kf_id = 0
        self._next_mp_id = 0

    @contextmanager
    def update(self) -> Iterator["Map"]:
        with self._lock:
            try:
                yield self
            finally:
                self.version += 1

    # --- id counters

    def new_frame_id(self) -> int:
        with self._lock:
            fid = self._next_frame_id
            self._next_frame_id += 1
            return fid

    def new_keyframe_id(self) -> int:
        with self._lock:
            kid = self._next_kf_id
            self._next_kf_id += 1
            return kid

    def _new_map_point_id(self) -> int:
        mid = self._next_mp_id
        self._next_mp_id += 1
        return mid

    @property
    def next_frame_id(self) -> int:
        return self._next_frame_id

    @property
    def next_keyframe_id(self) -> int:
        return self._next_kf_id

    # --- creation

    def create_keyframe(self, frame) -> KeyFrame:
        with self._lock:
            kf = KeyFrame(self, self.new_keyframe_id(), frame)
            self._keyframes[kf.id] = kf
            return kf

    def create_map_point(self, position: np.ndarray, ref_kf_id: int) -> MapPoint:
        with self._lock:
            mp = MapPoint(self, self._new_map_point_id(), position, ref_kf_id)
            self._map_points[mp.id] = mp
            return mp

    def create_temporal_map_point(self, position: np.ndarray, descriptor: np.ndarray) -> MapPoint:
        """Short-lived point for visual odometry in localization-only mode."""
        with self._lock:
            mp = MapPoint(self, self._new_map_point_id(), position, -1)
            mp.descriptor = np.asarray(descriptor, dtype=np.uint8).copy()
            self._temporal_points[mp.id] = mp
            return mp

    def discard_temporal_map_points(self) -> int:
        with self._lock:
            n = len(self._temporal_points)
            self._temporal_points.clear()
            return n

    def is_temporal(self, mp_id: int) -> bool:
        return mp_id in self._temporal_points

    # --- lookup

    def keyframe(self, kf_id: int) -> KeyFrame | None:
        if kf_id < 0:
            return None
        return self._keyframes.get(int(kf_id))

    def map_point(self, mp_id: int) -> MapPoint | None:
        if mp_id < 0:
            return None
        mp_id = int(mp_id)
        mp = self._map_points.get(mp_id)
        if mp is None:
            mp = self._temporal_points.get(mp_id)
        return mp

    def get_all_keyframes(self) -> list[KeyFrame]:
        with self._lock:
            return [kf for _, kf in sorted(self._keyframes.items()) if not kf.bad]

    def get_all_map_points(self) -> list[MapPoint]:
        with self._lock:
            return [mp for _, mp in sorted(self._map_points.items()) if not mp.bad]

    def keyframes_in_map(self) -> int:
        with self._lock:
            return sum(1 for kf in self._keyframes.values() if not kf.bad)

    def map_points_in_map(self) -> int:
        with self._lock:
            return sum(1 for mp in self._map_points.values() if not mp.bad)

    def set_reference_map_points(self, mp_ids) -> None:
        self.reference_map_points = [int(i) for i in mp_ids]

    def get_reference_map_points(self) -> list[MapPoint]:
        out = []
        for mp_id in self.reference_map_points:
            mp = self.map_point(mp_id)
            if mp is not None and not mp.bad:
                out.append(mp)
        return out

    def add_keyframe_origin(self, kf_id: int) -> None:
        kf = self.keyframe(kf_id)
        if kf is not None:
            kf.origin = True
        self.keyframe_origins.append(kf_id)

    # --- removal

    def erase_keyframe(self, kf_id: int) -> None:
        with self._lock:
            kf = self.keyframe(kf_id)
            if kf is not None:
                kf.set_bad_flag()

    def erase_map_point(self, mp_id: int) -> None:
        with self._lock:
            mp = self.map_point(mp_id)
            if mp is not None and not mp.bad:
                mp.set_bad_flag()

    def clear(self) -> None:
        with self._lock:
            self._keyframes.clear()
            self._map_points.clear()
            self._temporal_points.clear()
            self.reference_map_points = []
            self.keyframe_origins = []
            self._next_frame_id = 0
            self._next_kf_id = 0
            self._next_mp_id = 0
        logger.info("map cleared")
