# src/kfslam/graph/map_point.py
from __future__ import annotations

import math

import numpy as np

from ..modules.orb_match import descriptor_distance


class MapPoint:
    """3D landmark in world coordinates.

    Observations map keyframe id -> keypoint index in that keyframe. A point
    with no live observation is bad; bad points stay resolvable through the
    Map but are skipped by matching and optimization.
    """

    def __init__(self, graph, point_id: int, position: np.ndarray, ref_kf_id: int):
        self.graph = graph
        self.id = point_id
        self.position = np.asarray(position, dtype=np.float64).reshape(3).copy()
        self.descriptor: np.ndarray | None = None
        self.normal = np.zeros(3, dtype=np.float64)
        self.min_distance = 0.0
        self.max_distance = 0.0

        self.observations: dict[int, int] = {}
        self.first_kf_id = ref_kf_id
        self.ref_kf_id = ref_kf_id
        self.n_visible = 1
        self.n_found = 1
        self.bad = False
        self.replaced_id = -1

        # per-frame scratch used while tracking
        self.track_in_view = False
        self.track_proj_x = 0.0
        self.track_proj_y = 0.0
        self.track_scale_level = 0
        self.track_view_cos = 0.0
        self.last_frame_seen = -1
        self.track_reference_for_frame = -1

    def __repr__(self) -> str:
        return f"MapPoint(id={self.id}, obs={len(self.observations)}, bad={self.bad})"

    @property
    def num_observations(self) -> int:
        return len(self.observations)

    def add_observation(self, kf_id: int, idx: int) -> None:
        self.observations[kf_id] = int(idx)

    def erase_observation(self, kf_id: int) -> None:
        if kf_id not in self.observations:
            return
        del self.observations[kf_id]
        if self.ref_kf_id == kf_id and self.observations:
            self.ref_kf_id = next(iter(self.observations))
        if not self.observations:
            self.set_bad_flag()

    def is_in_keyframe(self, kf_id: int) -> bool:
        return kf_id in self.observations

    def get_index_in_keyframe(self, kf_id: int) -> int:
        return self.observations.get(kf_id, -1)

    def set_bad_flag(self) -> None:
        self.bad = True
        obs = self.observations
        self.observations = {}
        for kf_id, idx in obs.items():
            kf = self.graph.keyframe(kf_id)
            if kf is not None:
                kf.erase_map_point_match(idx)

    def replace(self, other_id: int) -> None:
        """Merge this point into ``other_id``; associations move to the other point."""
        if other_id == self.id:
            return
        other = self.graph.map_point(other_id)
        if other is None:
            return
        obs = self.observations
        self.observations = {}
        self.bad = True
        self.replaced_id = other_id

        for kf_id, idx in obs.items():
            kf = self.graph.keyframe(kf_id)
            if kf is None:
                continue
            if not other.is_in_keyframe(kf_id):
                kf.replace_map_point_match(idx, other_id)
                other.add_observation(kf_id, idx)
            else:
                kf.erase_map_point_match(idx)
        other.increase_found(self.n_found)
        other.increase_visible(self.n_visible)
        other.compute_distinctive_descriptors()

    def get_replaced(self) -> int:
        """Follow replacement links to the live point, or -1 when there is none."""
        cur = self
        seen = set()
        while cur.replaced_id >= 0 and cur.id not in seen:
            seen.add(cur.id)
            nxt = self.graph.map_point(cur.replaced_id)
            if nxt is None:
                return -1
            cur = nxt
        return cur.id if cur is not self else -1

    def increase_visible(self, n: int = 1) -> None:
        self.n_visible += n

    def increase_found(self, n: int = 1) -> None:
        self.n_found += n

    def found_ratio(self) -> float:
        return float(self.n_found) / float(self.n_visible) if self.n_visible > 0 else 0.0

    def compute_distinctive_descriptors(self) -> None:
        """Keep the observed descriptor with the least median distance to the rest."""
        if self.bad:
            return
        descs = []
        for kf_id, idx in self.observations.items():
            kf = self.graph.keyframe(kf_id)
            if kf is None or kf.bad:
                continue
            descs.append(kf.descriptors[idx])
        if not descs:
            return
        D = np.asarray(descs, dtype=np.uint8)
        if D.shape[0] == 1:
            self.descriptor = D[0].copy()
            return
        dist = descriptor_distance(D[:, None, :], D[None, :, :])
        median = np.median(dist, axis=1)
        self.descriptor = D[int(np.argmin(median))].copy()

    def update_normal_and_depth(self) -> None:
        if self.bad or not self.observations:
            return
        ref = self.graph.keyframe(self.ref_kf_id)
        if ref is None:
            return

        normal = np.zeros(3, dtype=np.float64)
        n = 0
        for kf_id in self.observations:
            kf = self.graph.keyframe(kf_id)
            if kf is None:
                continue
            d = self.position - kf.get_camera_center()
            norm = np.linalg.norm(d)
            if norm > 0.0:
                normal += d / norm
                n += 1

        PC = self.position - ref.get_camera_center()
        dist = float(np.linalg.norm(PC))
        idx = self.observations.get(self.ref_kf_id)
        if idx is None:
            return
        level = int(ref.octaves[idx])
        self.max_distance = dist * ref.scale_factors[level]
        self.min_distance = self.max_distance / ref.scale_factors[ref.n_levels - 1]
        if n > 0:
            self.normal = normal / n

    def predict_scale(self, dist: float, frame) -> int:
        """Pyramid level at which the point should appear at distance ``dist``."""
        if dist <= 0.0 or self.max_distance <= 0.0:
            return 0
        ratio = self.max_distance / dist
        level = int(math.ceil(math.log(ratio) / frame.log_scale_factor))
        return min(max(level, 0), frame.n_levels - 1)
