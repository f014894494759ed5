# src/kfslam/graph/keyframe.py
from __future__ import annotations

import numpy as np

from ..geom.se3 import camera_center, inv_T
from .frame import features_in_area


class KeyFrame:
    """A Frame promoted into the map graph.

    Links to other keyframes and map points are integer handles resolved
    through ``graph`` (the owning Map). Covisibility edges are weighted by the
    number of shared map points and the spanning tree hangs off the first
    keyframe.
    """

    def __init__(self, graph, kf_id: int, frame):
        self.graph = graph
        self.id = kf_id
        self.frame_id = frame.id
        self.timestamp = frame.timestamp
        self.image = frame.image
        self.camera = frame.camera
        self.th_depth = frame.th_depth

        self.keypoints = frame.keypoints
        self.keypoints_un = frame.keypoints_un
        self.descriptors = frame.descriptors
        self.octaves = frame.octaves
        self.angles = frame.angles
        self.depth = frame.depth

        self.scale_factor = frame.scale_factor
        self.n_levels = frame.n_levels
        self.log_scale_factor = frame.log_scale_factor
        self.scale_factors = frame.scale_factors
        self.level_sigma2 = frame.level_sigma2
        self.inv_level_sigma2 = frame.inv_level_sigma2

        self.map_points = frame.map_points.copy()
        self.T_cw = frame.get_pose()

        self.connections: dict[int, int] = {}
        self.ordered_connected: list[int] = []
        self.ordered_weights: list[int] = []
        self.parent_id = -1
        self.children: set[int] = set()
        self.first_connection = True

        self.bad = False
        self.origin = False

        # per-frame scratch used while tracking
        self.track_reference_for_frame = -1

    def __repr__(self) -> str:
        return f"KeyFrame(id={self.id}, frame={self.frame_id}, bad={self.bad})"

    @property
    def N(self) -> int:
        return int(self.keypoints.shape[0])

    # --- pose

    def set_pose(self, T_cw: np.ndarray) -> None:
        self.T_cw = np.asarray(T_cw, dtype=np.float64).copy()

    def get_pose(self) -> np.ndarray:
        return self.T_cw.copy()

    @property
    def T_wc(self) -> np.ndarray:
        return inv_T(self.T_cw)

    def get_camera_center(self) -> np.ndarray:
        return camera_center(self.T_cw)

    def get_rotation(self) -> np.ndarray:
        return self.T_cw[:3, :3].copy()

    # --- map point associations

    def add_map_point(self, mp_id: int, idx: int) -> None:
        self.map_points[idx] = mp_id

    def erase_map_point_match(self, idx: int) -> None:
        self.map_points[idx] = -1

    def replace_map_point_match(self, idx: int, mp_id: int) -> None:
        self.map_points[idx] = mp_id

    def get_map_point_matches(self) -> np.ndarray:
        return self.map_points.copy()

    def get_map_points(self) -> set[int]:
        out = set()
        for mp_id in self.map_points:
            if mp_id < 0:
                continue
            mp = self.graph.map_point(int(mp_id))
            if mp is not None and not mp.bad:
                out.add(int(mp_id))
        return out

    def tracked_map_points(self, min_obs: int) -> int:
        """Number of live points, counting only those with >= min_obs observations."""
        n = 0
        for mp_id in self.map_points:
            if mp_id < 0:
                continue
            mp = self.graph.map_point(int(mp_id))
            if mp is None or mp.bad:
                continue
            if min_obs > 0 and mp.num_observations < min_obs:
                continue
            n += 1
        return n

    def get_features_in_area(self, x: float, y: float, r: float, min_level: int = -1, max_level: int = -1):
        return features_in_area(self.keypoints_un, self.octaves, x, y, r, min_level, max_level)

    def unproject_depth(self, i: int) -> np.ndarray | None:
        z = self.depth[i]
        if z <= 0.0:
            return None
        Xc = self.camera.backproject(self.keypoints_un[i], z)
        T_wc = self.T_wc
        return T_wc[:3, :3] @ Xc + T_wc[:3, 3]

    def compute_scene_median_depth(self, q: int = 2) -> float:
        """Depth quantile (1/q) of the live points in this camera; -1 when none."""
        R = self.T_cw[2, :3]
        tz = self.T_cw[2, 3]
        depths = []
        for mp_id in self.map_points:
            if mp_id < 0:
                continue
            mp = self.graph.map_point(int(mp_id))
            if mp is None or mp.bad:
                continue
            depths.append(float(R @ mp.position + tz))
        if not depths:
            return -1.0
        depths.sort()
        return depths[(len(depths) - 1) // q]

    # --- covisibility graph

    def add_connection(self, kf_id: int, weight: int) -> None:
        if self.connections.get(kf_id) == weight:
            return
        self.connections[kf_id] = int(weight)
        self._update_best_covisibles()

    def erase_connection(self, kf_id: int) -> None:
        if kf_id in self.connections:
            del self.connections[kf_id]
            self._update_best_covisibles()

    def _update_best_covisibles(self) -> None:
        pairs = sorted(self.connections.items(), key=lambda kv: (-kv[1], kv[0]))
        self.ordered_connected = [k for k, _ in pairs]
        self.ordered_weights = [w for _, w in pairs]

    def get_connected_keyframes(self) -> set[int]:
        return set(self.connections)

    def get_vector_covisible_keyframes(self) -> list[int]:
        return list(self.ordered_connected)

    def get_best_covisibility_keyframes(self, n: int) -> list[int]:
        return self.ordered_connected[:n]

    def get_covisibles_by_weight(self, w: int) -> list[int]:
        return [k for k, kw in zip(self.ordered_connected, self.ordered_weights) if kw >= w]

    def get_weight(self, kf_id: int) -> int:
        return self.connections.get(kf_id, 0)

    def update_connections(self) -> None:
        """Rebuild covisibility edges from the current point observations."""
        counter: dict[int, int] = {}
        for mp_id in self.map_points:
            if mp_id < 0:
                continue
            mp = self.graph.map_point(int(mp_id))
            if mp is None or mp.bad:
                continue
            for kf_id in mp.observations:
                if kf_id == self.id:
                    continue
                counter[kf_id] = counter.get(kf_id, 0) + 1

        if not counter:
            return

        for kf_id, w in counter.items():
            kf = self.graph.keyframe(kf_id)
            if kf is not None and not kf.bad:
                kf.add_connection(self.id, w)
        self.connections = {k: w for k, w in counter.items() if not self._is_bad(k)}
        self._update_best_covisibles()

        if self.first_connection and self.id != 0 and self.ordered_connected:
            self.parent_id = self.ordered_connected[0]
            self.graph.keyframe(self.parent_id).add_child(self.id)
            self.first_connection = False

    def _is_bad(self, kf_id: int) -> bool:
        kf = self.graph.keyframe(kf_id)
        return kf is None or kf.bad

    # --- spanning tree

    def add_child(self, kf_id: int) -> None:
        self.children.add(kf_id)

    def erase_child(self, kf_id: int) -> None:
        self.children.discard(kf_id)

    def change_parent(self, kf_id: int) -> None:
        self.parent_id = kf_id
        self.graph.keyframe(kf_id).add_child(self.id)

    def get_children(self) -> set[int]:
        return set(self.children)

    def get_parent(self) -> int:
        return self.parent_id

    def set_bad_flag(self) -> None:
        """Logically remove this keyframe, reattaching its children in the tree."""
        if self.id == 0 or self.bad:
            return

        for kf_id in list(self.connections):
            kf = self.graph.keyframe(kf_id)
            if kf is not None:
                kf.erase_connection(self.id)
        for mp_id in self.map_points:
            if mp_id < 0:
                continue
            mp = self.graph.map_point(int(mp_id))
            if mp is not None:
                mp.erase_observation(self.id)
        self.connections = {}
        self.ordered_connected = []
        self.ordered_weights = []

        candidates = {self.parent_id}
        children = set(self.children)
        while children:
            best_child, best_parent, best_w = -1, -1, -1
            for child_id in children:
                child = self.graph.keyframe(child_id)
                if child is None or child.bad:
                    continue
                for conn_id in child.ordered_connected:
                    if conn_id in candidates:
                        w = child.get_weight(conn_id)
                        if w > best_w:
                            best_child, best_parent, best_w = child_id, conn_id, w
            if best_child < 0:
                break
            self.graph.keyframe(best_child).change_parent(best_parent)
            candidates.add(best_child)
            children.discard(best_child)

        # no covisible candidate: hang the rest off our own parent
        for child_id in children:
            if self.parent_id >= 0:
                self.graph.keyframe(child_id).change_parent(self.parent_id)

        if self.parent_id >= 0:
            parent = self.graph.keyframe(self.parent_id)
            if parent is not None:
                parent.erase_child(self.id)
        self.children = set()
        self.bad = True
