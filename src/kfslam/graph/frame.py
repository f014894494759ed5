# src/kfslam/graph/frame.py
from __future__ import annotations

import copy
import math

import numpy as np

from ..geom.camera import PinholeCamera
from ..geom.se3 import camera_center, inv_T
from ..modules.orb_match import Features


def scale_pyramid(scale_factor: float, n_levels: int) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Per-level scale factors, sigma^2 and inverse sigma^2."""
    scale_factors = np.power(float(scale_factor), np.arange(n_levels, dtype=np.float64))
    level_sigma2 = scale_factors ** 2
    return scale_factors, level_sigma2, 1.0 / level_sigma2


def features_in_area(
    keypoints_un: np.ndarray,
    octaves: np.ndarray,
    x: float,
    y: float,
    r: float,
    min_level: int = -1,
    max_level: int = -1,
) -> np.ndarray:
    """Indices of keypoints inside the square window of half side ``r``.

    ``min_level`` bounds from below only when > 0 and ``max_level`` bounds from
    above only when >= 0.
    """
    if keypoints_un.shape[0] == 0:
        return np.zeros((0,), dtype=np.int64)
    m = (np.abs(keypoints_un[:, 0] - x) < r) & (np.abs(keypoints_un[:, 1] - y) < r)
    if min_level > 0:
        m &= octaves >= min_level
    if max_level >= 0:
        m &= octaves <= max_level
    return np.flatnonzero(m)


class Frame:
    """One processed image: features, associations and (maybe) a pose."""

    def __init__(
        self,
        frame_id: int,
        image: np.ndarray,
        features: Features,
        camera: PinholeCamera,
        *,
        timestamp: float = 0.0,
        depth: np.ndarray | None = None,
        th_depth: float = 0.0,
    ):
        self.id = frame_id
        self.image = image
        self.camera = camera
        self.timestamp = float(timestamp)
        self.th_depth = float(th_depth)

        self.keypoints = np.asarray(features.keypoints, dtype=np.float64).reshape(-1, 2)
        self.keypoints_un = camera.undistort_points(self.keypoints)
        self.descriptors = np.asarray(features.descriptors, dtype=np.uint8)
        self.octaves = np.asarray(features.octaves, dtype=np.int64).reshape(-1)
        self.angles = np.asarray(features.angles, dtype=np.float64).reshape(-1)

        self.scale_factor = float(features.scale_factor)
        self.n_levels = int(features.n_levels)
        self.log_scale_factor = math.log(self.scale_factor)
        self.scale_factors, self.level_sigma2, self.inv_level_sigma2 = scale_pyramid(
            self.scale_factor, self.n_levels
        )

        n = self.keypoints.shape[0]
        self.map_points = np.full(n, -1, dtype=np.int64)
        self.outliers = np.zeros(n, dtype=bool)
        self.depth = self._sample_depth(depth) if depth is not None else np.full(n, -1.0)

        self.T_cw: np.ndarray | None = None
        self.reference_kf_id = -1

    def __repr__(self) -> str:
        return f"Frame(id={self.id}, N={self.N}, pose={'set' if self.has_pose else 'none'})"

    @property
    def N(self) -> int:
        return int(self.keypoints.shape[0])

    def _sample_depth(self, depth: np.ndarray) -> np.ndarray:
        h, w = depth.shape[:2]
        out = np.full(self.N, -1.0)
        if self.N == 0:
            return out
        u = np.round(self.keypoints[:, 0]).astype(np.int64)
        v = np.round(self.keypoints[:, 1]).astype(np.int64)
        inside = (u >= 0) & (u < w) & (v >= 0) & (v < h)
        z = np.full(self.N, np.nan)
        z[inside] = depth[v[inside], u[inside]]
        valid = np.isfinite(z) & (z > 0.0)
        out[valid] = z[valid]
        return out

    # --- pose

    def set_pose(self, T_cw: np.ndarray) -> None:
        self.T_cw = np.asarray(T_cw, dtype=np.float64).copy()

    def get_pose(self) -> np.ndarray:
        """World-to-camera pose, or the zero matrix while unknown."""
        if self.T_cw is None:
            return np.zeros((4, 4), dtype=np.float64)
        return self.T_cw.copy()

    @property
    def has_pose(self) -> bool:
        return self.T_cw is not None

    @property
    def T_wc(self) -> np.ndarray:
        return inv_T(self.T_cw)

    def get_camera_center(self) -> np.ndarray:
        return camera_center(self.T_cw)

    def get_rotation(self) -> np.ndarray:
        return self.T_cw[:3, :3].copy()

    # --- geometry queries

    def get_features_in_area(self, x: float, y: float, r: float, min_level: int = -1, max_level: int = -1):
        return features_in_area(self.keypoints_un, self.octaves, x, y, r, min_level, max_level)

    def is_in_frustum(self, mp, viewing_cos_limit: float) -> bool:
        """Check visibility of ``mp`` and fill its projection scratch fields."""
        mp.track_in_view = False
        Pc = self.T_cw[:3, :3] @ mp.position + self.T_cw[:3, 3]
        if Pc[2] < 0.0:
            return False
        u, v = self.camera.project(Pc)
        if not self.camera.is_in_image(u, v):
            return False

        PO = mp.position - self.get_camera_center()
        dist = float(np.linalg.norm(PO))
        if dist < 0.8 * mp.min_distance or dist > 1.2 * mp.max_distance:
            return False
        view_cos = float(PO @ mp.normal) / dist if dist > 0.0 else 0.0
        if view_cos < viewing_cos_limit:
            return False

        mp.track_in_view = True
        mp.track_proj_x = float(u)
        mp.track_proj_y = float(v)
        mp.track_scale_level = mp.predict_scale(dist, self)
        mp.track_view_cos = view_cos
        return True

    def unproject_depth(self, i: int) -> np.ndarray | None:
        z = self.depth[i]
        if z <= 0.0:
            return None
        Xc = self.camera.backproject(self.keypoints_un[i], z)
        T_wc = self.T_wc
        return T_wc[:3, :3] @ Xc + T_wc[:3, 3]

    def clear_map_points(self) -> None:
        self.map_points[:] = -1
        self.outliers[:] = False

    def copy(self) -> "Frame":
        f = copy.copy(self)
        f.map_points = self.map_points.copy()
        f.outliers = self.outliers.copy()
        f.T_cw = None if self.T_cw is None else self.T_cw.copy()
        return f
