from __future__ import annotations

import cv2
import numpy as np

from ..config import CameraConfig


class PinholeCamera:
    """Pinhole intrinsics with OpenCV radial-tangential distortion."""

    def __init__(self, cfg: CameraConfig):
        self.width = int(cfg.width)
        self.height = int(cfg.height)
        self.fx, self.fy = float(cfg.fx), float(cfg.fy)
        self.cx, self.cy = float(cfg.cx), float(cfg.cy)
        self.bf = float(cfg.bf)
        self.K = cfg.K
        self.dist = cfg.dist_coeffs
        self.distorted = bool(np.any(self.dist != 0.0))
        self.min_x, self.max_x, self.min_y, self.max_y = self._image_bounds()

    def undistort_points(self, pts: np.ndarray) -> np.ndarray:
        pts = np.asarray(pts, dtype=np.float64).reshape(-1, 2)
        if not self.distorted or pts.shape[0] == 0:
            return pts.copy()
        und = cv2.undistortPoints(pts.reshape(-1, 1, 2), self.K, self.dist, P=self.K)
        return und.reshape(-1, 2)

    def project(self, Xc: np.ndarray) -> np.ndarray:
        """Camera-frame points (N,3) or (3,) to pixels."""
        Xc = np.asarray(Xc, dtype=np.float64)
        z = Xc[..., 2]
        u = self.fx * Xc[..., 0] / z + self.cx
        v = self.fy * Xc[..., 1] / z + self.cy
        return np.stack([u, v], axis=-1)

    def backproject(self, uv: np.ndarray, z: float) -> np.ndarray:
        x = (uv[0] - self.cx) * z / self.fx
        y = (uv[1] - self.cy) * z / self.fy
        return np.array([x, y, z], dtype=np.float64)

    def is_in_image(self, u: float, v: float) -> bool:
        return self.min_x <= u < self.max_x and self.min_y <= v < self.max_y

    def _image_bounds(self) -> tuple[float, float, float, float]:
        if not self.distorted:
            return 0.0, float(self.width), 0.0, float(self.height)
        corners = np.array(
            [[0.0, 0.0], [self.width, 0.0], [0.0, self.height], [self.width, self.height]],
            dtype=np.float64,
        )
        c = self.undistort_points(corners)
        return (
            float(min(c[0, 0], c[2, 0])),
            float(max(c[1, 0], c[3, 0])),
            float(min(c[0, 1], c[1, 1])),
            float(max(c[2, 1], c[3, 1])),
        )
