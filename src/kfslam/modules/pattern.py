# src/kfslam/modules/pattern.py
from __future__ import annotations

import logging

import cv2
import numpy as np

from ..geom.se3 import Rt_to_T, inv_T

logger = logging.getLogger(__name__)


class PatternDetector:
    """Chessboard fiducial giving an absolute pose and known 3D points.

    After a successful ``detect``, ``get_rt`` is the camera-to-pattern pose and
    ``get_points`` pairs frame keypoint indices with pattern-frame 3D points.
    """

    def __init__(self, cols: int = 9, rows: int = 6, cell_w: float = 0.025, cell_h: float = 0.025,
                 max_assoc_px: float = 3.0):
        self.cols = int(cols)
        self.rows = int(rows)
        self.cell_w = float(cell_w)
        self.cell_h = float(cell_h)
        self.max_assoc_px = float(max_assoc_px)
        self._T_pc = np.eye(4)
        self._points: list[tuple[int, np.ndarray]] = []

    def set_cell_size(self, w: float, h: float) -> None:
        self.cell_w = float(w)
        self.cell_h = float(h)

    def object_points(self) -> np.ndarray:
        g = np.mgrid[0:self.cols, 0:self.rows].T.reshape(-1, 2).astype(np.float64)
        return np.column_stack([g[:, 0] * self.cell_w, g[:, 1] * self.cell_h, np.zeros(len(g))])

    def detect(self, frame) -> bool:
        self._points = []
        img = frame.image
        if img is None:
            return False
        found, corners = cv2.findChessboardCorners(img, (self.cols, self.rows))
        if not found or corners is None:
            return False
        criteria = (cv2.TERM_CRITERIA_EPS + cv2.TERM_CRITERIA_MAX_ITER, 30, 0.01)
        corners = cv2.cornerSubPix(img, corners.astype(np.float32), (5, 5), (-1, -1), criteria)

        obj = self.object_points()
        cam = frame.camera
        ok, rvec, tvec = cv2.solvePnP(obj, corners.reshape(-1, 2).astype(np.float64), cam.K, cam.dist)
        if not ok:
            return False
        T_cp = Rt_to_T(cv2.Rodrigues(rvec)[0], tvec.reshape(3))
        self._T_pc = inv_T(T_cp)

        # pair each corner with the closest unused keypoint
        used = set()
        kps = frame.keypoints
        for c, X in zip(corners.reshape(-1, 2), obj):
            if kps.shape[0] == 0:
                break
            d = np.linalg.norm(kps - c, axis=1)
            j = int(np.argmin(d))
            if d[j] > self.max_assoc_px or j in used:
                continue
            used.add(j)
            self._points.append((j, X.copy()))

        logger.debug("pattern: %d corners associated to keypoints", len(self._points))
        return len(self._points) > 0

    def get_rt(self) -> np.ndarray:
        return self._T_pc.copy()

    def get_points(self) -> list[tuple[int, np.ndarray]]:
        return list(self._points)
