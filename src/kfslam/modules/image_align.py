# src/kfslam/modules/image_align.py
from __future__ import annotations

import logging
import math

import cv2
import numpy as np

from ..geom.se3 import inv_T, rot_x, rot_y

logger = logging.getLogger(__name__)


class ImageAligner:
    """Coarse rotation prior from whole-image phase correlation.

    The dominant image shift between the reference and the frame is read as
    a small pan/tilt of the camera. ``compute_pose`` keeps the translation of
    the predicted relative pose and replaces its rotation with that estimate.
    """

    def __init__(self, min_response: float = 0.05, max_shift_ratio: float = 0.25):
        self.min_response = float(min_response)
        self.max_shift_ratio = float(max_shift_ratio)

    def compute_pose(self, frame, reference, coarse: bool = False) -> bool:
        img_ref = getattr(reference, "image", None)
        img_cur = frame.image
        if img_ref is None or img_cur is None or img_ref.shape != img_cur.shape:
            return False
        if frame.T_cw is None or reference.T_cw is None:
            return False

        scale = 0.25 if coarse else 0.5
        a = cv2.resize(img_ref, None, fx=scale, fy=scale, interpolation=cv2.INTER_AREA).astype(np.float32)
        b = cv2.resize(img_cur, None, fx=scale, fy=scale, interpolation=cv2.INTER_AREA).astype(np.float32)
        if a.shape[0] < 8 or a.shape[1] < 8:
            return False

        window = cv2.createHanningWindow((a.shape[1], a.shape[0]), cv2.CV_32F)
        (dx, dy), response = cv2.phaseCorrelate(a, b, window)
        if not np.isfinite(response) or response < self.min_response:
            logger.debug("image align: weak response %.3f", response)
            return False

        dx, dy = dx / scale, dy / scale
        h, w = img_cur.shape[:2]
        if abs(dx) > self.max_shift_ratio * w or abs(dy) > self.max_shift_ratio * h:
            logger.debug("image align: implausible shift (%.1f, %.1f)", dx, dy)
            return False

        cam = frame.camera
        yaw = math.atan2(dx, cam.fx)
        pitch = -math.atan2(dy, cam.fy)

        T_rel = frame.T_cw @ inv_T(reference.T_cw)
        T_rel[:3, :3] = rot_x(pitch) @ rot_y(yaw)
        frame.set_pose(T_rel @ reference.T_cw)
        return True
