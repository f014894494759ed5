# src/kfslam/modules/emat.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field

import cv2
import numpy as np

from ..geom.se3 import Rt_to_T
from .triangulate import triangulate_two_view

logger = logging.getLogger(__name__)


@dataclass
class TwoViewResult:
    valid: bool
    R: np.ndarray = field(default_factory=lambda: np.eye(3))
    t: np.ndarray = field(default_factory=lambda: np.zeros(3))
    points: np.ndarray | None = None       # (N_ref,3) in the reference camera frame
    triangulated: np.ndarray | None = None  # (N_ref,) bool
    num_inliers: int = 0
    reason: str = ""

    @property
    def T_cur_ref(self) -> np.ndarray:
        return Rt_to_T(self.R, self.t)


class TwoViewInitializer:
    """Relative pose and structure from two monocular views.

    The reference frame is fixed at construction; ``initialize`` is called with
    each new candidate frame until it succeeds.
    """

    def __init__(
        self,
        reference,
        sigma: float = 1.0,
        iterations: int = 200,
        *,
        min_triangulated: int = 50,
        min_parallax_deg: float = 1.0,
        ransac_prob: float = 0.999,
    ):
        self.reference = reference
        self.K = np.asarray(reference.camera.K, dtype=np.float64)
        self.sigma = float(sigma)
        self.iterations = int(iterations)
        self.min_triangulated = int(min_triangulated)
        self.min_parallax_deg = float(min_parallax_deg)
        self.ransac_prob = float(ransac_prob)

    def initialize(self, current, matches12: np.ndarray) -> TwoViewResult:
        """
        Args:
            current: the second Frame.
            matches12: (N_ref,) index into ``current`` per reference keypoint, -1 when unmatched.

        Returns:
            TwoViewResult; on success R, t map reference to current camera
            (|t| = 1) and ``points``/``triangulated`` are indexed like the
            reference keypoints.
        """
        n_ref = self.reference.N
        points = np.zeros((n_ref, 3), dtype=np.float64)
        triangulated = np.zeros(n_ref, dtype=bool)

        def fail(reason: str, n: int = 0) -> TwoViewResult:
            return TwoViewResult(False, points=points, triangulated=triangulated, num_inliers=n, reason=reason)

        idx1 = np.flatnonzero(np.asarray(matches12) >= 0)
        if idx1.size < self.min_triangulated:
            return fail(f"REJECT_INIT_TOO_FEW_MATCHES:{idx1.size}")
        idx2 = np.asarray(matches12)[idx1]

        p0 = np.asarray(self.reference.keypoints_un[idx1], dtype=np.float64)
        p1 = np.asarray(current.keypoints_un[idx2], dtype=np.float64)

        E, mask = cv2.findEssentialMat(
            p0,
            p1,
            cameraMatrix=self.K,
            method=cv2.RANSAC,
            prob=self.ransac_prob,
            threshold=self.sigma,
            maxIters=self.iterations,
        )
        if E is None or mask is None:
            return fail("REJECT_INIT_FIND_E_FAILED")

        # E could be a stack of candidate solutions; recoverPose wants one 3x3
        if E.shape[0] > 3 or E.shape[1] > 3:
            E = E[:3, :3]

        mask = mask.reshape(-1, 1).astype(np.uint8)
        retval, R, t, mask_pose = cv2.recoverPose(E, p0, p1, cameraMatrix=self.K, mask=mask)
        if retval is None or int(retval) < self.min_triangulated:
            return fail(f"REJECT_INIT_RECOVERPOSE_TOO_FEW_INLIERS:{0 if retval is None else int(retval)}")
        inliers = mask_pose.reshape(-1).astype(bool)

        T_cur_ref = Rt_to_T(R, t.reshape(3))
        X_ref, keep, parallax = triangulate_two_view(
            p0, p1, self.K, T_cur_ref, sigma=self.sigma, min_points=self.min_triangulated
        )
        sel = inliers[keep]
        X_ref, keep, parallax = X_ref[sel], keep[sel], parallax[sel]

        if keep.size < self.min_triangulated:
            return fail(f"REJECT_INIT_TOO_FEW_TRIANGULATED:{keep.size}", int(retval))
        med_parallax = float(np.median(parallax))
        if med_parallax < self.min_parallax_deg:
            return fail(f"REJECT_INIT_LOW_PARALLAX:{med_parallax:.2f}", int(retval))

        points[idx1[keep]] = X_ref
        triangulated[idx1[keep]] = True
        logger.debug("two-view init: %d triangulated, median parallax %.2f deg", keep.size, med_parallax)
        return TwoViewResult(
            True,
            R=np.asarray(R, dtype=np.float64),
            t=np.asarray(t, dtype=np.float64).reshape(3),
            points=points,
            triangulated=triangulated,
            num_inliers=int(keep.size),
            reason="INIT_OK",
        )
