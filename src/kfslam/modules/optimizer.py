# src/kfslam/modules/optimizer.py
from __future__ import annotations

import logging

import cv2
import numpy as np
from scipy.optimize import least_squares
from scipy.sparse import lil_matrix
from scipy.spatial.transform import Rotation

from ..geom.se3 import Rt_to_T

logger = logging.getLogger(__name__)

CHI2_MONO = 5.991  # 95% for 2 dof


class Optimizer:
    """Pose-only refinement and global bundle adjustment over the map graph."""

    def __init__(self, graph, pose_rounds: int = 4):
        self.graph = graph
        self.pose_rounds = int(pose_rounds)

    def pose_optimization(self, frame) -> int:
        """Refine ``frame.T_cw`` from its map point associations.

        Sets ``frame.outliers`` for associations whose weighted reprojection
        error exceeds the chi-square gate and returns the inlier count.
        """
        idx = []
        X = []
        for i, mp_id in enumerate(frame.map_points):
            if mp_id < 0:
                continue
            mp = self.graph.map_point(mp_id)
            if mp is None or mp.bad:
                continue
            idx.append(i)
            X.append(mp.position)
        if len(idx) < 4:
            return 0

        idx = np.asarray(idx)
        X = np.asarray(X, dtype=np.float64)
        uv = np.asarray(frame.keypoints_un[idx], dtype=np.float64)
        inv_sigma2 = frame.inv_level_sigma2[frame.octaves[idx]]
        K = frame.camera.K

        T0 = frame.T_cw if frame.T_cw is not None else np.eye(4)
        rvec, _ = cv2.Rodrigues(T0[:3, :3])
        tvec = T0[:3, 3].reshape(3, 1).copy()

        inlier = np.ones(idx.size, dtype=bool)
        for _ in range(self.pose_rounds):
            use = np.flatnonzero(inlier)
            if use.size < 4:
                break
            ok, r, t = cv2.solvePnP(
                X[use], uv[use], K, None, rvec.copy(), tvec.copy(),
                useExtrinsicGuess=True, flags=cv2.SOLVEPNP_ITERATIVE,
            )
            if not ok:
                break
            rvec, tvec = r, t

            R = cv2.Rodrigues(rvec)[0]
            Xc = X @ R.T + tvec.reshape(3)
            z = Xc[:, 2]
            with np.errstate(divide="ignore", invalid="ignore"):
                proj = Xc[:, :2] / z[:, None] * np.array([K[0, 0], K[1, 1]]) + np.array([K[0, 2], K[1, 2]])
            chi2 = np.sum((proj - uv) ** 2, axis=1) * inv_sigma2
            inlier = np.isfinite(chi2) & (chi2 <= CHI2_MONO) & (z > 0.0)

        frame.outliers[:] = False
        frame.outliers[idx] = ~inlier
        frame.set_pose(Rt_to_T(cv2.Rodrigues(rvec)[0], tvec.reshape(3)))
        return int(inlier.sum())

    def global_bundle_adjustment(self, graph=None, iterations: int = 20) -> bool:
        """Jointly refine every live keyframe pose and map point.

        The first keyframe is held fixed to anchor the gauge. ``iterations`` is
        the outer solver budget; each allows up to ten residual evaluations.
        """
        graph = graph if graph is not None else self.graph
        kfs = graph.get_all_keyframes()
        mps = graph.get_all_map_points()
        if len(kfs) < 2 or not mps:
            return False

        kf_col = {kf.id: c for c, kf in enumerate(kfs)}
        cam_idx, pt_idx, uv, w = [], [], [], []
        for p, mp in enumerate(mps):
            for kf_id, i in mp.observations.items():
                c = kf_col.get(kf_id)
                if c is None:
                    continue
                kf = kfs[c]
                cam_idx.append(c)
                pt_idx.append(p)
                uv.append(kf.keypoints_un[i])
                w.append(np.sqrt(kf.inv_level_sigma2[kf.octaves[i]]))
        if not cam_idx:
            return False

        cam_idx = np.asarray(cam_idx)
        pt_idx = np.asarray(pt_idx)
        uv = np.asarray(uv, dtype=np.float64)
        w = np.asarray(w, dtype=np.float64)
        K = kfs[0].camera.K

        n_cams = len(kfs)
        n_free = n_cams - 1
        n_pts = len(mps)
        cam0 = np.hstack([Rotation.from_matrix(kfs[0].T_cw[:3, :3]).as_rotvec(), kfs[0].T_cw[:3, 3]])
        cams = np.array([
            np.hstack([Rotation.from_matrix(kf.T_cw[:3, :3]).as_rotvec(), kf.T_cw[:3, 3]]) for kf in kfs[1:]
        ])
        pts = np.array([mp.position for mp in mps])
        x0 = np.hstack([cams.ravel(), pts.ravel()])

        def residuals(x):
            all_cams = np.vstack([cam0, x[: n_free * 6].reshape(n_free, 6)])
            P = x[n_free * 6:].reshape(n_pts, 3)
            c = all_cams[cam_idx]
            Xc = Rotation.from_rotvec(c[:, :3]).apply(P[pt_idx]) + c[:, 3:]
            z = np.where(np.abs(Xc[:, 2]) < 1e-9, 1e-9, Xc[:, 2])
            u = K[0, 0] * Xc[:, 0] / z + K[0, 2]
            v = K[1, 1] * Xc[:, 1] / z + K[1, 2]
            return (np.column_stack([u, v]) - uv).ravel() * np.repeat(w, 2)

        m = cam_idx.size * 2
        A = lil_matrix((m, x0.size), dtype=int)
        rows = np.arange(cam_idx.size)
        for s in range(6):
            free = cam_idx > 0
            A[2 * rows[free], (cam_idx[free] - 1) * 6 + s] = 1
            A[2 * rows[free] + 1, (cam_idx[free] - 1) * 6 + s] = 1
        for s in range(3):
            A[2 * rows, n_free * 6 + pt_idx * 3 + s] = 1
            A[2 * rows + 1, n_free * 6 + pt_idx * 3 + s] = 1

        res = least_squares(
            residuals,
            x0,
            jac_sparsity=A,
            loss="huber",
            f_scale=np.sqrt(CHI2_MONO),
            x_scale="jac",
            method="trf",
            max_nfev=10 * iterations,
        )
        logger.debug("global BA: %d kfs, %d points, cost %.3f -> %.3f", n_cams, n_pts, 0.5 * np.sum(residuals(x0) ** 2), res.cost)

        cams = res.x[: n_free * 6].reshape(n_free, 6)
        pts = res.x[n_free * 6:].reshape(n_pts, 3)
        for kf, c in zip(kfs[1:], cams):
            kf.set_pose(Rt_to_T(Rotation.from_rotvec(c[:3]).as_matrix(), c[3:]))
        for mp, X in zip(mps, pts):
            mp.position = X.copy()
            mp.update_normal_and_depth()
        return True
