# src/kfslam/modules/triangulate.py
from __future__ import annotations
import numpy as np
import cv2


def triangulate_pair(
    pts1: np.ndarray,   # (N,2) pixels in camera 1
    pts2: np.ndarray,   # (N,2) pixels in camera 2
    K: np.ndarray,      # (3,3)
    T1_cw: np.ndarray,  # (4,4) world->cam1
    T2_cw: np.ndarray,  # (4,4) world->cam2
) -> np.ndarray:
    """Linear triangulation of corresponding pixels. Returns (N,3) world points."""
    p1 = np.asarray(pts1, dtype=np.float64).reshape(-1, 2)
    p2 = np.asarray(pts2, dtype=np.float64).reshape(-1, 2)
    if p1.shape[0] == 0:
        return np.zeros((0, 3), np.float64)
    K64 = np.asarray(K, dtype=np.float64)
    P1 = K64 @ T1_cw[:3, :]
    P2 = K64 @ T2_cw[:3, :]
    X_h = cv2.triangulatePoints(P1, P2, p1.T, p2.T)        # 4xN
    with np.errstate(divide="ignore", invalid="ignore"):
        X = (X_h[:3, :] / X_h[3:4, :]).T
    return X


def reprojection_error(X_w: np.ndarray, pts: np.ndarray, K: np.ndarray, T_cw: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """Per-point squared pixel error and camera depth."""
    Xc = X_w @ T_cw[:3, :3].T + T_cw[:3, 3]
    z = Xc[:, 2]
    with np.errstate(divide="ignore", invalid="ignore"):
        u = K[0, 0] * Xc[:, 0] / z + K[0, 2]
        v = K[1, 1] * Xc[:, 1] / z + K[1, 2]
    e2 = (u - pts[:, 0]) ** 2 + (v - pts[:, 1]) ** 2
    return e2, z


def parallax_cos(X_w: np.ndarray, C1: np.ndarray, C2: np.ndarray) -> np.ndarray:
    """Cosine of the angle between the two viewing rays of each point."""
    n1 = X_w - C1
    n2 = X_w - C2
    d = np.linalg.norm(n1, axis=1) * np.linalg.norm(n2, axis=1)
    with np.errstate(divide="ignore", invalid="ignore"):
        return np.sum(n1 * n2, axis=1) / d


def triangulate_two_view(
    pts_ref: np.ndarray,    # (N,2) pixels
    pts_cur: np.ndarray,    # (N,2) pixels
    K: np.ndarray,          # (3,3)
    T_cur_ref: np.ndarray,  # (4,4) ref->cur
    *,
    sigma: float = 1.0,
    min_points: int = 50,
) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Returns:
      X_ref: (M,3) 3D points in the reference camera frame
      keep_idx: (M,) indices into input correspondences that survived filtering
      parallax_deg: (M,) parallax angle of each kept point
    """
    empty = (np.zeros((0, 3), np.float64), np.zeros((0,), np.int64), np.zeros((0,), np.float64))
    if pts_ref.shape[0] < min_points:
        return empty

    K64 = np.asarray(K, dtype=np.float64)
    p0 = np.asarray(pts_ref, dtype=np.float64)
    p1 = np.asarray(pts_cur, dtype=np.float64)

    T_ref = np.eye(4)
    X_ref = triangulate_pair(p0, p1, K64, T_ref, T_cur_ref)

    finite = np.all(np.isfinite(X_ref), axis=1)
    X_safe = np.where(finite[:, None], X_ref, 0.0)

    # Cheirality: depth > 0 in both cameras
    e0, z0 = reprojection_error(X_safe, p0, K64, T_ref)
    e1, z1 = reprojection_error(X_safe, p1, K64, T_cur_ref)
    mask = finite & (z0 > 1e-6) & (z1 > 1e-6)

    # chi2 gate on both views
    th2 = 4.0 * sigma * sigma
    mask &= (e0 <= th2) & (e1 <= th2)

    C_cur = -T_cur_ref[:3, :3].T @ T_cur_ref[:3, 3]
    cos_par = parallax_cos(X_safe, np.zeros(3), C_cur)
    parallax = np.degrees(np.arccos(np.clip(np.nan_to_num(cos_par, nan=1.0), -1.0, 1.0)))

    keep_idx = np.flatnonzero(mask).astype(np.int64)
    return X_ref[keep_idx], keep_idx, parallax[keep_idx]
