# src/kfslam/modules/orb_match.py
from __future__ import annotations

import logging
from dataclasses import dataclass

import cv2
import numpy as np

logger = logging.getLogger(__name__)

HISTO_LENGTH = 30


@dataclass
class Features:
    keypoints: np.ndarray    # (N,2) float32 pixel coords
    descriptors: np.ndarray  # (N,32) uint8
    octaves: np.ndarray      # (N,) int scale level
    angles: np.ndarray       # (N,) float degrees
    scale_factor: float = 1.2
    n_levels: int = 8

    def __len__(self) -> int:
        return int(self.keypoints.shape[0])

    @classmethod
    def empty(cls, scale_factor: float = 1.2, n_levels: int = 8) -> "Features":
        return cls(
            np.zeros((0, 2), np.float32),
            np.zeros((0, 32), np.uint8),
            np.zeros((0,), np.int32),
            np.zeros((0,), np.float32),
            scale_factor,
            n_levels,
        )


class OrbExtractor:
    """ORB keypoints + descriptors over a scale pyramid."""

    def __init__(
        self,
        n_features: int = 1000,
        scale_factor: float = 1.2,
        n_levels: int = 8,
        ini_th_fast: int = 20,
        min_th_fast: int = 7,
        edge_threshold: int = 31,
    ):
        self.n_features = int(n_features)
        self.scale_factor = float(scale_factor)
        self.n_levels = int(n_levels)
        self.ini_th_fast = int(ini_th_fast)
        self.min_th_fast = int(min_th_fast)
        self._orb = cv2.ORB_create(
            nfeatures=self.n_features,
            scaleFactor=self.scale_factor,
            nlevels=self.n_levels,
            edgeThreshold=edge_threshold,
            fastThreshold=self.ini_th_fast,
        )

    def extract(self, img_gray_u8: np.ndarray) -> Features:
        if img_gray_u8 is None:
            raise ValueError("Input image is None")
        if img_gray_u8.ndim != 2:
            raise ValueError("OrbExtractor expects grayscale images (H,W).")

        self._orb.setFastThreshold(self.ini_th_fast)
        kps, des = self._orb.detectAndCompute(img_gray_u8, None)
        # low-texture image: retry with the permissive FAST threshold
        if (kps is None or len(kps) < self.n_features // 2) and self.min_th_fast < self.ini_th_fast:
            self._orb.setFastThreshold(self.min_th_fast)
            kps, des = self._orb.detectAndCompute(img_gray_u8, None)

        if des is None or kps is None or len(kps) == 0:
            return Features.empty(self.scale_factor, self.n_levels)

        return Features(
            keypoints=np.array([k.pt for k in kps], dtype=np.float32),
            descriptors=np.asarray(des, dtype=np.uint8),
            octaves=np.array([k.octave for k in kps], dtype=np.int32),
            angles=np.array([k.angle for k in kps], dtype=np.float32),
            scale_factor=self.scale_factor,
            n_levels=self.n_levels,
        )


def descriptor_distance(a: np.ndarray, b: np.ndarray):
    """Hamming distance between binary descriptors; broadcasts over leading dims."""
    x = np.bitwise_xor(np.asarray(a, dtype=np.uint8), np.asarray(b, dtype=np.uint8))
    d = np.unpackbits(x, axis=-1).sum(axis=-1)
    return int(d) if np.ndim(d) == 0 else d.astype(np.int64)


def knn_ratio_matches(des0: np.ndarray, des1: np.ndarray, ratio: float = 0.8) -> list[tuple[int, int, float]]:
    """Brute-force Hamming kNN with Lowe's ratio test, mutually consistent.

    Returns (idx0, idx1, distance) sorted by distance.
    """
    if des0 is None or des1 is None or len(des0) < 2 or len(des1) < 2:
        return []
    bf = cv2.BFMatcher(cv2.NORM_HAMMING, crossCheck=False)

    def _good(d0, d1):
        out = []
        for pair in bf.knnMatch(d0, d1, k=2):
            if len(pair) < 2:
                continue
            m, n = pair
            if m.distance < ratio * n.distance:
                out.append(m)
        return out

    fwd = _good(des0, des1)
    rev = {(m.trainIdx, m.queryIdx) for m in _good(des1, des0)}  # (idx0, idx1)
    good = [m for m in fwd if (m.queryIdx, m.trainIdx) in rev]
    good.sort(key=lambda m: m.distance)
    return [(m.queryIdx, m.trainIdx, float(m.distance)) for m in good]


def _rotation_bin(angle1: float, angle2: float) -> int:
    rot = float(angle1) - float(angle2)
    if rot < 0.0:
        rot += 360.0
    return int(round(rot * HISTO_LENGTH / 360.0)) % HISTO_LENGTH


def _three_maxima(hist: list[list[int]]) -> set[int]:
    counts = np.array([len(h) for h in hist])
    order = np.argsort(-counts, kind="stable")
    best = counts[order[0]]
    keep = {int(order[0])}
    for b in order[1:3]:
        if counts[b] >= 0.1 * best and counts[b] > 0:
            keep.add(int(b))
    return keep


class OrbMatcher:
    """Descriptor search constrained by geometry.

    Map point handles in frames/keyframes are resolved through ``graph``.
    Every method writes associations in place and returns the match count.
    """

    TH_HIGH = 100
    TH_LOW = 50

    def __init__(self, graph, check_orientation: bool = True):
        self.graph = graph
        self.check_orientation = check_orientation

    def _taken(self, frame, j: int) -> bool:
        mp_id = frame.map_points[j]
        if mp_id < 0:
            return False
        mp = self.graph.map_point(mp_id)
        return mp is not None and mp.num_observations > 0

    def search_for_initialization(
        self,
        f1,
        f2,
        prev_matched: np.ndarray,
        window_size: float = 100,
        nn_ratio: float = 0.9,
    ) -> tuple[int, np.ndarray]:
        """Match level-0 features of f1 into f2 around their previous positions.

        prev_matched (N1,2) is updated with the matched positions in f2.
        Returns (n, matches12) where matches12[i1] is the f2 index or -1.
        """
        matches12 = np.full(f1.N, -1, dtype=np.int64)
        matches21 = np.full(f2.N, -1, dtype=np.int64)
        matched_dist = np.full(f2.N, np.iinfo(np.int64).max, dtype=np.int64)
        hist: list[list[int]] = [[] for _ in range(HISTO_LENGTH)]
        n = 0

        for i1 in range(f1.N):
            level1 = int(f1.octaves[i1])
            if level1 > 0:
                continue
            idx2 = f2.get_features_in_area(prev_matched[i1, 0], prev_matched[i1, 1], window_size, level1, level1)
            if idx2.size == 0:
                continue

            d = descriptor_distance(f1.descriptors[i1], f2.descriptors[idx2])
            order = np.argsort(d, kind="stable")
            best = int(d[order[0]])
            second = int(d[order[1]]) if order.size > 1 else np.iinfo(np.int64).max
            best_idx2 = int(idx2[order[0]])

            if best > self.TH_LOW:
                continue
            if matched_dist[best_idx2] <= best:
                continue
            if best < nn_ratio * second:
                if matches21[best_idx2] >= 0:
                    matches12[matches21[best_idx2]] = -1
                    n -= 1
                matches12[i1] = best_idx2
                matches21[best_idx2] = i1
                matched_dist[best_idx2] = best
                n += 1
                if self.check_orientation:
                    hist[_rotation_bin(f1.angles[i1], f2.angles[best_idx2])].append(i1)

        if self.check_orientation and n > 0:
            keep = _three_maxima(hist)
            for b, members in enumerate(hist):
                if b in keep:
                    continue
                for i1 in members:
                    if matches12[i1] >= 0:
                        matches12[i1] = -1
                        n -= 1

        for i1 in np.flatnonzero(matches12 >= 0):
            prev_matched[i1] = f2.keypoints_un[matches12[i1]]

        return n, matches12

    def search_by_projection(self, frame, source, th: float, check_scale: bool = True) -> int:
        """Project the map points seen by ``source`` (Frame or KeyFrame) into ``frame``.

        The search radius is ``th`` scaled by the source keypoint's level; with
        ``check_scale`` only adjacent pyramid levels are accepted.
        """
        if not frame.has_pose:
            return 0
        R_cw = frame.T_cw[:3, :3]
        t_cw = frame.T_cw[:3, 3]
        outliers = getattr(source, "outliers", None)
        hist: list[list[int]] = [[] for _ in range(HISTO_LENGTH)]
        n = 0

        for i, mp_id in enumerate(source.map_points):
            if mp_id < 0 or (outliers is not None and outliers[i]):
                continue
            mp = self.graph.map_point(mp_id)
            if mp is None or mp.bad or mp.descriptor is None:
                continue

            Xc = R_cw @ mp.position + t_cw
            if Xc[2] <= 0.0:
                continue
            u, v = frame.camera.project(Xc)
            if not frame.camera.is_in_image(u, v):
                continue

            octave = int(source.octaves[i])
            radius = th * frame.scale_factors[min(octave, frame.n_levels - 1)]
            if check_scale:
                idx = frame.get_features_in_area(u, v, radius, octave - 1, octave + 1)
            else:
                idx = frame.get_features_in_area(u, v, radius)
            idx = [j for j in idx if not self._taken(frame, j)]
            if not idx:
                continue

            d = descriptor_distance(mp.descriptor, frame.descriptors[idx])
            k = int(np.argmin(d))
            if d[k] > self.TH_HIGH:
                continue
            j = int(idx[k])
            frame.map_points[j] = mp_id
            n += 1
            if self.check_orientation:
                hist[_rotation_bin(source.angles[i], frame.angles[j])].append(j)

        if self.check_orientation and n > 0:
            keep = _three_maxima(hist)
            for b, members in enumerate(hist):
                if b in keep:
                    continue
                for j in members:
                    frame.map_points[j] = -1
                    n -= 1
        return n

    def search_local_points(self, frame, map_point_ids, th: float = 1.0, nn_ratio: float = 0.8) -> int:
        """Match local map points flagged visible by ``Frame.is_in_frustum``."""
        n = 0
        for mp_id in map_point_ids:
            mp = self.graph.map_point(mp_id)
            if mp is None or mp.bad or not mp.track_in_view or mp.descriptor is None:
                continue

            level = int(mp.track_scale_level)
            r = 2.5 if mp.track_view_cos > 0.998 else 4.0
            r *= th * frame.scale_factors[level]
            idx = frame.get_features_in_area(mp.track_proj_x, mp.track_proj_y, r, level - 1, level)
            idx = [j for j in idx if not self._taken(frame, j)]
            if not idx:
                continue

            d = descriptor_distance(mp.descriptor, frame.descriptors[idx])
            order = np.argsort(d, kind="stable")
            best = int(d[order[0]])
            if best > self.TH_HIGH:
                continue
            if order.size > 1:
                second = int(d[order[1]])
                same_level = frame.octaves[idx[order[0]]] == frame.octaves[idx[order[1]]]
                if same_level and best > nn_ratio * second:
                    continue
            frame.map_points[idx[order[0]]] = mp_id
            n += 1
        return n
