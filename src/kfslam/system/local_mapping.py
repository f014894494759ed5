# src/kfslam/system/local_mapping.py
from __future__ import annotations

import logging
import threading
import time
from collections import deque

import numpy as np

from ..modules.orb_match import OrbMatcher, knn_ratio_matches
from ..modules.triangulate import parallax_cos, reprojection_error, triangulate_pair

logger = logging.getLogger(__name__)


class LocalMapping:
    """Background mapper consuming keyframes inserted by tracking.

    For each keyframe it registers observations, refreshes point
    descriptors and normals, rebuilds covisibility, culls weak recent points
    and triangulates new ones against the best covisible neighbors. All graph
    work happens inside ``graph.update()``.
    """

    def __init__(self, graph, monocular: bool, *, poll_s: float = 0.003):
        self.graph = graph
        self.monocular = bool(monocular)
        self.poll_s = float(poll_s)

        self._queue: deque[int] = deque()
        self._recent_points: list[int] = []
        self._mutex = threading.Lock()

        self._accept_keyframes = True
        self._abort_ba = False
        self._stopped = False
        self._stop_requested = False
        self._not_stop = False
        self._reset_requested = False
        self._finish_requested = False
        self._finished = True

        self._thread: threading.Thread | None = None

    # --- queue

    def insert_keyframe(self, kf) -> None:
        with self._mutex:
            self._queue.append(kf.id)
            self._abort_ba = True

    def keyframes_in_queue(self) -> int:
        with self._mutex:
            return len(self._queue)

    def check_new_keyframes(self) -> bool:
        return self.keyframes_in_queue() > 0

    # --- flags

    def accept_keyframes(self) -> bool:
        with self._mutex:
            return self._accept_keyframes

    def set_accept_keyframes(self, flag: bool) -> None:
        with self._mutex:
            self._accept_keyframes = bool(flag)

    def interrupt_ba(self) -> None:
        self._abort_ba = True

    def request_stop(self) -> None:
        with self._mutex:
            self._stop_requested = True
            self._abort_ba = True

    def stop(self) -> bool:
        with self._mutex:
            if self._stop_requested and not self._not_stop:
                self._stopped = True
                logger.debug("local mapping stopped")
                return True
            return False

    def is_stopped(self) -> bool:
        with self._mutex:
            return self._stopped

    def stop_requested(self) -> bool:
        with self._mutex:
            return self._stop_requested

    def release(self) -> None:
        with self._mutex:
            if self._finished and self._thread is not None:
                return
            self._stopped = False
            self._stop_requested = False
            self._queue.clear()
        logger.debug("local mapping released")

    def set_not_stop(self, flag: bool) -> bool:
        with self._mutex:
            if flag and self._stopped:
                return False
            self._not_stop = bool(flag)
            return True

    def request_reset(self) -> None:
        """Drop pending work; the mapper clears its own state before its next step."""
        with self._mutex:
            self._reset_requested = True
            self._queue.clear()
            self._recent_points = []

    def _reset_if_requested(self) -> None:
        with self._mutex:
            if self._reset_requested:
                self._queue.clear()
                self._recent_points = []
                self._reset_requested = False

    def request_finish(self) -> None:
        with self._mutex:
            self._finish_requested = True

    def is_finished(self) -> bool:
        with self._mutex:
            return self._finished

    # --- thread

    def start(self) -> threading.Thread:
        self._finished = False
        self._thread = threading.Thread(target=self.run, name="local_mapping", daemon=True)
        self._thread.start()
        return self._thread

    def join(self, timeout: float | None = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    def run(self) -> None:
        with self._mutex:
            self._finished = False
        while True:
            self.spin_once()

            if self.stop():
                while self.is_stopped() and not self._finish_requested:
                    time.sleep(self.poll_s)
            self._reset_if_requested()

            with self._mutex:
                if self._finish_requested:
                    break
            time.sleep(self.poll_s)

        with self._mutex:
            self._finished = True
            self._stopped = True

    def spin_once(self) -> bool:
        """Process one queued keyframe, if any. Returns True when work was done."""
        self._reset_if_requested()
        self.set_accept_keyframes(False)
        processed = False
        if self.check_new_keyframes():
            with self.graph.update():
                kf = self._process_new_keyframe()
                if kf is not None:
                    self._map_point_culling(kf)
                    self._create_new_map_points(kf)
            self._abort_ba = False
            processed = True
        self.set_accept_keyframes(True)
        return processed

    # --- processing

    def _process_new_keyframe(self):
        with self._mutex:
            if not self._queue:
                return None
            kf_id = self._queue.popleft()
        kf = self.graph.keyframe(kf_id)
        if kf is None or kf.bad:
            return None

        for i, mp_id in enumerate(kf.map_points):
            mp = self.graph.map_point(mp_id)
            if mp is None or mp.bad:
                continue
            if not mp.is_in_keyframe(kf.id):
                mp.add_observation(kf.id, i)
                mp.update_normal_and_depth()
                mp.compute_distinctive_descriptors()
            else:
                # created together with this keyframe
                with self._mutex:
                    self._recent_points.append(int(mp_id))

        kf.update_connections()
        return kf

    def _map_point_culling(self, kf) -> int:
        th_obs = 2 if self.monocular else 3
        keep = []
        culled = 0
        with self._mutex:
            recent = list(self._recent_points)
        for mp_id in recent:
            mp = self.graph.map_point(mp_id)
            if mp is None or mp.bad:
                continue
            age = kf.id - mp.first_kf_id
            if mp.found_ratio() < 0.25:
                self.graph.erase_map_point(mp_id)
                culled += 1
            elif age >= 2 and mp.num_observations <= th_obs:
                self.graph.erase_map_point(mp_id)
                culled += 1
            elif age >= 3:
                continue
            else:
                keep.append(mp_id)
        with self._mutex:
            self._recent_points = keep
        if culled:
            logger.debug("culled %d recent map points", culled)
        return culled

    def _create_new_map_points(self, kf) -> int:
        nn = 20 if self.monocular else 10
        neighs = kf.get_best_covisibility_keyframes(nn)
        C1 = kf.get_camera_center()
        K = kf.camera.K
        ratio_factor = 1.5 * kf.scale_factor
        created = 0

        for nid in neighs:
            kf2 = self.graph.keyframe(nid)
            if kf2 is None or kf2.bad:
                continue
            C2 = kf2.get_camera_center()
            baseline = float(np.linalg.norm(C2 - C1))
            if self.monocular:
                median2 = kf2.compute_scene_median_depth(2)
                if median2 <= 0.0 or baseline / median2 < 0.01:
                    continue
            elif baseline <= 0.0:
                continue

            free1 = np.flatnonzero([self._is_free(kf, i) for i in range(kf.N)])
            free2 = np.flatnonzero([self._is_free(kf2, i) for i in range(kf2.N)])
            if free1.size < 2 or free2.size < 2:
                continue
            matches = [
                (a, b) for a, b, d in knn_ratio_matches(kf.descriptors[free1], kf2.descriptors[free2], ratio=0.6)
                if d <= OrbMatcher.TH_LOW
            ]
            if not matches:
                continue
            i1 = free1[[a for a, _ in matches]]
            i2 = free2[[b for _, b in matches]]

            X = triangulate_pair(kf.keypoints_un[i1], kf2.keypoints_un[i2], K, kf.T_cw, kf2.T_cw)
            ok = np.all(np.isfinite(X), axis=1)
            X_safe = np.where(ok[:, None], X, 0.0)

            cos_par = parallax_cos(X_safe, C1, C2)
            ok &= np.isfinite(cos_par) & (cos_par > 0.0) & (cos_par < 0.9998)

            e1, z1 = reprojection_error(X_safe, kf.keypoints_un[i1], K, kf.T_cw)
            e2, z2 = reprojection_error(X_safe, kf2.keypoints_un[i2], K, kf2.T_cw)
            ok &= (z1 > 0.0) & (z2 > 0.0)
            ok &= e1 <= 5.991 * kf.level_sigma2[kf.octaves[i1]]
            ok &= e2 <= 5.991 * kf2.level_sigma2[kf2.octaves[i2]]

            d1 = np.linalg.norm(X_safe - C1, axis=1)
            d2 = np.linalg.norm(X_safe - C2, axis=1)
            ok &= (d1 > 0.0) & (d2 > 0.0)
            with np.errstate(divide="ignore", invalid="ignore"):
                ratio_dist = d2 / d1
            ratio_octave = kf.scale_factors[kf.octaves[i1]] / kf2.scale_factors[kf2.octaves[i2]]
            ok &= ~((ratio_dist * ratio_factor < ratio_octave) | (ratio_dist > ratio_octave * ratio_factor))

            for j in np.flatnonzero(ok):
                a, b = int(i1[j]), int(i2[j])
                mp = self.graph.create_map_point(X[j], kf.id)
                mp.add_observation(kf.id, a)
                mp.add_observation(kf2.id, b)
                kf.add_map_point(mp.id, a)
                kf2.add_map_point(mp.id, b)
                mp.compute_distinctive_descriptors()
                mp.update_normal_and_depth()
                with self._mutex:
                    self._recent_points.append(mp.id)
                created += 1

        if created:
            kf.update_connections()
            logger.debug("kf %d: triangulated %d new map points", kf.id, created)
        return created

    def _is_free(self, kf, i: int) -> bool:
        mp = self.graph.map_point(kf.map_points[i])
        return mp is None or mp.bad
