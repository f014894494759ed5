# src/kfslam/system/tracking.py
from __future__ import annotations

import logging

import numpy as np

from ..config import SensorType, SlamConfig
from ..geom.camera import PinholeCamera
from ..geom.se3 import Rt_to_T, angular_distance, inv_T
from ..graph.frame import Frame
from ..graph.map import Map
from ..modules.const_vel import ConstantVelocityModel
from ..modules.emat import TwoViewInitializer
from ..modules.image_align import ImageAligner
from ..modules.imu import ImuMeasurement, ImuMotionModel, MadgwickFilter
from ..modules.optimizer import Optimizer
from ..modules.orb_match import OrbExtractor, OrbMatcher
from ..modules.pattern import PatternDetector
from .policy import KeyFramePolicy
from .proposal import Evidence, Proposal
from .state import TrackingState
from .telemetry import Telemetry

logger = logging.getLogger(__name__)

MIN_MATCHES = 20
MIN_INLIERS = 10
MIN_LOCAL_MAP_INLIERS = 15
MAX_LOCAL_KEYFRAMES = 80
EARLY_LOSS_KEYFRAMES = 5


class Tracking:
    """Per-frame pose tracking and map bootstrapping.

    One ``track_*`` call runs a full cycle under the map update lock:
    bootstrap while NOT_INITIALIZED, otherwise estimate the pose with one
    strategy (reference keyframe, motion model, inertial model or
    relocalization), refine it against the local map and decide whether the
    frame becomes a keyframe. Failures never raise; they show up as a
    rejected Proposal and a LOST state.

    Every collaborator can be injected; defaults are built from ``config``.
    """

    def __init__(
        self,
        config: SlamConfig,
        graph: Map,
        sensor: SensorType | None = None,
        *,
        local_mapper,
        loop_closer=None,
        camera: PinholeCamera | None = None,
        extractor=None,
        ini_extractor=None,
        matcher=None,
        optimizer=None,
        aligner=None,
        pattern_detector=None,
        motion_model=None,
        orientation_filter=None,
        initializer_factory=TwoViewInitializer,
        telemetry: Telemetry | None = None,
    ):
        self.config = config
        self.sensor = sensor if sensor is not None else config.sensor
        self.graph = graph
        self.camera = camera if camera is not None else PinholeCamera(config.camera)
        self.local_mapper = local_mapper
        self.loop_closer = loop_closer

        orb = config.orb
        self.extractor = extractor if extractor is not None else OrbExtractor(
            orb.n_features, orb.scale_factor, orb.n_levels, orb.ini_th_fast, orb.min_th_fast
        )
        if ini_extractor is not None:
            self.ini_extractor = ini_extractor
        elif extractor is None and self.sensor != SensorType.RGBD:
            # monocular bootstrap wants a denser set of features
            self.ini_extractor = OrbExtractor(
                2 * orb.n_features, orb.scale_factor, orb.n_levels, orb.ini_th_fast, orb.min_th_fast
            )
        else:
            self.ini_extractor = self.extractor

        trk = config.tracking
        self.matcher = matcher if matcher is not None else OrbMatcher(graph)
        self.optimizer = optimizer if optimizer is not None else Optimizer(graph)
        self.aligner = aligner if aligner is not None else ImageAligner()
        self.pattern_detector = pattern_detector if pattern_detector is not None else PatternDetector(
            trk.pattern_cols, trk.pattern_rows, trk.pattern_cell_w, trk.pattern_cell_h
        )
        if motion_model is not None:
            self.motion_model = motion_model
        elif self.sensor == SensorType.MONOCULAR_IMU:
            self.motion_model = ImuMotionModel()
        else:
            self.motion_model = ConstantVelocityModel()
        self.orientation_filter = orientation_filter if orientation_filter is not None else MadgwickFilter(trk.madgwick_gain)
        self.initializer_factory = initializer_factory
        self.telemetry = telemetry if telemetry is not None else Telemetry()

        self.use_pattern = trk.use_pattern
        self.align_image = trk.align_image
        self.threshold = float(trk.search_radius)
        self.movement_threshold = float(trk.movement_threshold)
        self.th_depth = self.camera.bf * trk.th_depth / self.camera.fx
        dmf = trk.depth_map_factor
        self.depth_map_factor = 1.0 if abs(dmf) < 1e-5 else 1.0 / dmf
        self.policy = KeyFramePolicy(self.sensor, config.max_frames, trk.min_frames, trk.use_pattern)

        self.only_tracking = False
        self.stay_in_curve = False
        self._state = TrackingState.NO_IMAGES_YET
        self._last_processed_state = TrackingState.NO_IMAGES_YET
        self._current_frame: Frame | None = None
        self._last_frame: Frame | None = None
        self._imu: ImuMeasurement | None = None
        self._rec: dict = {}
        self._clear_session()

    def _clear_session(self) -> None:
        self._initializer = None
        self._initial_frame: Frame | None = None
        self._prev_matched: np.ndarray | None = None
        self._ini_matches: np.ndarray | None = None
        self._ini_points: np.ndarray | None = None
        self._reference_kf_id = -1
        self._last_kf_id = -1
        self._last_kf_frame_id = 0
        self._last_reloc_frame_id = 0
        self._local_kf_ids: list[int] = []
        self._local_mp_ids: list[int] = []
        self._matches_inliers = 0
        self._last_relative_pose: np.ndarray | None = None

    # --- read-only views

    @property
    def state(self) -> TrackingState:
        return self._state

    @property
    def last_processed_state(self) -> TrackingState:
        return self._last_processed_state

    @property
    def map(self) -> Map:
        return self.graph

    @property
    def current_frame(self) -> Frame | None:
        return self._current_frame

    @property
    def last_frame(self) -> Frame | None:
        return self._last_frame

    @property
    def reference_keyframe(self):
        return self.graph.keyframe(self._reference_kf_id)

    @property
    def last_reloc_frame_id(self) -> int:
        return self._last_reloc_frame_id

    @property
    def local_keyframes(self) -> list[int]:
        return list(self._local_kf_ids)

    @property
    def local_map_points(self) -> list[int]:
        return list(self._local_mp_ids)

    @property
    def matches_inliers(self) -> int:
        return self._matches_inliers

    # --- entry points

    def track_monocular(self, image: np.ndarray, timestamp: float = 0.0) -> np.ndarray:
        image = self._check_image(image)
        frame = self._create_frame(image, timestamp)
        self._track(frame)
        return frame.get_pose()

    def track_rgbd(self, image: np.ndarray, depth: np.ndarray, timestamp: float = 0.0) -> np.ndarray:
        image = self._check_image(image)
        depth = np.asarray(depth)
        if depth.shape[:2] != image.shape[:2] or depth.ndim != 2:
            raise ValueError(f"depth map {depth.shape} does not match image {image.shape}")
        depth_m = depth.astype(np.float32) * self.depth_map_factor
        frame = self._create_frame(image, timestamp, depth=depth_m)
        self._track(frame)
        return frame.get_pose()

    def track_inertial(self, image: np.ndarray, imu: ImuMeasurement, timestamp: float = 0.0) -> np.ndarray:
        image = self._check_image(image)
        frame = self._create_frame(image, timestamp)
        self._imu = imu
        self._track(frame)
        return frame.get_pose()

    def inform_only_tracking(self, flag: bool) -> None:
        self.only_tracking = bool(flag)

    def pattern_cell_size(self, w: float, h: float) -> None:
        self.pattern_detector.set_cell_size(w, h)

    def reset(self) -> None:
        """Drop the map and every bootstrap/tracking state. Safe to call repeatedly."""
        with self.graph.update():
            logger.info("system resetting")
            self.local_mapper.request_reset()
            if self.loop_closer is not None:
                self.loop_closer.request_reset()
            self.graph.clear()
            self._state = TrackingState.NO_IMAGES_YET
            self._last_frame = None
            self._clear_session()
            self.motion_model.restart()

    # --- cycle

    @staticmethod
    def _check_image(image: np.ndarray) -> np.ndarray:
        if image is None:
            raise ValueError("Input image is None")
        image = np.asarray(image)
        if image.ndim != 2:
            raise ValueError(f"Tracking expects single-channel images (H,W), got shape {image.shape}.")
        return image

    def _create_frame(self, image: np.ndarray, timestamp: float, depth: np.ndarray | None = None) -> Frame:
        if self._state in (TrackingState.NO_IMAGES_YET, TrackingState.NOT_INITIALIZED):
            extractor = self.ini_extractor if depth is None else self.extractor
        else:
            extractor = self.extractor
        features = extractor.extract(image)
        return Frame(
            self.graph.new_frame_id(),
            image,
            features,
            self.camera,
            timestamp=timestamp,
            depth=depth,
            th_depth=self.th_depth,
        )

    def _track(self, frame: Frame) -> None:
        self._current_frame = frame
        if self._state == TrackingState.NO_IMAGES_YET:
            self._state = TrackingState.NOT_INITIALIZED
        self._last_processed_state = self._state

        self._rec = {
            "ts": float(frame.timestamp),
            "num_keypoints": frame.N,
            "strategy": None,
            "reason": "",
            "num_matches": 0,
            "num_inliers": 0,
            "proposals": [],
        }
        with self.graph.update():
            self._run_cycle(frame)
            if self._state == TrackingState.NO_IMAGES_YET:
                frame.T_cw = None
            self._rec.update({
                "state": self._state.value,
                "reference_kf": self._reference_kf_id,
                "num_keyframes": self.graph.keyframes_in_map(),
                "num_map_points": self.graph.map_points_in_map(),
            })
        if self.sensor == SensorType.MONOCULAR_IMU:
            self._rec["stay_in_curve"] = bool(self.stay_in_curve)
        self.telemetry.log_frame(frame.id, self._rec)

    def _run_cycle(self, frame: Frame) -> None:
        if self._state == TrackingState.NOT_INITIALIZED:
            if self.sensor == SensorType.RGBD:
                self._rgbd_initialization()
            elif self.use_pattern:
                self._pattern_initialization()
            else:
                self._monocular_initialization()
            if self._state != TrackingState.OK:
                return
        else:
            ok = self._estimate_pose()
            frame.reference_kf_id = self._reference_kf_id

            if ok:
                ok = self._track_local_map()
            self._state = TrackingState.OK if ok else TrackingState.LOST

            if ok:
                self._on_tracking_success()
            else:
                frame.T_cw = None

            if self._state == TrackingState.LOST and self.graph.keyframes_in_map() <= EARLY_LOSS_KEYFRAMES:
                logger.info("track lost soon after initialisation, resetting")
                self._rec["reset"] = True
                self.reset()
                return

            if frame.reference_kf_id < 0:
                frame.reference_kf_id = self._reference_kf_id
            self._last_frame = frame.copy()

        ref = self.graph.keyframe(frame.reference_kf_id)
        if frame.has_pose and ref is not None:
            self._last_relative_pose = frame.T_cw @ inv_T(ref.T_cw)

    def _log_proposal(self, prop: Proposal) -> None:
        self._rec["proposals"].append({
            "name": prop.name,
            "valid": bool(prop.valid),
            "reason": str(prop.reason),
            "num_matches": int(prop.evidence.num_matches),
            "num_inliers": int(prop.evidence.num_inliers),
        })
        self._rec["strategy"] = prop.name
        self._rec["reason"] = prop.reason
        self._rec["num_matches"] = int(prop.evidence.num_matches)
        self._rec["num_inliers"] = int(prop.evidence.num_inliers)
        if not prop.valid:
            logger.debug("frame %d: %s", self._current_frame.id, prop.reason)

    def _estimate_pose(self) -> bool:
        frame = self._current_frame
        if self._state == TrackingState.OK:
            # the mapper may have merged points seen in the last frame
            self._check_replaced_in_last_frame()

            if not self.motion_model.started() or frame.id < self._last_reloc_frame_id + 2:
                prop = self._track_reference_keyframe()
            else:
                if self.sensor == SensorType.MONOCULAR_IMU:
                    prop = self._track_with_imu_model()
                else:
                    prop = self._track_with_motion_model()
                if not prop.valid:
                    self._log_proposal(prop)
                    prop = self._track_reference_keyframe()
                    self.motion_model.restart()
        else:
            prop = self._relocalization()
            self.motion_model.restart()

        self._log_proposal(prop)
        return prop.valid

    def _check_replaced_in_last_frame(self) -> None:
        last = self._last_frame
        if last is None:
            return
        for i, mp_id in enumerate(last.map_points):
            mp = self.graph.map_point(mp_id)
            if mp is None:
                continue
            rep = mp.get_replaced()
            if rep >= 0:
                last.map_points[i] = rep

    # --- pose strategies

    def _optimize_and_discard(self, name: str, n_matches: int) -> Proposal:
        frame = self._current_frame
        tag = name.upper()
        if n_matches < MIN_MATCHES:
            return Proposal(name, frame.get_pose(), Evidence(n_matches, 0), valid=False,
                            reason=f"REJECT_{tag}_TOO_FEW_MATCHES:{n_matches}")

        self.optimizer.pose_optimization(frame)

        n_map = 0
        for i in range(frame.N):
            mp_id = frame.map_points[i]
            if mp_id < 0:
                continue
            mp = self.graph.map_point(mp_id)
            if frame.outliers[i]:
                frame.map_points[i] = -1
                frame.outliers[i] = False
                if mp is not None:
                    mp.track_in_view = False
                    mp.last_frame_seen = frame.id
                n_matches -= 1
            elif mp is not None and mp.num_observations > 0:
                n_map += 1

        if n_map < MIN_INLIERS:
            return Proposal(name, frame.get_pose(), Evidence(n_matches, n_map), valid=False,
                            reason=f"REJECT_{tag}_TOO_FEW_INLIERS:{n_map}")
        return Proposal(name, frame.get_pose(), Evidence(n_matches, n_map), valid=True, reason=f"{tag}_OK")

    def _track_reference_keyframe(self) -> Proposal:
        frame = self._current_frame
        ref = self.graph.keyframe(self._reference_kf_id)
        if ref is None or self._last_frame is None:
            return Proposal("reference_kf", frame.get_pose(), Evidence(), valid=False,
                            reason="REJECT_REFERENCE_KF_MISSING")
        check_scale = self.sensor != SensorType.RGBD

        last_pose = self._last_frame.get_pose()
        frame.set_pose(last_pose)
        if self.align_image and not self.aligner.compute_pose(frame, ref):
            logger.debug("image align failed against reference keyframe %d", ref.id)
            frame.set_pose(last_pose)

        frame.clear_map_points()
        n = self.matcher.search_by_projection(frame, ref, self.threshold, check_scale)

        # few matches: drop the alignment and widen the window on the last frame
        if n < MIN_MATCHES:
            frame.set_pose(last_pose)
            frame.clear_map_points()
            n = self.matcher.search_by_projection(frame, self._last_frame, 2 * self.threshold, check_scale)

        return self._optimize_and_discard("reference_kf", n)

    def _update_last_frame(self) -> None:
        last = self._last_frame
        ref = self.graph.keyframe(last.reference_kf_id)
        if ref is not None and self._last_relative_pose is not None:
            last.set_pose(self._last_relative_pose @ ref.T_cw)

        if not self.only_tracking or self.sensor != SensorType.RGBD or self._last_kf_frame_id == last.id:
            return

        # localization only: give the last frame short-lived points from its depth
        order = np.argsort(last.depth, kind="stable")
        n_points = 0
        for i in order:
            z = last.depth[i]
            if z <= 0.0:
                continue
            mp = self.graph.map_point(last.map_points[i])
            if mp is None or mp.num_observations < 1:
                X = last.unproject_depth(i)
                tmp = self.graph.create_temporal_map_point(X, last.descriptors[i])
                last.map_points[i] = tmp.id
            n_points += 1
            if z > self.th_depth and n_points > 100:
                break

    def _track_visual(self, predicted: np.ndarray, name: str) -> Proposal:
        frame = self._current_frame
        last = self._last_frame
        check_scale = self.sensor != SensorType.RGBD

        frame.set_pose(predicted)
        if self.align_image and not self.aligner.compute_pose(frame, last):
            logger.debug("image align failed against last frame %d", last.id)
            frame.set_pose(predicted)

        frame.clear_map_points()
        n = self.matcher.search_by_projection(frame, last, self.threshold, check_scale)

        if n < MIN_MATCHES:
            frame.set_pose(predicted)
            frame.clear_map_points()
            n = self.matcher.search_by_projection(frame, last, 2 * self.threshold, check_scale)

        return self._optimize_and_discard(name, n)

    def _track_with_motion_model(self) -> Proposal:
        self._update_last_frame()
        predicted = self.motion_model.predict(self._last_frame.get_pose())
        return self._track_visual(predicted, "motion_model")

    def _track_with_imu_model(self) -> Proposal:
        self._update_last_frame()
        last = self._last_frame
        predicted = self.motion_model.predict(last.get_pose())

        imu = self._imu
        if imu is not None:
            self.orientation_filter.update(imu.acceleration, imu.angular_velocity, imu.dt)
        R_imu = self.orientation_filter.get_orientation()

        # large rotation since the last frame: trust the filter's orientation
        angle = angular_distance(last.get_rotation(), R_imu)
        self.stay_in_curve = angle > self.movement_threshold
        if self.stay_in_curve:
            logger.debug("in curve (%.4f rad), using filter orientation", angle)
            predicted[:3, :3] = R_imu

        return self._track_visual(predicted, "imu_model")

    def _relocalization(self) -> Proposal:
        frame = self._current_frame
        check_scale = self.sensor != SensorType.RGBD
        best = Evidence()

        for kf in reversed(self.graph.get_all_keyframes()):
            frame.set_pose(kf.get_pose())
            if not self.aligner.compute_pose(frame, kf, True):
                continue

            frame.clear_map_points()
            n = self.matcher.search_by_projection(frame, kf, self.threshold, check_scale)
            if n < MIN_MATCHES:
                best = max(best, Evidence(n, 0), key=lambda e: e.num_matches)
                continue

            good = self.optimizer.pose_optimization(frame)
            if good < MIN_INLIERS:
                best = max(best, Evidence(n, good), key=lambda e: e.num_matches)
                continue

            self._last_reloc_frame_id = frame.id
            logger.info("relocalized frame %d against keyframe %d (%d inliers)", frame.id, kf.id, good)
            return Proposal("relocalization", frame.get_pose(), Evidence(n, good), valid=True,
                            reason=f"RELOCALIZATION_OK:kf={kf.id}")

        return Proposal("relocalization", frame.get_pose(), best, valid=False,
                        reason="REJECT_RELOCALIZATION_NO_CANDIDATE")

    # --- local map

    def _track_local_map(self) -> bool:
        frame = self._current_frame
        self._update_local_map()
        self._search_local_points()

        self.optimizer.pose_optimization(frame)
        self._matches_inliers = 0
        n = 0
        for i in range(frame.N):
            mp = self.graph.map_point(frame.map_points[i])
            if mp is None:
                continue
            n += 1
            if not frame.outliers[i]:
                mp.increase_found()
                if mp.num_observations > 0:
                    self._matches_inliers += 1

        ok = self._matches_inliers >= MIN_LOCAL_MAP_INLIERS
        reason = "LOCAL_MAP_OK" if ok else f"REJECT_LOCAL_MAP_TOO_FEW_INLIERS:{self._matches_inliers}"
        self._log_proposal(Proposal("local_map", frame.get_pose(), Evidence(n, self._matches_inliers), ok, reason))
        return ok

    def _update_local_map(self) -> None:
        self.graph.set_reference_map_points(self._local_mp_ids)
        self._update_local_keyframes()
        self._update_local_points()

    def _update_local_keyframes(self) -> None:
        frame = self._current_frame

        # each tracked point votes for the keyframes observing it
        counter: dict[int, int] = {}
        for i, mp_id in enumerate(frame.map_points):
            if mp_id < 0:
                continue
            mp = self.graph.map_point(mp_id)
            if mp is None or mp.bad:
                frame.map_points[i] = -1
                continue
            for kf_id in mp.observations:
                counter[kf_id] = counter.get(kf_id, 0) + 1
        if not counter:
            return

        best_id, best_count = -1, 0
        local: list[int] = []
        for kf_id, count in sorted(counter.items()):
            kf = self.graph.keyframe(kf_id)
            if kf is None or kf.bad:
                continue
            if count > best_count:
                best_id, best_count = kf_id, count
            local.append(kf_id)
            kf.track_reference_for_frame = frame.id

        for kf_id in list(local):
            if len(local) > MAX_LOCAL_KEYFRAMES:
                break
            kf = self.graph.keyframe(kf_id)

            for n_id in kf.get_best_covisibility_keyframes(10):
                nkf = self.graph.keyframe(n_id)
                if nkf is not None and not nkf.bad and nkf.track_reference_for_frame != frame.id:
                    local.append(n_id)
                    nkf.track_reference_for_frame = frame.id
                    break

            for c_id in sorted(kf.get_children()):
                ckf = self.graph.keyframe(c_id)
                if ckf is not None and not ckf.bad and ckf.track_reference_for_frame != frame.id:
                    local.append(c_id)
                    ckf.track_reference_for_frame = frame.id
                    break

            parent = self.graph.keyframe(kf.get_parent())
            if parent is not None and not parent.bad and parent.track_reference_for_frame != frame.id:
                local.append(parent.id)
                parent.track_reference_for_frame = frame.id

        self._local_kf_ids = local
        if best_id >= 0:
            self._reference_kf_id = best_id
            frame.reference_kf_id = best_id

    def _update_local_points(self) -> None:
        frame = self._current_frame
        local: list[int] = []
        for kf_id in self._local_kf_ids:
            kf = self.graph.keyframe(kf_id)
            if kf is None:
                continue
            for mp_id in kf.map_points:
                mp = self.graph.map_point(mp_id)
                if mp is None or mp.track_reference_for_frame == frame.id:
                    continue
                if not mp.bad:
                    local.append(int(mp_id))
                    mp.track_reference_for_frame = frame.id
        self._local_mp_ids = local

    def _search_local_points(self) -> int:
        frame = self._current_frame

        # points already matched are not searched again
        for i, mp_id in enumerate(frame.map_points):
            if mp_id < 0:
                continue
            mp = self.graph.map_point(mp_id)
            if mp is None or mp.bad:
                frame.map_points[i] = -1
            else:
                mp.increase_visible()
                mp.last_frame_seen = frame.id
                mp.track_in_view = False

        n_to_match = 0
        for mp_id in self._local_mp_ids:
            mp = self.graph.map_point(mp_id)
            if mp is None or mp.bad or mp.last_frame_seen == frame.id:
                continue
            if frame.is_in_frustum(mp, 0.5):
                mp.increase_visible()
                n_to_match += 1

        if n_to_match == 0:
            return 0
        th = 1.0
        if self.sensor == SensorType.RGBD:
            th = 3.0
        # recently relocalized: coarser search
        if frame.id < self._last_reloc_frame_id + 2:
            th = 5.0
        return self.matcher.search_local_points(frame, self._local_mp_ids, th)

    # --- keyframes

    def _on_tracking_success(self) -> None:
        frame = self._current_frame
        if self._last_frame is not None and self._last_frame.has_pose:
            self.motion_model.update(frame.get_pose(), self._imu)
            self.orientation_filter.set_orientation_from_pose(frame.get_pose())
        else:
            self.motion_model.restart()

        # drop visual odometry matches
        for i, mp_id in enumerate(frame.map_points):
            if mp_id < 0:
                continue
            mp = self.graph.map_point(mp_id)
            if mp is None or mp.num_observations < 1:
                frame.outliers[i] = False
                frame.map_points[i] = -1
        self.graph.discard_temporal_map_points()

        decision = self.policy.decide(
            frame,
            self.graph.keyframe(self._reference_kf_id),
            self.local_mapper,
            n_keyframes=self.graph.keyframes_in_map(),
            matches_inliers=self._matches_inliers,
            last_kf_frame_id=self._last_kf_frame_id,
            last_reloc_frame_id=self._last_reloc_frame_id,
            only_tracking=self.only_tracking,
        )
        self._rec["keyframe"] = {"insert": decision.insert, "reason": decision.reason}
        if decision.insert:
            self._create_new_keyframe()

        # outliers may still reach the keyframe, but the next frame ignores them
        for i in np.flatnonzero((frame.map_points >= 0) & frame.outliers):
            frame.map_points[i] = -1

    def _create_new_keyframe(self) -> None:
        if not self.local_mapper.set_not_stop(True):
            return
        frame = self._current_frame
        kf = self.graph.create_keyframe(frame)
        self._reference_kf_id = kf.id
        frame.reference_kf_id = kf.id

        if self.sensor == SensorType.RGBD:
            # close points first; stop after 100 once past the depth threshold
            order = np.argsort(frame.depth, kind="stable")
            n_points = 0
            for i in order:
                z = frame.depth[i]
                if z <= 0.0:
                    continue
                mp = self.graph.map_point(frame.map_points[i])
                if mp is None or mp.num_observations < 1:
                    frame.map_points[i] = -1
                    self._new_depth_point(frame, kf, int(i))
                n_points += 1
                if z > self.th_depth and n_points > 100:
                    break

        self.local_mapper.insert_keyframe(kf)
        self.local_mapper.set_not_stop(False)
        self._last_kf_frame_id = frame.id
        self._last_kf_id = kf.id
        logger.debug("new keyframe %d from frame %d", kf.id, frame.id)

    def _new_depth_point(self, frame: Frame, kf, i: int):
        X = frame.unproject_depth(i)
        mp = self.graph.create_map_point(X, kf.id)
        mp.add_observation(kf.id, i)
        kf.add_map_point(mp.id, i)
        mp.compute_distinctive_descriptors()
        mp.update_normal_and_depth()
        frame.map_points[i] = mp.id
        return mp

    # --- bootstrap

    def _seed_local_map(self, keyframes: list, current_kf) -> None:
        frame = self._current_frame
        for kf in keyframes:
            self.local_mapper.insert_keyframe(kf)

        self._last_kf_frame_id = frame.id
        self._last_kf_id = current_kf.id
        self._local_kf_ids = [kf.id for kf in reversed(keyframes)]
        self._local_mp_ids = [mp.id for mp in self.graph.get_all_map_points()]
        self._reference_kf_id = current_kf.id
        frame.reference_kf_id = current_kf.id
        self._last_frame = frame.copy()

        self.graph.set_reference_map_points(self._local_mp_ids)
        self.graph.add_keyframe_origin(keyframes[0].id)
        self._state = TrackingState.OK

    def _rgbd_initialization(self) -> None:
        frame = self._current_frame
        if frame.N <= 500:
            self._rec["reason"] = f"REJECT_INIT_RGBD_TOO_FEW_KEYPOINTS:{frame.N}"
            return

        frame.set_pose(np.eye(4))
        kf = self.graph.create_keyframe(frame)
        for i in range(frame.N):
            if frame.depth[i] > 0.0:
                self._new_depth_point(frame, kf, i)

        logger.info("new map created with %d points", self.graph.map_points_in_map())
        self._rec["reason"] = "INIT_RGBD_OK"
        self._seed_local_map([kf], kf)

    def _monocular_initialization(self) -> None:
        frame = self._current_frame
        if self._initializer is None:
            if frame.N > 100:
                self._initial_frame = frame.copy()
                self._last_frame = frame.copy()
                self._prev_matched = frame.keypoints_un.copy()
                self._initializer = self.initializer_factory(frame, 1.0, 200)
                self._ini_matches = np.full(frame.N, -1, dtype=np.int64)
                self._rec["reason"] = "INIT_MONO_REFERENCE_SET"
            else:
                self._rec["reason"] = f"REJECT_INIT_MONO_TOO_FEW_KEYPOINTS:{frame.N}"
            return

        if frame.N <= 100:
            self._initializer = None
            self._rec["reason"] = f"REJECT_INIT_MONO_TOO_FEW_KEYPOINTS:{frame.N}"
            return

        n, matches = self.matcher.search_for_initialization(self._initial_frame, frame, self._prev_matched, 100)
        self._rec["num_matches"] = int(n)
        if n < 100:
            self._initializer = None
            self._rec["reason"] = f"REJECT_INIT_MONO_TOO_FEW_MATCHES:{n}"
            return

        result = self._initializer.initialize(frame, matches)
        if not result.valid:
            self._rec["reason"] = result.reason
            return

        matches = np.asarray(matches, dtype=np.int64).copy()
        matches[(matches >= 0) & ~result.triangulated] = -1
        self._ini_matches = matches
        self._ini_points = result.points

        self._initial_frame.set_pose(np.eye(4))
        frame.set_pose(Rt_to_T(result.R, result.t))
        self._create_initial_map_monocular()

    def _create_initial_map_monocular(self) -> None:
        frame = self._current_frame
        kf_ini = self.graph.create_keyframe(self._initial_frame)
        kf_cur = self.graph.create_keyframe(frame)

        for i, j in enumerate(self._ini_matches):
            if j < 0:
                continue
            mp = self.graph.create_map_point(self._ini_points[i], kf_cur.id)
            kf_ini.add_map_point(mp.id, i)
            kf_cur.add_map_point(mp.id, j)
            mp.add_observation(kf_ini.id, i)
            mp.add_observation(kf_cur.id, j)
            mp.compute_distinctive_descriptors()
            mp.update_normal_and_depth()
            frame.map_points[j] = mp.id
            frame.outliers[j] = False

        kf_ini.update_connections()
        kf_cur.update_connections()
        logger.info("new map created with %d points", self.graph.map_points_in_map())

        self.optimizer.global_bundle_adjustment(self.graph, 20)

        median_depth = kf_ini.compute_scene_median_depth(2)
        if median_depth <= 0.0 or kf_cur.tracked_map_points(1) < 100:
            logger.warning("wrong initialization (median depth %.3f), resetting", median_depth)
            self._rec["reason"] = "REJECT_INIT_MONO_DEGENERATE"
            self._rec["reset"] = True
            self.reset()
            return

        # canonical scale: median scene depth of the first keyframe is 1
        inv_median = 1.0 / median_depth
        T = kf_cur.get_pose()
        T[:3, 3] *= inv_median
        kf_cur.set_pose(T)
        for mp_id in kf_ini.map_points:
            mp = self.graph.map_point(mp_id)
            if mp is not None:
                mp.position = mp.position * inv_median
        for mp_id in kf_ini.map_points:
            mp = self.graph.map_point(mp_id)
            if mp is not None:
                mp.update_normal_and_depth()

        frame.set_pose(kf_cur.get_pose())
        self._rec["reason"] = "INIT_MONO_OK"
        self._seed_local_map([kf_ini, kf_cur], kf_cur)

    def _pattern_initialization(self) -> None:
        frame = self._current_frame
        if frame.N <= 500:
            self._rec["reason"] = f"REJECT_INIT_PATTERN_TOO_FEW_KEYPOINTS:{frame.N}"
            return
        if not self.pattern_detector.detect(frame):
            self._rec["reason"] = "REJECT_INIT_PATTERN_NOT_FOUND"
            return

        T_pc = self.pattern_detector.get_rt()
        T_cp = inv_T(T_pc)
        frame.set_pose(np.eye(4))
        logger.info("initial camera pose from pattern: [%.4f, %.4f, %.4f]", *T_pc[:3, 3])

        kf = self.graph.create_keyframe(frame)
        for idx, X_p in self.pattern_detector.get_points():
            X = T_cp[:3, :3] @ np.asarray(X_p, dtype=np.float64) + T_cp[:3, 3]
            mp = self.graph.create_map_point(X, kf.id)
            mp.add_observation(kf.id, idx)
            kf.add_map_point(mp.id, idx)
            mp.compute_distinctive_descriptors()
            mp.update_normal_and_depth()
            frame.map_points[idx] = mp.id

        logger.info("new map created from pattern with %d points", self.graph.map_points_in_map())
        self._rec["reason"] = "INIT_PATTERN_OK"
        self._seed_local_map([kf], kf)
