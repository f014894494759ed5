"""
Keyframe admission decisions.
"""

from types import SimpleNamespace

import numpy as np
import pytest

from helpers import FakeMapper
from kfslam.config import SensorType
from kfslam.system.policy import KeyFramePolicy


class RefKeyFrame:
    def __init__(self, tracked):
        self.tracked = tracked
        self.asked = []

    def tracked_map_points(self, min_obs):
        self.asked.append(min_obs)
        return self.tracked


def mono_frame(frame_id):
    return SimpleNamespace(id=frame_id, N=0, depth=np.zeros(0), th_depth=0.0,
                           map_points=np.zeros(0, np.int64), outliers=np.zeros(0, bool))


def rgbd_frame(frame_id, n_close_tracked, n_close_free, th_depth=3.0):
    n = n_close_tracked + n_close_free
    mps = np.full(n, -1, np.int64)
    mps[:n_close_tracked] = np.arange(n_close_tracked)
    return SimpleNamespace(id=frame_id, N=n, depth=np.full(n, 1.0), th_depth=th_depth,
                           map_points=mps, outliers=np.zeros(n, bool))


def decide(policy, frame, ref, mapper, **kw):
    args = dict(n_keyframes=5, matches_inliers=50, last_kf_frame_id=0, last_reloc_frame_id=0)
    args.update(kw)
    return policy.decide(frame, ref, mapper, **args)


class TestGuards:
    def test_only_tracking(self):
        d = decide(KeyFramePolicy(SensorType.MONOCULAR, 30), mono_frame(100), RefKeyFrame(100), FakeMapper(),
                   only_tracking=True)
        assert not d.insert and d.reason == "REJECT_KF_ONLY_TRACKING"

    def test_mapper_stopped(self):
        d = decide(KeyFramePolicy(SensorType.MONOCULAR, 30), mono_frame(100), RefKeyFrame(100),
                   FakeMapper(stopped=True))
        assert d.reason == "REJECT_KF_MAPPER_STOPPED"

    @pytest.mark.parametrize("frame_id,insert", [(40, False), (70, True)])
    def test_recent_relocalization(self, frame_id, insert):
        policy = KeyFramePolicy(SensorType.MONOCULAR, 30)
        d = decide(policy, mono_frame(frame_id), RefKeyFrame(100), FakeMapper(),
                   n_keyframes=40, last_reloc_frame_id=20, last_kf_frame_id=0)
        assert d.insert == insert
        if not insert:
            assert d.reason == "REJECT_KF_RECENT_RELOC"

    def test_never_inserts_before_last_keyframe_plus_min_frames(self):
        policy = KeyFramePolicy(SensorType.MONOCULAR, 30, min_frames=5)
        for frame_id in range(10, 15):
            d = decide(policy, mono_frame(frame_id), RefKeyFrame(100), FakeMapper(), last_kf_frame_id=10)
            assert not d.insert
            assert d.reason == "REJECT_KF_TOO_SOON"
        assert decide(policy, mono_frame(15), RefKeyFrame(100), FakeMapper(), last_kf_frame_id=10).insert


class TestMonocular:
    def test_idle_mapper_and_weak_tracking(self):
        d = decide(KeyFramePolicy(SensorType.MONOCULAR, 30), mono_frame(3), RefKeyFrame(100), FakeMapper(),
                   matches_inliers=80)
        assert d.insert and d.reason == "ACCEPT_KF_MAPPER_IDLE"

    def test_enough_tracked(self):
        d = decide(KeyFramePolicy(SensorType.MONOCULAR, 30), mono_frame(3), RefKeyFrame(100), FakeMapper(),
                   matches_inliers=95)
        assert not d.insert and d.reason == "REJECT_KF_ENOUGH_TRACKED:95/100"

    def test_too_few_inliers(self):
        d = decide(KeyFramePolicy(SensorType.MONOCULAR, 30), mono_frame(3), RefKeyFrame(100), FakeMapper(),
                   matches_inliers=15)
        assert not d.insert

    def test_busy_mapper_is_interrupted(self):
        mapper = FakeMapper(accept=False)
        d = decide(KeyFramePolicy(SensorType.MONOCULAR, 30), mono_frame(40), RefKeyFrame(100), mapper,
                   matches_inliers=50)
        assert not d.insert and d.reason == "REJECT_KF_MAPPER_BUSY"
        assert mapper.interrupted == 1

    @pytest.mark.parametrize("n_keyframes,min_obs", [(1, 2), (2, 2), (3, 3)])
    def test_reference_observation_threshold(self, n_keyframes, min_obs):
        ref = RefKeyFrame(100)
        decide(KeyFramePolicy(SensorType.MONOCULAR, 30), mono_frame(3), ref, FakeMapper(), n_keyframes=n_keyframes)
        assert ref.asked == [min_obs]

    def test_pattern_first_keyframe(self):
        ref = RefKeyFrame(100)
        decide(KeyFramePolicy(SensorType.MONOCULAR, 30, use_pattern=True), mono_frame(3), ref, FakeMapper(),
               n_keyframes=1)
        assert ref.asked == [1]


class TestRgbd:
    def test_needs_close_points(self):
        policy = KeyFramePolicy(SensorType.RGBD, 30)
        d = decide(policy, rgbd_frame(3, 50, 80), RefKeyFrame(60), FakeMapper(), matches_inliers=50)
        assert d.insert

    def test_well_tracked_close_points(self):
        policy = KeyFramePolicy(SensorType.RGBD, 30)
        d = decide(policy, rgbd_frame(3, 120, 80), RefKeyFrame(60), FakeMapper(), matches_inliers=50)
        assert not d.insert
        assert d.reason.startswith("REJECT_KF_ENOUGH_TRACKED")

    def test_short_queue_accepts_while_busy(self):
        policy = KeyFramePolicy(SensorType.RGBD, 30)
        d = decide(policy, rgbd_frame(3, 10, 10), RefKeyFrame(100), FakeMapper(accept=False, queue=2),
                   matches_inliers=20)
        assert d.insert and d.reason == "ACCEPT_KF_SHORT_QUEUE"

    def test_long_queue_rejects(self):
        policy = KeyFramePolicy(SensorType.RGBD, 30)
        d = decide(policy, rgbd_frame(3, 10, 10), RefKeyFrame(100), FakeMapper(accept=False, queue=3),
                   matches_inliers=20)
        assert not d.insert and d.reason == "REJECT_KF_MAPPER_BUSY"
