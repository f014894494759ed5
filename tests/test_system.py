"""
System wiring: per-frame trajectory, keyframe export, reset and shutdown.
"""

import numpy as np
import pytest

from helpers import FakeAligner, FakeMatcher, FakeOptimizer, ScriptedExtractor, depth_image_for, gray, grid_features, make_config
from kfslam.config import SensorType
from kfslam.system.runner import System
from kfslam.system.state import TrackingState


@pytest.fixture
def system():
    feats = grid_features(600)
    sys_ = System(
        make_config(SensorType.RGBD),
        start_mapping_thread=False,
        extractor=ScriptedExtractor(feats),
        matcher=FakeMatcher(None, [30, 30, 30]),
        optimizer=FakeOptimizer(),
        aligner=FakeAligner(),
    )
    yield sys_, depth_image_for(feats, 2.0)
    sys_.shutdown()


class TestSystem:
    def test_records_one_pose_per_frame(self, system):
        sys_, depth = system
        for k in range(4):
            sys_.track_rgbd(gray(), depth, k * 0.033)

        assert len(sys_.trajectory) == 4
        assert [p.frame_id for p in sys_.trajectory] == [0, 1, 2, 3]
        assert all(p.valid and p.state == TrackingState.OK for p in sys_.trajectory)
        assert sys_.trajectory[0].reference_kf_id == 0
        assert np.allclose(sys_.trajectory[0].T_cw, np.eye(4))
        assert sys_.telemetry.summary()["num_frames"] == 4

    def test_keyframe_trajectory(self, system):
        sys_, depth = system
        for k in range(3):
            sys_.track_rgbd(gray(), depth, k * 0.033)

        kfs = sys_.keyframe_trajectory()
        assert len(kfs) == sys_.map.keyframes_in_map() >= 1
        ts, T_wc = kfs[0]
        assert ts == 0.0
        assert np.allclose(T_wc, np.eye(4))

    def test_queued_keyframes_reach_the_mapper(self, system):
        sys_, depth = system
        sys_.track_rgbd(gray(), depth, 0.0)
        assert sys_.local_mapper.keyframes_in_queue() == 1
        assert sys_.local_mapper.spin_once()
        assert sys_.local_mapper.keyframes_in_queue() == 0

    def test_reset_clears_trajectory_and_map(self, system):
        sys_, depth = system
        sys_.track_rgbd(gray(), depth, 0.0)
        sys_.reset()
        assert sys_.trajectory == []
        assert sys_.map.keyframes_in_map() == 0
        assert sys_.tracker.state == TrackingState.NO_IMAGES_YET


def test_mapping_thread_shuts_down():
    sys_ = System(make_config(SensorType.RGBD), extractor=ScriptedExtractor(grid_features(600)))
    assert not sys_.local_mapper.is_finished()
    sys_.shutdown()
    assert sys_.local_mapper.is_finished()
