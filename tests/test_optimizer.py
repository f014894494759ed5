"""
Pose-only optimization and global bundle adjustment.
"""

import numpy as np
import pytest

from helpers import features_at, make_frame, synthetic_scene
from kfslam.geom.se3 import Rt_to_T, angular_distance, rot_y
from kfslam.graph.map import Map
from kfslam.modules.optimizer import Optimizer


@pytest.fixture
def mapped_scene():
    """A keyframe at the origin observing 150 points, and a second view of them."""
    X, uv1, uv2, T2 = synthetic_scene(150)
    graph = Map()
    f0 = make_frame(0, features_at(uv1, seed=3))
    f0.set_pose(np.eye(4))
    kf = graph.create_keyframe(f0)
    for i, x in enumerate(X):
        mp = graph.create_map_point(x, kf.id)
        mp.add_observation(kf.id, i)
        kf.add_map_point(mp.id, i)
    f1 = make_frame(1, features_at(uv2, seed=3))
    return graph, X, f1, T2


class TestPoseOptimization:
    def test_converges_from_perturbed_pose(self, mapped_scene):
        graph, _, frame, T2 = mapped_scene
        frame.map_points[:] = np.arange(150)
        frame.set_pose(Rt_to_T(rot_y(0.02), T2[:3, 3] + [0.03, -0.02, 0.01]))

        n = Optimizer(graph).pose_optimization(frame)

        assert n == 150
        assert not frame.outliers.any()
        assert np.allclose(frame.get_pose(), T2, atol=1e-3)

    def test_flags_wrong_associations(self, mapped_scene):
        graph, _, frame, T2 = mapped_scene
        ids = np.arange(150)
        ids[:10] = ids[:10][::-1] + 100  # 10 associations point at the wrong map point
        frame.map_points[:] = ids
        frame.set_pose(T2)

        n = Optimizer(graph).pose_optimization(frame)

        assert n == 140
        assert frame.outliers[:10].all()
        assert not frame.outliers[10:].any()

    def test_needs_four_correspondences(self, mapped_scene):
        graph, _, frame, T2 = mapped_scene
        frame.map_points[:3] = [0, 1, 2]
        frame.set_pose(T2)
        assert Optimizer(graph).pose_optimization(frame) == 0
        assert np.allclose(frame.get_pose(), T2)

    def test_bad_points_are_ignored(self, mapped_scene):
        graph, _, frame, T2 = mapped_scene
        frame.map_points[:] = np.arange(150)
        for i in range(50):
            graph.map_point(i).bad = True
        frame.set_pose(T2)
        assert Optimizer(graph).pose_optimization(frame) == 100


class TestGlobalBundleAdjustment:
    def test_refines_second_keyframe_and_points(self, mapped_scene):
        graph, X, frame, T2 = mapped_scene
        frame.set_pose(Rt_to_T(rot_y(0.01), T2[:3, 3]))
        kf1 = graph.create_keyframe(frame)
        rng = np.random.default_rng(7)
        for i, mp in enumerate(graph.get_all_map_points()):
            mp.add_observation(kf1.id, i)
            kf1.add_map_point(mp.id, i)
            mp.position = mp.position + rng.normal(0.0, 0.01, 3)
        err_before = [np.linalg.norm(mp.position - x) for mp, x in zip(graph.get_all_map_points(), X)]

        # the bootstrap budget
        assert Optimizer(graph).global_bundle_adjustment(graph, 20)

        kf0 = graph.keyframe(0)
        assert np.allclose(kf0.get_pose(), np.eye(4))
        err = [np.linalg.norm(mp.position - x) for mp, x in zip(graph.get_all_map_points(), X)]
        assert np.median(err) < np.median(err_before)
        assert angular_distance(kf1.get_rotation(), np.eye(3)) < 1e-3

    def test_single_keyframe_is_a_no_op(self, mapped_scene):
        graph, *_ = mapped_scene
        assert not Optimizer(graph).global_bundle_adjustment()
