"""
Map arena, keyframe covisibility/spanning tree and map point bookkeeping.
"""

import numpy as np
import pytest

from helpers import grid_features, make_frame
from kfslam.graph.map import Map


def keyframe_with_points(graph, n_points=0, frame_id=0, T=None, shared=()):
    """Keyframe over a 600-keypoint grid; new points on the first n_points keypoints,
    plus observations of the ``shared`` point ids on the following keypoints."""
    frame = make_frame(frame_id, grid_features(600))
    frame.set_pose(np.eye(4) if T is None else T)
    kf = graph.create_keyframe(frame)
    for i in range(n_points):
        mp = graph.create_map_point(np.array([0.01 * i, 0.0, 2.0]), kf.id)
        mp.add_observation(kf.id, i)
        kf.add_map_point(mp.id, i)
    for k, mp_id in enumerate(shared):
        idx = n_points + k
        graph.map_point(mp_id).add_observation(kf.id, idx)
        kf.add_map_point(mp_id, idx)
    return kf


@pytest.fixture
def graph():
    return Map()


class TestIds:
    def test_counters_are_monotonic(self, graph):
        assert [graph.new_frame_id() for _ in range(3)] == [0, 1, 2]
        kf0 = keyframe_with_points(graph)
        kf1 = keyframe_with_points(graph)
        assert (kf0.id, kf1.id) == (0, 1)
        assert graph.next_keyframe_id == 2

    def test_clear_resets_counters(self, graph):
        graph.new_frame_id()
        keyframe_with_points(graph, 3)
        graph.clear()
        assert graph.next_frame_id == 0
        assert graph.next_keyframe_id == 0
        assert graph.keyframes_in_map() == 0
        assert graph.map_points_in_map() == 0
        assert keyframe_with_points(graph, 1).id == 0

    def test_negative_handles_resolve_to_none(self, graph):
        assert graph.keyframe(-1) is None
        assert graph.map_point(-1) is None
        assert graph.map_point(np.int64(-1)) is None


class TestBadFlags:
    def test_bad_point_is_skipped_but_resolvable(self, graph):
        kf = keyframe_with_points(graph, 5)
        graph.erase_map_point(2)
        assert graph.map_point(2).bad
        assert graph.map_points_in_map() == 4
        assert 2 not in {mp.id for mp in graph.get_all_map_points()}
        assert kf.map_points[2] == -1
        assert kf.tracked_map_points(0) == 4
        assert kf.get_map_points() == {0, 1, 3, 4}
        matches = kf.get_map_point_matches()
        matches[0] = 99
        assert kf.map_points[0] == 0

    def test_erased_point_detaches_from_every_keyframe(self, graph):
        kf0 = keyframe_with_points(graph, 3)
        kf1 = keyframe_with_points(graph, 0, shared=[1])
        graph.erase_map_point(1)
        assert kf0.get_map_points() == {0, 2}
        assert kf1.get_map_points() == set()
        assert not np.any(kf1.map_points == 1)
        assert graph.map_point(1).observations == {}

    def test_point_without_observations_goes_bad(self, graph):
        kf = keyframe_with_points(graph, 1)
        mp = graph.map_point(0)
        mp.erase_observation(kf.id)
        assert mp.bad

    def test_first_keyframe_cannot_be_erased(self, graph):
        keyframe_with_points(graph, 2)
        graph.erase_keyframe(0)
        assert not graph.keyframe(0).bad
        assert graph.keyframes_in_map() == 1

    def test_erased_keyframe_reparents_children(self, graph):
        kf0 = keyframe_with_points(graph, 30)
        shared = [mp.id for mp in graph.get_all_map_points()]
        kf1 = keyframe_with_points(graph, 0, shared=shared[:20])
        kf1.update_connections()
        kf2 = keyframe_with_points(graph, 0, shared=shared[:10])
        kf2.update_connections()
        assert kf2.get_parent() == 0

        # make kf2 a child of kf1 to exercise the reattachment
        kf0.erase_child(kf2.id)
        kf2.change_parent(kf1.id)
        graph.erase_keyframe(kf1.id)

        assert kf1.bad
        assert kf2.get_parent() == 0
        assert kf2.id in kf0.get_children()
        assert kf1.id not in kf0.get_connected_keyframes()
        assert kf1.id not in kf0.get_children()


class TestCovisibility:
    def test_connections_are_symmetric_and_ordered(self, graph):
        kf0 = keyframe_with_points(graph, 40)
        ids = [mp.id for mp in graph.get_all_map_points()]
        kf1 = keyframe_with_points(graph, 0, shared=ids[:30])
        kf2 = keyframe_with_points(graph, 0, shared=ids[:10])
        kf1.update_connections()
        kf2.update_connections()
        kf0.update_connections()

        assert kf0.get_weight(kf1.id) == 30
        assert kf1.get_weight(kf0.id) == 30
        assert kf0.get_weight(kf2.id) == 10
        assert kf0.get_vector_covisible_keyframes() == [kf1.id, kf2.id]
        assert kf0.get_best_covisibility_keyframes(1) == [kf1.id]
        assert kf0.get_covisibles_by_weight(15) == [kf1.id]
        # 10 points of kf2 are also in kf1
        assert kf1.get_weight(kf2.id) == 10

    def test_first_connection_sets_parent(self, graph):
        kf0 = keyframe_with_points(graph, 20)
        ids = [mp.id for mp in graph.get_all_map_points()]
        kf1 = keyframe_with_points(graph, 0, shared=ids)
        kf0.update_connections()
        assert kf0.get_parent() == -1
        kf1.update_connections()
        assert kf1.get_parent() == 0
        assert kf0.get_children() == {1}

    def test_median_depth(self, graph):
        kf = keyframe_with_points(graph, 5)
        assert kf.compute_scene_median_depth(2) == pytest.approx(2.0)
        empty = keyframe_with_points(graph, 0)
        assert empty.compute_scene_median_depth(2) == -1.0


class TestMapPoint:
    def test_replace_moves_associations(self, graph):
        kf0 = keyframe_with_points(graph, 2)
        kf1 = keyframe_with_points(graph, 0, shared=[0])
        a, b = graph.map_point(0), graph.map_point(1)

        a.replace(b.id)

        assert a.bad and a.get_replaced() == b.id
        assert b.get_replaced() == -1
        assert b.observations == {kf0.id: 1, kf1.id: 0}
        assert kf1.map_points[0] == b.id
        # kf0 already observed b at index 1
        assert kf0.map_points[0] == -1

    def test_descriptor_is_most_central(self, graph):
        kf0 = keyframe_with_points(graph, 1)
        kf1 = keyframe_with_points(graph, 0, shared=[0])
        kf2 = keyframe_with_points(graph, 0, shared=[0])
        kf0.descriptors[0] = 0
        kf1.descriptors[0] = 0
        kf1.descriptors[0, 0] = 1
        kf2.descriptors[0] = 255
        mp = graph.map_point(0)
        mp.compute_distinctive_descriptors()
        assert np.all(mp.descriptor == 0)

    def test_normal_and_distance_bounds(self, graph):
        keyframe_with_points(graph, 1)
        mp = graph.map_point(0)
        mp.update_normal_and_depth()
        assert np.allclose(mp.normal, mp.position / np.linalg.norm(mp.position))
        assert mp.max_distance == pytest.approx(2.0)
        assert mp.min_distance == pytest.approx(2.0 / 16.0)

    def test_found_ratio(self, graph):
        keyframe_with_points(graph, 1)
        mp = graph.map_point(0)
        mp.increase_visible(3)
        mp.increase_found()
        assert mp.found_ratio() == pytest.approx(0.5)


class TestTemporalPoints:
    def test_temporal_points_are_lookup_only(self, graph):
        mp = graph.create_temporal_map_point(np.zeros(3), np.zeros(32, np.uint8))
        assert graph.map_point(mp.id) is mp
        assert graph.is_temporal(mp.id)
        assert graph.map_points_in_map() == 0
        assert graph.discard_temporal_map_points() == 1
        assert graph.map_point(mp.id) is None

    def test_update_bumps_version(self, graph):
        v = graph.version
        with graph.update():
            keyframe_with_points(graph)
        assert graph.version == v + 1
