"""
Scripted collaborators and synthetic scenes shared by the test modules.
"""

import numpy as np

from kfslam.config import CameraConfig, SensorType, SlamConfig, TrackingConfig
from kfslam.geom.camera import PinholeCamera
from kfslam.graph.frame import Frame
from kfslam.modules.orb_match import Features


def make_config(sensor=SensorType.RGBD, **tracking):
    trk = {"depth_map_factor": 1.0}
    trk.update(tracking)
    return SlamConfig(camera=CameraConfig(), tracking=TrackingConfig(**trk), sensor=sensor)


def make_camera():
    return PinholeCamera(CameraConfig())


def grid_features(n=600, cols=30, step=20, seed=0, scale_factor=2.0, n_levels=5):
    """n keypoints on a regular pixel grid with random descriptors."""
    rng = np.random.default_rng(seed)
    idx = np.arange(n)
    kps = np.column_stack([20 + step * (idx % cols), 20 + step * (idx // cols)]).astype(np.float32)
    return Features(
        keypoints=kps,
        descriptors=rng.integers(0, 256, size=(n, 32), dtype=np.uint8),
        octaves=np.zeros(n, dtype=np.int32),
        angles=np.zeros(n, dtype=np.float32),
        scale_factor=scale_factor,
        n_levels=n_levels,
    )


def features_at(uv, seed=0, descriptors=None):
    uv = np.asarray(uv, dtype=np.float32).reshape(-1, 2)
    n = uv.shape[0]
    if descriptors is None:
        descriptors = np.random.default_rng(seed).integers(0, 256, size=(n, 32), dtype=np.uint8)
    return Features(uv, descriptors, np.zeros(n, np.int32), np.zeros(n, np.float32), 2.0, 5)


def depth_image_for(features, z=2.0, zero_idx=(), shape=(480, 640)):
    """Float depth map holding ``z`` under each keypoint, 0 under ``zero_idx``."""
    depth = np.full(shape, z, dtype=np.float32)
    for i in zero_idx:
        u, v = np.round(features.keypoints[i]).astype(int)
        depth[v, u] = 0.0
    return depth


def make_frame(frame_id=0, features=None, camera=None, depth=None, image=None):
    features = features if features is not None else grid_features()
    camera = camera if camera is not None else make_camera()
    image = image if image is not None else np.zeros((camera.height, camera.width), np.uint8)
    return Frame(frame_id, image, features, camera, depth=depth, th_depth=3.2)


def gray(shape=(480, 640)):
    return np.zeros(shape, dtype=np.uint8)


class ScriptedExtractor:
    """Returns the queued Features in order, then keeps returning the last one."""

    def __init__(self, *features):
        self.queue = list(features)
        self.calls = 0

    def extract(self, img):
        self.calls += 1
        if len(self.queue) > 1:
            return self.queue.pop(0)
        return self.queue[0]


class FakeMatcher:
    """search_by_projection copies the first ``n`` live associations of the source.

    ``projection_counts`` scripts the successive return values; 0 once exhausted.
    """

    def __init__(self, graph, projection_counts=(), init_result=None, local_count=0):
        self.graph = graph
        self.projection_counts = list(projection_counts)
        self.init_result = init_result
        self.local_count = local_count
        self.projection_calls = []
        self.local_calls = []

    def search_by_projection(self, frame, source, th, check_scale=True):
        self.projection_calls.append((getattr(source, "id", None), th, check_scale))
        n = self.projection_counts.pop(0) if self.projection_counts else 0
        done = 0
        for i, mp_id in enumerate(source.map_points):
            if done >= n:
                break
            if mp_id < 0 or i >= frame.N:
                continue
            frame.map_points[i] = mp_id
            done += 1
        return n

    def search_local_points(self, frame, map_point_ids, th=1.0):
        self.local_calls.append(th)
        return self.local_count

    def search_for_initialization(self, f1, f2, prev_matched, window_size=100):
        n, matches = self.init_result
        return n, np.asarray(matches).copy()


class FakeOptimizer:
    def __init__(self, inliers=None):
        self.inliers = inliers
        self.pose_calls = 0
        self.ba_calls = 0

    def pose_optimization(self, frame):
        self.pose_calls += 1
        frame.outliers[:] = False
        if self.inliers is not None:
            return self.inliers
        return int(np.count_nonzero(frame.map_points >= 0))

    def global_bundle_adjustment(self, graph=None, iterations=20):
        self.ba_calls += 1
        return True


class FakeAligner:
    def __init__(self, result=True):
        self.result = result
        self.calls = []

    def compute_pose(self, frame, reference, coarse=False):
        self.calls.append((getattr(reference, "id", None), coarse))
        return self.result


class FakeMapper:
    def __init__(self, accept=True, stopped=False, queue=0):
        self.inserted = []
        self.accept = accept
        self.stopped = stopped
        self.queue = queue
        self.reset_requested = 0
        self.interrupted = 0
        self.not_stop = False

    def insert_keyframe(self, kf):
        self.inserted.append(kf.id)

    def set_not_stop(self, flag):
        if flag and self.stopped:
            return False
        self.not_stop = flag
        return True

    def accept_keyframes(self):
        return self.accept

    def is_stopped(self):
        return self.stopped

    def stop_requested(self):
        return False

    def interrupt_ba(self):
        self.interrupted += 1

    def keyframes_in_queue(self):
        return self.queue

    def request_reset(self):
        self.reset_requested += 1


class FakeLoopCloser:
    def __init__(self):
        self.reset_requested = 0

    def request_reset(self):
        self.reset_requested += 1


def synthetic_scene(n=150, seed=1, baseline=0.1):
    """Points at depth 2-4 m seen from the origin and from a camera at (baseline, 0, 0).

    Returns (X_w, uv1, uv2, T2_cw).
    """
    rng = np.random.default_rng(seed)
    z = rng.uniform(2.0, 4.0, n)
    x = rng.uniform(-0.5, 0.5, n) * z
    y = rng.uniform(-0.4, 0.4, n) * z
    X = np.column_stack([x, y, z])

    cam = make_camera()
    T2 = np.eye(4)
    T2[:3, 3] = [-baseline, 0.0, 0.0]
    uv1 = cam.project(X)
    uv2 = cam.project(X + T2[:3, 3])
    return X, uv1, uv2, T2
