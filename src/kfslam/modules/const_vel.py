import numpy as np

from ..geom.se3 import inv_T


class ConstantVelocityModel:
    """Predicts the next world-to-camera pose by repeating the last motion."""

    def __init__(self):
        self.velocity: np.ndarray | None = None  # T_cur_prev
        self._last_pose: np.ndarray | None = None

    def predict(self, last_pose: np.ndarray) -> np.ndarray:
        if self.velocity is None:
            return np.asarray(last_pose, dtype=np.float64).copy()
        return self.velocity @ last_pose

    def update(self, pose: np.ndarray, measurements=None) -> None:
        pose = np.asarray(pose, dtype=np.float64)
        if self._last_pose is not None:
            self.velocity = pose @ inv_T(self._last_pose)
        self._last_pose = pose.copy()

    def restart(self) -> None:
        self.velocity = None
        self._last_pose = None

    def started(self) -> bool:
        return self.velocity is not None
