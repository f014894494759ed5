import enum
from dataclasses import dataclass

import numpy as np


class TrackingState(enum.Enum):
    NO_IMAGES_YET = "NO_IMAGES_YET"
    NOT_INITIALIZED = "NOT_INITIALIZED"
    OK = "OK"
    LOST = "LOST"


@dataclass
class TrackedPose:
    frame_id: int
    ts: float
    T_cw: np.ndarray  # 4x4, zero matrix when no pose
    state: TrackingState
    reference_kf_id: int = -1

    @property
    def valid(self) -> bool:
        return bool(np.any(self.T_cw))
