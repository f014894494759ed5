from dataclasses import dataclass
import numpy as np

@dataclass
class Evidence:
    num_matches: int = 0
    num_inliers: int = 0

@dataclass
class Proposal:
    name: str
    T_cw: np.ndarray  # 4x4 world->camera
    evidence: Evidence
    valid: bool = True
    reason: str = ""
