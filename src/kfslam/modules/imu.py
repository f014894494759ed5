# src/kfslam/modules/imu.py
from __future__ import annotations

from dataclasses import dataclass

import numpy as np
from scipy.spatial.transform import Rotation

from ..geom.se3 import camera_center
from .const_vel import ConstantVelocityModel


@dataclass
class ImuMeasurement:
    acceleration: np.ndarray      # (3,) m/s^2, camera frame
    angular_velocity: np.ndarray  # (3,) rad/s, camera frame
    dt: float = 0.0               # seconds since the previous sample

    def __post_init__(self):
        self.acceleration = np.asarray(self.acceleration, dtype=np.float64).reshape(3)
        self.angular_velocity = np.asarray(self.angular_velocity, dtype=np.float64).reshape(3)
        self.dt = float(self.dt)


class ImuMotionModel(ConstantVelocityModel):
    """Constant-velocity translation with the rotation integrated from the gyro."""

    def __init__(self):
        super().__init__()
        self.measurement: ImuMeasurement | None = None

    def predict(self, last_pose: np.ndarray) -> np.ndarray:
        pred = super().predict(last_pose)
        m = self.measurement
        if m is None or m.dt <= 0.0:
            return pred
        # camera rotates by w*dt in its own frame: R_cw' = exp(-w dt) R_cw
        dR = Rotation.from_rotvec(-m.angular_velocity * m.dt).as_matrix()
        C = camera_center(pred)
        R = dR @ np.asarray(last_pose)[:3, :3]
        pred[:3, :3] = R
        pred[:3, 3] = -R @ C
        return pred

    def update(self, pose: np.ndarray, measurements: ImuMeasurement | None = None) -> None:
        super().update(pose)
        if measurements is not None:
            self.measurement = measurements

    def restart(self) -> None:
        super().restart()
        self.measurement = None


class MadgwickFilter:
    """Gradient-descent orientation filter (gyro + accelerometer).

    Internally q = [w, x, y, z] is the camera-to-world rotation; the public
    accessors use world-to-camera rotations like the poses do.
    """

    def __init__(self, gain: float = 0.1):
        self.gain = float(gain)
        self.q = np.array([1.0, 0.0, 0.0, 0.0])

    def update(self, acceleration: np.ndarray, angular_velocity: np.ndarray, dt: float) -> None:
        q0, q1, q2, q3 = self.q
        gx, gy, gz = np.asarray(angular_velocity, dtype=np.float64).reshape(3)

        q_dot = 0.5 * np.array([
            -q1 * gx - q2 * gy - q3 * gz,
            q0 * gx + q2 * gz - q3 * gy,
            q0 * gy - q1 * gz + q3 * gx,
            q0 * gz + q1 * gy - q2 * gx,
        ])

        a = np.asarray(acceleration, dtype=np.float64).reshape(3)
        a_norm = np.linalg.norm(a)
        if a_norm > 0.0:
            ax, ay, az = a / a_norm
            f = np.array([
                2.0 * (q1 * q3 - q0 * q2) - ax,
                2.0 * (q0 * q1 + q2 * q3) - ay,
                2.0 * (0.5 - q1 * q1 - q2 * q2) - az,
            ])
            J = np.array([
                [-2.0 * q2, 2.0 * q3, -2.0 * q0, 2.0 * q1],
                [2.0 * q1, 2.0 * q0, 2.0 * q3, 2.0 * q2],
                [0.0, -4.0 * q1, -4.0 * q2, 0.0],
            ])
            step = J.T @ f
            s_norm = np.linalg.norm(step)
            if s_norm > 0.0:
                q_dot -= self.gain * step / s_norm

        q = self.q + q_dot * float(dt)
        self.q = q / np.linalg.norm(q)

    def get_orientation(self) -> np.ndarray:
        w, x, y, z = self.q
        R_wc = Rotation.from_quat([x, y, z, w]).as_matrix()
        return R_wc.T

    def set_orientation_from_pose(self, T_cw: np.ndarray) -> None:
        x, y, z, w = Rotation.from_matrix(np.asarray(T_cw)[:3, :3].T).as_quat()
        self.q = np.array([w, x, y, z])
