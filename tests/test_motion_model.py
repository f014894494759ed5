"""
Constant-velocity and inertial motion models, Madgwick orientation filter.
"""

import numpy as np
import pytest
from scipy.spatial.transform import Rotation

from kfslam.geom.se3 import Rt_to_T, angular_distance, camera_center, rot_y
from kfslam.modules.const_vel import ConstantVelocityModel
from kfslam.modules.imu import ImuMeasurement, ImuMotionModel, MadgwickFilter


def pose_at(x, yaw=0.0):
    R = rot_y(yaw)
    return Rt_to_T(R, -R @ np.array([x, 0.0, 0.0]))


class TestConstantVelocity:
    def test_not_started_until_two_updates(self):
        m = ConstantVelocityModel()
        assert not m.started()
        m.update(pose_at(0.0))
        assert not m.started()
        m.update(pose_at(0.1))
        assert m.started()

    def test_predict_repeats_last_motion(self):
        m = ConstantVelocityModel()
        m.update(pose_at(0.0, 0.0))
        m.update(pose_at(0.1, 0.05))
        pred = m.predict(pose_at(0.1, 0.05))
        assert angular_distance(pred[:3, :3], rot_y(0.1)) == pytest.approx(0.0, abs=1e-9)

    def test_predict_without_velocity_keeps_pose(self):
        m = ConstantVelocityModel()
        T = pose_at(0.3)
        assert np.allclose(m.predict(T), T)

    def test_restart(self):
        m = ConstantVelocityModel()
        m.update(pose_at(0.0))
        m.update(pose_at(0.1))
        m.restart()
        assert not m.started()
        assert np.allclose(m.predict(pose_at(0.1)), pose_at(0.1))


class TestImuMotionModel:
    def test_gyro_rotation_and_const_vel_center(self):
        m = ImuMotionModel()
        m.update(pose_at(0.0))
        m.update(pose_at(0.1), ImuMeasurement(np.zeros(3), [0.0, 0.5, 0.0], 0.1))
        pred = m.predict(pose_at(0.1))
        assert np.allclose(camera_center(pred), [0.2, 0.0, 0.0])
        assert angular_distance(pred[:3, :3], np.eye(3)) == pytest.approx(0.05, abs=1e-9)

    def test_restart_drops_measurement(self):
        m = ImuMotionModel()
        m.update(pose_at(0.0), ImuMeasurement(np.zeros(3), np.ones(3), 0.1))
        m.restart()
        assert m.measurement is None


class TestMadgwick:
    def test_pure_gyro_integration(self):
        f = MadgwickFilter(gain=0.1)
        for _ in range(10):
            f.update(np.zeros(3), [0.0, 0.0, 1.0], 0.01)
        assert angular_distance(f.get_orientation(), np.eye(3)) == pytest.approx(0.1, abs=1e-3)

    def test_orientation_round_trip_through_pose(self):
        f = MadgwickFilter()
        R = Rotation.from_euler("xyz", [0.1, -0.2, 0.3]).as_matrix()
        f.set_orientation_from_pose(Rt_to_T(R, np.zeros(3)))
        assert np.allclose(f.get_orientation(), R, atol=1e-9)

    def test_level_and_still_stays_put(self):
        f = MadgwickFilter()
        for _ in range(50):
            f.update([0.0, 0.0, 9.81], np.zeros(3), 0.01)
        assert angular_distance(f.get_orientation(), np.eye(3)) < 1e-6

    def test_accelerometer_pulls_towards_gravity(self):
        f = MadgwickFilter(gain=0.5)
        tilt = Rotation.from_euler("x", 0.3).as_matrix()
        f.set_orientation_from_pose(Rt_to_T(tilt, np.zeros(3)))
        before = angular_distance(f.get_orientation(), np.eye(3))
        for _ in range(100):
            f.update([0.0, 0.0, 9.81], np.zeros(3), 0.01)
        assert angular_distance(f.get_orientation(), np.eye(3)) < before
