"""
Unit tests for preint.sim.imu_from_trajectory module.

Tests the ideal IMU forward model, the constant-rate trajectory generator
and white-noise injection.
"""

import unittest

import numpy as np

from preint.coords import expmap
from preint.sensors import ImuBias, NavState, PreintegrationParams
from preint.sim import (
    add_imu_noise,
    compute_specific_force_body,
    generate_constant_rate_trajectory,
)


class TestSpecificForce(unittest.TestCase):
    """Test compute_specific_force_body."""

    def test_stationary_level_ned(self):
        """Level IMU at rest in a Z-down frame reads -g along z."""
        f_b = compute_specific_force_body(np.zeros(3), np.eye(3), np.array([0.0, 0.0, 9.81]))
        np.testing.assert_allclose(f_b, [0.0, 0.0, -9.81])

    def test_stationary_level_enu(self):
        f_b = compute_specific_force_body(np.zeros(3), np.eye(3), np.array([0.0, 0.0, -9.81]))
        np.testing.assert_allclose(f_b, [0.0, 0.0, 9.81])

    def test_free_fall_reads_zero(self):
        g = np.array([0.0, 0.0, 9.81])
        R = expmap(np.array([0.3, -0.2, 0.1]))
        np.testing.assert_allclose(compute_specific_force_body(g, R, g), np.zeros(3), atol=1e-15)

    def test_batch_matches_single(self):
        g = np.array([0.0, 0.0, 9.81])
        accel = np.array([[0.1, 0.2, 0.3], [-1.0, 0.5, 0.0]])
        R = np.stack([expmap(np.array([0.1, 0.0, 0.2])), expmap(np.array([0.0, -0.4, 0.3]))])

        batch = compute_specific_force_body(accel, R, g)
        self.assertEqual(batch.shape, (2, 3))
        for k in range(2):
            np.testing.assert_allclose(
                batch[k], compute_specific_force_body(accel[k], R[k], g), atol=1e-15
            )

    def test_batch_shape_mismatch(self):
        with self.assertRaises(ValueError):
            compute_specific_force_body(np.zeros((3, 3)), np.stack([np.eye(3)] * 2), np.zeros(3))


class TestConstantRateTrajectory(unittest.TestCase):
    """Test generate_constant_rate_trajectory."""

    def setUp(self):
        self.gravity = np.array([0.0, 0.0, 9.81])
        self.state0 = NavState(v=np.array([1.0, 0.0, 0.0]))

    def test_lengths_and_timestamps(self):
        imu, states = generate_constant_rate_trajectory(
            self.state0, np.zeros(3), np.zeros(3), self.gravity, dt=0.01, n_samples=100
        )
        self.assertEqual(len(imu), 101)
        self.assertEqual(len(states), 101)
        self.assertAlmostEqual(imu.t[-1], 1.0)
        self.assertAlmostEqual(imu.meta["sample_rate_hz"], 100.0)

    def test_constant_velocity(self):
        imu, states = generate_constant_rate_trajectory(
            self.state0, np.zeros(3), np.zeros(3), self.gravity, dt=0.1, n_samples=10
        )
        np.testing.assert_allclose(states[-1].p, [1.0, 0.0, 0.0], atol=1e-12)
        np.testing.assert_allclose(imu.accel, np.tile([0.0, 0.0, -9.81], (11, 1)))
        np.testing.assert_array_equal(imu.gyro, np.zeros((11, 3)))

    def test_constant_rate_attitude(self):
        omega = np.array([0.0, 0.0, 0.5])
        imu, states = generate_constant_rate_trajectory(
            self.state0, omega, np.zeros(3), self.gravity, dt=0.1, n_samples=20
        )
        np.testing.assert_allclose(states[-1].attitude(), [0.0, 0.0, 1.0], atol=1e-12)
        np.testing.assert_allclose(imu.gyro, np.tile(omega, (21, 1)))

    def test_bias_added(self):
        bias = ImuBias(accelerometer=[0.1, 0.0, 0.0], gyroscope=[0.0, 0.01, 0.0])
        clean, _ = generate_constant_rate_trajectory(
            self.state0, np.zeros(3), np.zeros(3), self.gravity, dt=0.1, n_samples=5
        )
        biased, _ = generate_constant_rate_trajectory(
            self.state0, np.zeros(3), np.zeros(3), self.gravity, dt=0.1, n_samples=5, bias=bias
        )
        np.testing.assert_allclose(biased.accel - clean.accel, np.tile([0.1, 0.0, 0.0], (6, 1)))
        np.testing.assert_allclose(biased.gyro - clean.gyro, np.tile([0.0, 0.01, 0.0], (6, 1)))

    def test_invalid_arguments(self):
        with self.assertRaises(ValueError):
            generate_constant_rate_trajectory(
                self.state0, np.zeros(3), np.zeros(3), self.gravity, dt=0.0, n_samples=5
            )
        with self.assertRaises(ValueError):
            generate_constant_rate_trajectory(
                self.state0, np.zeros(3), np.zeros(3), self.gravity, dt=0.1, n_samples=0
            )
        with self.assertRaises(ValueError):
            generate_constant_rate_trajectory(
                self.state0, np.zeros(3), np.zeros(3), self.gravity, dt=np.nan, n_samples=5
            )


class TestAddImuNoise(unittest.TestCase):
    """Test add_imu_noise."""

    def setUp(self):
        self.params = PreintegrationParams.create_ned(
            gyroscope_covariance=0.01 ** 2 * np.eye(3),
            accelerometer_covariance=0.1 ** 2 * np.eye(3),
        )
        self.imu, _ = generate_constant_rate_trajectory(
            NavState(), np.zeros(3), np.zeros(3), self.params.gravity, dt=0.01, n_samples=5000
        )

    def test_noise_statistics(self):
        """Discrete standard deviation is sqrt(Q / dt)."""
        noisy = add_imu_noise(self.imu, self.params, rng=np.random.default_rng(0))

        accel_std = np.std(noisy.accel - self.imu.accel, axis=0)
        gyro_std = np.std(noisy.gyro - self.imu.gyro, axis=0)
        np.testing.assert_allclose(accel_std, 0.1 / np.sqrt(0.01), rtol=0.05)
        np.testing.assert_allclose(gyro_std, 0.01 / np.sqrt(0.01), rtol=0.05)

    def test_original_unchanged(self):
        accel_before = self.imu.accel.copy()
        noisy = add_imu_noise(self.imu, self.params, rng=np.random.default_rng(1))

        np.testing.assert_array_equal(self.imu.accel, accel_before)
        np.testing.assert_array_equal(noisy.t, self.imu.t)
        self.assertTrue(noisy.meta["noisy"])
        self.assertNotIn("noisy", self.imu.meta)

    def test_reproducible_with_seed(self):
        a = add_imu_noise(self.imu, self.params, rng=np.random.default_rng(3))
        b = add_imu_noise(self.imu, self.params, rng=np.random.default_rng(3))
        np.testing.assert_array_equal(a.accel, b.accel)


if __name__ == "__main__":
    unittest.main()
