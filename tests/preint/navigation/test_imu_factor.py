"""
Unit tests for preint.navigation.imu_factor module.

Tests the IMU factor residual at known states, prediction, bias correction,
the noise model and the factor interface used by an optimizer.

Run with: pytest tests/preint/navigation/test_imu_factor.py -v
"""

import numpy as np
import pytest

from preint.coords import expmap
from preint.navigation import ImuFactor, compute_error, predict
from preint.sensors import (
    CoriolisCompensation,
    ImuBias,
    NavState,
    PreintegratedImuMeasurements,
    PreintegrationParams,
    integrate_imu_series,
)
from preint.sim import (
    add_imu_noise,
    compute_specific_force_body,
    generate_constant_rate_trajectory,
)

DT = 0.01


def make_params(**kwargs):
    return PreintegrationParams.create_ned(
        g=9.81,
        gyroscope_covariance=0.02 ** 2 * np.eye(3),
        accelerometer_covariance=0.1 ** 2 * np.eye(3),
        integration_covariance=1e-6 * np.eye(3),
        **kwargs,
    )


def simulate(params, n=100, bias=None):
    """Constant-rate trajectory with a rotated, moving initial state."""
    state0 = NavState(
        R=expmap(np.array([0.1, -0.2, 0.3])),
        p=np.array([10.0, -5.0, 2.0]),
        v=np.array([1.0, 0.5, 0.0]),
    )
    return generate_constant_rate_trajectory(
        state0,
        omega_body=np.array([0.1, -0.2, 0.3]),
        accel_nav=np.array([0.5, -0.2, 0.1]),
        gravity=params.gravity,
        dt=DT,
        n_samples=n,
        bias=bias,
    )


class TestComputeError:
    """Residual of the IMU factor."""

    def test_empty_interval_identical_states(self):
        pim = PreintegratedImuMeasurements(make_params())
        out = compute_error(pim, NavState(), NavState(), ImuBias())

        np.testing.assert_allclose(out.residual, np.zeros(9), atol=1e-15)
        assert out.H_state_i is None and out.H_state_j is None and out.H_bias is None

    def test_stationary_interval(self):
        """At rest the accelerometer reads -g; the residual vanishes."""
        params = make_params()
        state = NavState(R=expmap(np.array([0.2, -0.1, 0.5])), p=np.array([1.0, 2.0, 3.0]))
        f_b = compute_specific_force_body(np.zeros(3), state.R, params.gravity)

        pim = PreintegratedImuMeasurements(params)
        for _ in range(100):
            pim = pim.integrate_measurement(f_b, np.zeros(3), DT)

        out = compute_error(pim, state, NavState(R=state.R, p=state.p, v=state.v), ImuBias())
        np.testing.assert_allclose(out.residual, np.zeros(9), atol=1e-10)

    def test_ground_truth_trajectory(self):
        params = make_params()
        imu, states = simulate(params)
        pim = integrate_imu_series(PreintegratedImuMeasurements(params), imu)

        out = compute_error(pim, states[0], states[-1], ImuBias(), jacobians=True)
        np.testing.assert_allclose(out.residual, np.zeros(9), atol=1e-9)
        assert out.H_state_i.shape == (9, 9)
        assert out.H_state_j.shape == (9, 9)
        assert out.H_bias.shape == (9, 6)

    def test_ground_truth_with_known_bias(self):
        params = make_params()
        bias = ImuBias(accelerometer=[0.05, -0.02, 0.03], gyroscope=[0.002, -0.001, 0.003])
        imu, states = simulate(params, bias=bias)
        pim = integrate_imu_series(PreintegratedImuMeasurements(params, bias_hat=bias), imu)

        out = compute_error(pim, states[0], states[-1], bias)
        np.testing.assert_allclose(out.residual, np.zeros(9), atol=1e-9)

    def test_bias_correction_reduces_residual(self):
        """Integrate with a zero bias, evaluate at the true bias."""
        params = make_params()
        bias = ImuBias(accelerometer=[0.05, -0.02, 0.03], gyroscope=[0.002, -0.001, 0.003])
        imu, states = simulate(params, bias=bias)
        pim = integrate_imu_series(PreintegratedImuMeasurements(params), imu)

        uncorrected = compute_error(pim, states[0], states[-1], ImuBias()).residual
        corrected = compute_error(pim, states[0], states[-1], bias).residual

        assert np.linalg.norm(uncorrected) > 1e-2
        assert np.linalg.norm(corrected) < 1e-2 * np.linalg.norm(uncorrected)

    def test_pose_error_detected(self):
        params = make_params()
        imu, states = simulate(params)
        pim = integrate_imu_series(PreintegratedImuMeasurements(params), imu)

        moved = states[-1].retract(np.array([0.1, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0, 0.01]))
        r = compute_error(pim, states[0], moved, ImuBias()).residual

        np.testing.assert_allclose(r[0:3], states[0].R.T @ [0.1, 0.0, 0.0], atol=1e-9)
        np.testing.assert_allclose(r[3:6], np.zeros(3), atol=1e-9)
        np.testing.assert_allclose(r[6:9], [0.0, 0.0, 0.01], atol=1e-9)


class TestPredict:
    """Prediction of state j."""

    def test_predict_matches_ground_truth(self):
        params = make_params()
        imu, states = simulate(params)
        pim = integrate_imu_series(PreintegratedImuMeasurements(params), imu)

        predicted = predict(pim, states[0], ImuBias())
        np.testing.assert_allclose(predicted.R, states[-1].R, atol=1e-12)
        np.testing.assert_allclose(predicted.p, states[-1].p, atol=1e-9)
        np.testing.assert_allclose(predicted.v, states[-1].v, atol=1e-9)

    @pytest.mark.parametrize("coriolis", list(CoriolisCompensation))
    def test_prediction_has_zero_residual(self, coriolis):
        params = make_params(omega_coriolis=np.array([0.0, 0.05, 0.1]), coriolis=coriolis)
        imu, states = simulate(params, n=50)
        pim = integrate_imu_series(PreintegratedImuMeasurements(params), imu)
        bias = ImuBias(accelerometer=[0.01, 0.0, -0.01], gyroscope=[0.0, 0.001, 0.0])

        predicted = predict(pim, states[0], bias)
        r = compute_error(pim, states[0], predicted, bias).residual
        np.testing.assert_allclose(r, np.zeros(9), atol=1e-12)

    def test_coriolis_changes_prediction(self):
        W = np.array([0.0, 0.0, 7.292115e-5])
        plain = make_params()
        earth = make_params(omega_coriolis=W, coriolis=CoriolisCompensation.SECOND_ORDER)
        imu, states = simulate(plain, n=50)

        p_plain = predict(integrate_imu_series(PreintegratedImuMeasurements(plain), imu),
                          states[0], ImuBias())
        p_earth = predict(integrate_imu_series(PreintegratedImuMeasurements(earth), imu),
                          states[0], ImuBias())

        assert not np.allclose(p_plain.v, p_earth.v, rtol=0, atol=1e-9)


class TestImuFactor:
    """Five-variable factor interface."""

    def setup_method(self):
        self.params = make_params()
        self.imu, self.states = simulate(self.params, n=50)
        self.pim = integrate_imu_series(PreintegratedImuMeasurements(self.params), self.imu)
        self.factor = ImuFactor("x0", "v0", "x1", "v1", "b", self.pim)
        self.values = {
            "x0": self.states[0].pose(),
            "v0": self.states[0].v,
            "x1": self.states[-1].pose(),
            "v1": self.states[-1].v,
            "b": ImuBias(),
        }

    def test_variable_ids(self):
        assert self.factor.variable_ids == ["x0", "v0", "x1", "v1", "b"]
        assert self.factor.preintegrated is self.pim

    def test_information_is_inverse_covariance(self):
        np.testing.assert_allclose(
            self.factor.information @ self.factor.noise_covariance, np.eye(9), atol=1e-8
        )

    def test_zero_covariance_rejected(self):
        pim = PreintegratedImuMeasurements(self.params)
        with pytest.raises(ValueError, match="not positive definite"):
            ImuFactor(0, 1, 2, 3, 4, pim)

    def test_compute_error_at_ground_truth(self):
        assert self.factor.compute_error(self.values) < 1e-12

    def test_compute_error_weighted(self):
        values = dict(self.values)
        values["v1"] = self.states[-1].v + np.array([0.2, 0.0, 0.0])

        r, H = self.factor.evaluate_error(*[values[k] for k in self.factor.variable_ids])
        assert H is None
        expected = r @ np.linalg.inv(self.pim.preint_meas_cov) @ r
        assert self.factor.compute_error(values) == pytest.approx(expected, rel=1e-6)
        assert self.factor.compute_error(values) > 1.0

    def test_linearize(self):
        r, jacobians = self.factor.linearize(self.values)

        np.testing.assert_allclose(r, np.zeros(9), atol=1e-9)
        assert [J.shape for J in jacobians] == [(9, 6), (9, 3), (9, 6), (9, 3), (9, 6)]
        # Velocity of state j enters only the velocity rows
        np.testing.assert_allclose(jacobians[3][3:6], self.states[0].R.T, atol=1e-12)
        np.testing.assert_array_equal(jacobians[3][0:3], np.zeros((3, 3)))
        np.testing.assert_array_equal(jacobians[3][6:9], np.zeros((3, 3)))


class TestNoiseConsistency:
    """Residual scatter against the propagated covariance."""

    def test_mean_chi_square(self):
        """E[r^T P^-1 r] = 9 at the ground truth."""
        params = make_params()
        imu_true, states = simulate(params, n=50)
        rng = np.random.default_rng(7)

        chi2 = []
        for _ in range(200):
            imu = add_imu_noise(imu_true, params, rng=rng)
            pim = integrate_imu_series(PreintegratedImuMeasurements(params), imu)
            factor = ImuFactor(0, 1, 2, 3, 4, pim)
            chi2.append(factor.compute_error({
                0: states[0].pose(), 1: states[0].v,
                2: states[-1].pose(), 3: states[-1].v,
                4: ImuBias(),
            }))

        assert 7.5 < np.mean(chi2) < 10.5
