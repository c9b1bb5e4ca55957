"""
IMU preintegration engine: tangent-state update and covariance propagation.

This module summarizes a stream of IMU samples between two keyframes i and j
into a single relative-motion measurement expressed in body frame B_i:

    zeta = [dp (3), dv (3), dtheta (3)]

where dtheta are the so(3) coordinates of the relative rotation
dR = R_i^T R_j. Alongside zeta the engine carries:
    - the 9x9 covariance of zeta (first-order, EKF-style propagation)
    - Jacobians of zeta with respect to the accelerometer/gyro bias, so a new
      bias estimate can be applied without re-integrating the samples

Per-sample recursion (sample k, corrected acc a and rate w, interval dt):

    theta' = Log(Exp(theta) Exp(w dt))
    v'     = v + Exp(theta) a dt
    p'     = p + v dt + 0.5 Exp(theta) a dt²      (second-order integration)

Velocity and position use the rotation BEFORE the increment. The bias
Jacobians are updated before zeta and use the same pre-update rotation;
the order of these two steps is part of the contract.

Snapshots are immutable: integrate_measurement() returns a new
PreintegratedImuMeasurements and never modifies the receiver, so a finished
snapshot can be shared by any number of factor evaluations.

References:
    C. Forster, L. Carlone, F. Dellaert, D. Scaramuzza,
    "On-Manifold Preintegration for Real-Time Visual-Inertial Odometry",
    IEEE Transactions on Robotics, 2017.
"""

import warnings
from dataclasses import dataclass, field, replace
from typing import Optional

import numpy as np

from preint.coords.so3 import (
    expmap,
    logmap,
    right_jacobian,
    right_jacobian_inverse,
    skew,
)
from preint.sensors.imu_models import correct_measurements
from preint.sensors.types import ImuBias, ImuSeries, Pose, PreintegrationParams

# Index slices into the 9-dim tangent state.
POS = slice(0, 3)
VEL = slice(3, 6)
ROT = slice(6, 9)

# Past this angle the logarithm map is close to its branch cut at pi.
_ROTATION_WARN_ANGLE = 0.95 * np.pi


def _frozen(arr: np.ndarray) -> np.ndarray:
    out = np.array(arr, dtype=np.float64)
    out.flags.writeable = False
    return out


@dataclass(frozen=True)
class EstimateUpdate:
    """
    Result of one tangent-state update.

    Attributes:
        zeta: Updated tangent state [dp, dv, dtheta], shape (9,).
        H_zeta: d zeta' / d zeta, shape (9, 9). None unless requested.
        H_acc: d zeta' / d acc, shape (9, 3). None unless requested.
        H_omega: d zeta' / d omega, shape (9, 3). None unless requested.
    """

    zeta: np.ndarray
    H_zeta: Optional[np.ndarray] = None
    H_acc: Optional[np.ndarray] = None
    H_omega: Optional[np.ndarray] = None


def update_estimate(
    acc: np.ndarray,
    omega: np.ndarray,
    dt: float,
    zeta: np.ndarray,
    use_2nd_order_integration: bool = True,
    jacobians: bool = False,
) -> EstimateUpdate:
    """
    Advance the preintegrated tangent state by one corrected IMU sample.

    Implements, with R = Exp(theta) and R_incr = Exp(omega dt):

        theta' = Log(R R_incr)
        v'     = v + R acc dt
        p'     = p + v dt + 0.5 R acc dt²   (0.5 R acc dt² only if second order)

    Args:
        acc: Corrected specific force in body frame, shape (3,). Units: m/s².
        omega: Corrected angular rate in body frame, shape (3,). Units: rad/s.
        dt: Sample interval. Units: seconds. Must be positive.
        zeta: Current tangent state [dp, dv, dtheta], shape (9,).
        use_2nd_order_integration: Include the 0.5 R acc dt² position term.
        jacobians: If True, also compute the analytic Jacobians.

    Returns:
        EstimateUpdate with the new state and, if requested, Jacobians:

            d theta'/d theta = Jr^-1(theta') R_incr^T Jr(theta)
            d v'/d theta     = -R [acc]x Jr(theta) dt
            d p'/d theta     = -R [acc]x Jr(theta) dt²/2   (second order)
            d p'/d v         = I dt
            d v'/d acc       = R dt,   d p'/d acc = R dt²/2
            d theta'/d omega = Jr^-1(theta') Jr(omega dt) dt

    Example:
        >>> import numpy as np
        >>> out = update_estimate(np.array([0.0, 0.0, 9.8]), np.zeros(3), 0.1,
        ...                       np.zeros(9), jacobians=True)
        >>> out.zeta[3:6]
        array([0.  , 0.  , 0.98])
    """
    acc = np.asarray(acc, dtype=np.float64)
    omega = np.asarray(omega, dtype=np.float64)
    zeta = np.asarray(zeta, dtype=np.float64)
    if acc.shape != (3,):
        raise ValueError(f"acc must have shape (3,), got {acc.shape}")
    if omega.shape != (3,):
        raise ValueError(f"omega must have shape (3,), got {omega.shape}")
    if zeta.shape != (9,):
        raise ValueError(f"zeta must have shape (9,), got {zeta.shape}")
    if not np.isfinite(dt) or dt <= 0:
        raise ValueError(f"dt must be positive and finite, got {dt}")

    position, velocity, theta = zeta[POS], zeta[VEL], zeta[ROT]

    R = expmap(theta)
    theta_incr = omega * dt
    R_incr = expmap(theta_incr)
    a_nav = R @ acc
    dt22 = 0.5 * dt * dt

    theta_plus = logmap(R @ R_incr)
    velocity_plus = velocity + a_nav * dt
    position_plus = position + velocity * dt
    if use_2nd_order_integration:
        position_plus = position_plus + a_nav * dt22

    zeta_plus = np.concatenate([position_plus, velocity_plus, theta_plus])
    if not jacobians:
        return EstimateUpdate(zeta=zeta_plus)

    Jr_theta = right_jacobian(theta)
    Jrinv_theta_plus = right_jacobian_inverse(theta_plus)
    a_nav_H_theta = -R @ skew(acc) @ Jr_theta

    H_zeta = np.eye(9)
    H_zeta[POS, VEL] = np.eye(3) * dt
    H_zeta[VEL, ROT] = a_nav_H_theta * dt
    H_zeta[ROT, ROT] = Jrinv_theta_plus @ R_incr.T @ Jr_theta

    H_acc = np.zeros((9, 3))
    H_acc[VEL] = R * dt

    if use_2nd_order_integration:
        H_zeta[POS, ROT] = a_nav_H_theta * dt22
        H_acc[POS] = R * dt22

    H_omega = np.zeros((9, 3))
    H_omega[ROT] = Jrinv_theta_plus @ right_jacobian(theta_incr) * dt

    return EstimateUpdate(
        zeta=zeta_plus, H_zeta=H_zeta, H_acc=H_acc, H_omega=H_omega
    )


@dataclass(frozen=True)
class IntegrationStep:
    """
    One absorbed IMU sample, with the linearization used to propagate noise.

    Attributes:
        preintegrated: Snapshot after the sample.
        F: Transition matrix of the 9-dim error state, shape (9, 9).
        G: Noise input matrix for [integration, acc, gyro] noise, shape (9, 9).
           Only used for verification: G Q G^T / dt ~= Q dt.
    """

    preintegrated: "PreintegratedImuMeasurements"
    F: np.ndarray
    G: np.ndarray


@dataclass(frozen=True, eq=False)
class PreintegratedImuMeasurements:
    """
    Immutable preintegrated IMU measurement between keyframes i and j.

    Attributes:
        params: Noise model and integration options.
        bias_hat: Bias used to correct samples during integration.
        zeta: Tangent state [dp, dv, dtheta] in body frame B_i, shape (9,).
        preint_meas_cov: Covariance of zeta, shape (9, 9).
        delta_t_ij: Integrated time. Units: seconds.
        del_p_del_bias_acc: d dp / d b_a, shape (3, 3).
        del_p_del_bias_omega: d dp / d b_g, shape (3, 3).
        del_v_del_bias_acc: d dv / d b_a, shape (3, 3).
        del_v_del_bias_omega: d dv / d b_g, shape (3, 3).
        del_r_del_bias_omega: d dR / d b_g as a right perturbation,
                              dR(b_g + d) ~= dR Exp(del_r_del_bias_omega d).

    Notes:
        - All arrays are read-only; integrate_measurement() returns a new
          snapshot.
        - A new interval starts from reset_integration() (or a fresh
          instance); there is no restart that keeps history.

    Example:
        >>> import numpy as np
        >>> params = PreintegrationParams.create_ned(
        ...     gyroscope_covariance=1e-4 * np.eye(3),
        ...     accelerometer_covariance=1e-2 * np.eye(3),
        ...     integration_covariance=1e-8 * np.eye(3),
        ... )
        >>> pim = PreintegratedImuMeasurements(params)
        >>> for _ in range(10):
        ...     pim = pim.integrate_measurement([0.0, 0.0, -9.81], np.zeros(3), 0.01)
        >>> round(pim.delta_t_ij, 6)
        0.1
    """

    params: PreintegrationParams
    bias_hat: ImuBias = field(default_factory=ImuBias)
    zeta: np.ndarray = field(default_factory=lambda: np.zeros(9))
    preint_meas_cov: np.ndarray = field(default_factory=lambda: np.zeros((9, 9)))
    delta_t_ij: float = 0.0
    del_p_del_bias_acc: np.ndarray = field(default_factory=lambda: np.zeros((3, 3)))
    del_p_del_bias_omega: np.ndarray = field(default_factory=lambda: np.zeros((3, 3)))
    del_v_del_bias_acc: np.ndarray = field(default_factory=lambda: np.zeros((3, 3)))
    del_v_del_bias_omega: np.ndarray = field(default_factory=lambda: np.zeros((3, 3)))
    del_r_del_bias_omega: np.ndarray = field(default_factory=lambda: np.zeros((3, 3)))

    def __post_init__(self) -> None:
        """Validate shapes and make all arrays read-only."""
        if not isinstance(self.params, PreintegrationParams):
            raise ValueError(
                f"params must be PreintegrationParams, got {type(self.params)}"
            )
        if not isinstance(self.bias_hat, ImuBias):
            raise ValueError(f"bias_hat must be ImuBias, got {type(self.bias_hat)}")

        shapes = {
            "zeta": (9,),
            "preint_meas_cov": (9, 9),
            "del_p_del_bias_acc": (3, 3),
            "del_p_del_bias_omega": (3, 3),
            "del_v_del_bias_acc": (3, 3),
            "del_v_del_bias_omega": (3, 3),
            "del_r_del_bias_omega": (3, 3),
        }
        for name, shape in shapes.items():
            value = _frozen(getattr(self, name))
            if value.shape != shape:
                raise ValueError(f"{name} must have shape {shape}, got {value.shape}")
            object.__setattr__(self, name, value)

        if self.delta_t_ij < 0:
            raise ValueError(f"delta_t_ij must be non-negative, got {self.delta_t_ij}")

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------
    @property
    def delta_p_ij(self) -> np.ndarray:
        """Preintegrated position change in B_i, shape (3,)."""
        return self.zeta[POS]

    @property
    def delta_v_ij(self) -> np.ndarray:
        """Preintegrated velocity change in B_i, shape (3,)."""
        return self.zeta[VEL]

    @property
    def theta_ij(self) -> np.ndarray:
        """Preintegrated rotation as a rotation vector, shape (3,)."""
        return self.zeta[ROT]

    @property
    def delta_r_ij(self) -> np.ndarray:
        """Preintegrated rotation R_i^T R_j, shape (3, 3)."""
        return expmap(self.zeta[ROT])

    @property
    def bias_jacobian(self) -> np.ndarray:
        """
        d zeta / d [b_a, b_g], shape (9, 6).

        Rotation rows are right-perturbation derivatives of dR, see
        del_r_del_bias_omega.
        """
        J = np.zeros((9, 6))
        J[POS, 0:3] = self.del_p_del_bias_acc
        J[POS, 3:6] = self.del_p_del_bias_omega
        J[VEL, 0:3] = self.del_v_del_bias_acc
        J[VEL, 3:6] = self.del_v_del_bias_omega
        J[ROT, 3:6] = self.del_r_del_bias_omega
        return J

    # ------------------------------------------------------------------
    # Integration
    # ------------------------------------------------------------------
    def reset_integration(self) -> "PreintegratedImuMeasurements":
        """Start a new interval: zero state, covariance and bias Jacobians.

        The bias and the noise configuration are kept.
        """
        return PreintegratedImuMeasurements(params=self.params, bias_hat=self.bias_hat)

    def step(
        self,
        measured_acc: np.ndarray,
        measured_omega: np.ndarray,
        dt: float,
        body_P_sensor: Optional[Pose] = None,
    ) -> IntegrationStep:
        """
        Absorb one raw IMU sample and return the new snapshot with F and G.

        Steps (the order is significant, each uses pre-update values):
            1. correct the sample for bias_hat and sensor placement
            2. rotation increment Exp(w dt) and its right Jacobian
            3. bias Jacobians, using the previous rotation R_i
            4. tangent state via update_estimate()
            5. Jr^-1 at the new rotation theta_j (the only Log per sample)
            6. transition matrix F
            7. covariance P <- F P F^T + Q dt

        Args:
            measured_acc: Raw accelerometer sample, shape (3,). Units: m/s².
            measured_omega: Raw gyroscope sample, shape (3,). Units: rad/s.
            dt: Sample interval. Units: seconds. Must be positive.
            body_P_sensor: Sensor pose in body frame; defaults to
                           params.body_P_sensor.

        Returns:
            IntegrationStep(preintegrated, F, G).
        """
        if not np.isfinite(dt) or dt <= 0:
            raise ValueError(f"dt must be positive and finite, got {dt}")

        params = self.params
        if body_P_sensor is None:
            body_P_sensor = params.body_P_sensor

        sample = correct_measurements(
            measured_acc, measured_omega, self.bias_hat, body_P_sensor
        )
        acc, omega = sample.acc, sample.omega

        theta_incr = omega * dt
        R_incr = expmap(theta_incr)
        Jr_theta_incr = right_jacobian(theta_incr)

        theta_i = self.zeta[ROT]
        R_i = expmap(theta_i)
        Jr_theta_i = right_jacobian(theta_i)

        # Bias Jacobians first: they need R_i and the old dR/db_g.
        dP_dba = self.del_p_del_bias_acc
        dP_dbg = self.del_p_del_bias_omega
        dV_dba = self.del_v_del_bias_acc
        dV_dbg = self.del_v_del_bias_omega
        dR_dbg = self.del_r_del_bias_omega

        a_nav_H_ba = R_i @ sample.acc_H_ba
        a_nav_H_bg = R_i @ (sample.acc_H_bg - skew(acc) @ dR_dbg)
        if params.use_2nd_order_integration:
            dt22 = 0.5 * dt * dt
            dP_dba = dP_dba + dV_dba * dt + a_nav_H_ba * dt22
            dP_dbg = dP_dbg + dV_dbg * dt + a_nav_H_bg * dt22
        else:
            dP_dba = dP_dba + dV_dba * dt
            dP_dbg = dP_dbg + dV_dbg * dt
        dV_dba = dV_dba + a_nav_H_ba * dt
        dV_dbg = dV_dbg + a_nav_H_bg * dt
        dR_dbg = R_incr.T @ dR_dbg + Jr_theta_incr @ sample.omega_H_bg * dt

        update = update_estimate(
            acc, omega, dt, self.zeta,
            use_2nd_order_integration=params.use_2nd_order_integration,
        )

        theta_j = update.zeta[ROT]
        angle_j = np.linalg.norm(theta_j)
        if angle_j > _ROTATION_WARN_ANGLE:
            warnings.warn(
                f"Preintegrated rotation angle {np.degrees(angle_j):.1f} deg is "
                f"close to 180 deg; rotation covariance in tangent coordinates "
                f"becomes unreliable. Consider shorter intervals.",
                UserWarning,
            )
        Jrinv_theta_j = right_jacobian_inverse(theta_j)

        H_vel_angles = -R_i @ skew(acc) @ Jr_theta_i * dt
        H_angles_angles = Jrinv_theta_j @ R_incr.T @ Jr_theta_i

        F = np.eye(9)
        F[POS, VEL] = np.eye(3) * dt
        F[VEL, ROT] = H_vel_angles
        F[ROT, ROT] = H_angles_angles

        # Continuous-time noise times dt gives the discrete-time increment.
        cov = F @ self.preint_meas_cov @ F.T + params.measurement_covariance * dt

        G = np.zeros((9, 9))
        G[POS, 0:3] = np.eye(3) * dt
        G[VEL, 3:6] = R_i * dt
        G[ROT, 6:9] = Jrinv_theta_j @ Jr_theta_incr * dt

        preintegrated = replace(
            self,
            zeta=update.zeta,
            preint_meas_cov=cov,
            delta_t_ij=self.delta_t_ij + dt,
            del_p_del_bias_acc=dP_dba,
            del_p_del_bias_omega=dP_dbg,
            del_v_del_bias_acc=dV_dba,
            del_v_del_bias_omega=dV_dbg,
            del_r_del_bias_omega=dR_dbg,
        )
        return IntegrationStep(preintegrated=preintegrated, F=F, G=G)

    def integrate_measurement(
        self,
        measured_acc: np.ndarray,
        measured_omega: np.ndarray,
        dt: float,
        body_P_sensor: Optional[Pose] = None,
    ) -> "PreintegratedImuMeasurements":
        """
        Absorb one raw IMU sample.

        Args:
            measured_acc: Raw accelerometer sample, shape (3,). Units: m/s².
            measured_omega: Raw gyroscope sample, shape (3,). Units: rad/s.
            dt: Sample interval. Units: seconds. Must be positive.
            body_P_sensor: Sensor pose in body frame; defaults to
                           params.body_P_sensor.

        Returns:
            New snapshot including the sample. self is unchanged.
        """
        return self.step(measured_acc, measured_omega, dt, body_P_sensor).preintegrated

    # ------------------------------------------------------------------
    # Bias correction
    # ------------------------------------------------------------------
    def bias_corrected_delta(self, bias: ImuBias) -> np.ndarray:
        """
        First-order correction of zeta for a new bias estimate.

            dp_c = dp + dP/db_a db_a + dP/db_g db_g
            dv_c = dv + dV/db_a db_a + dV/db_g db_g
            theta_c = Log(dR Exp(dR/db_g db_g))

        with db = bias - bias_hat.

        Args:
            bias: Current bias estimate.

        Returns:
            Corrected tangent state, shape (9,).
        """
        delta = self.bias_hat.local(bias)
        dba, dbg = delta[0:3], delta[3:6]

        corrected = np.empty(9)
        corrected[POS] = (
            self.zeta[POS] + self.del_p_del_bias_acc @ dba
            + self.del_p_del_bias_omega @ dbg
        )
        corrected[VEL] = (
            self.zeta[VEL] + self.del_v_del_bias_acc @ dba
            + self.del_v_del_bias_omega @ dbg
        )
        corrected[ROT] = logmap(
            self.delta_r_ij @ expmap(self.del_r_del_bias_omega @ dbg)
        )
        return corrected

    def bias_correction_jacobian(self, bias: ImuBias) -> np.ndarray:
        """
        d bias_corrected_delta(bias) / d bias, shape (9, 6).

        The rotation rows are in additive so(3) coordinates:
        Jr^-1(theta_c) Jr(psi) dR/db_g with psi = dR/db_g db_g.
        """
        delta = self.bias_hat.local(bias)
        psi = self.del_r_del_bias_omega @ delta[3:6]
        theta_c = logmap(self.delta_r_ij @ expmap(psi))

        J = self.bias_jacobian
        J[ROT, 3:6] = (
            right_jacobian_inverse(theta_c) @ right_jacobian(psi)
            @ self.del_r_del_bias_omega
        )
        return J


def integrate_imu_series(
    pim: PreintegratedImuMeasurements,
    imu: ImuSeries,
) -> PreintegratedImuMeasurements:
    """
    Integrate every interval of an IMU time series.

    Sample k is held over [t[k], t[k+1]); the last sample only marks the end
    of the final interval.

    Args:
        pim: Snapshot to continue from (typically freshly reset).
        imu: Raw IMU samples.

    Returns:
        Snapshot after len(imu) - 1 samples.
    """
    for k, dt in enumerate(imu.dt):
        pim = pim.integrate_measurement(imu.accel[k], imu.gyro[k], float(dt))
    return pim
