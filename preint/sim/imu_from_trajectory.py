"""
Generate synthetic IMU measurements from a ground-truth trajectory.

Accelerometers measure specific force, not acceleration. For a body with
navigation-frame acceleration a_N and attitude R (body to navigation):

    f_b = R^T (a_N - g_N)

so a stationary IMU in a Z-down frame (g_N = [0, 0, +g]) reads
f_b = [0, 0, -g].

The constant-rate trajectory below (constant body angular rate, constant
navigation-frame acceleration) is integrated exactly by the preintegration
engine with second-order position integration: the rotated specific force
R_k f_b,k equals a_N - g_N at every sample. The IMU factor residual at the
ground-truth states is therefore zero up to rounding, which makes it a
convenient end-to-end check.
"""

from typing import List, Optional, Tuple

import numpy as np

from preint.coords.so3 import expmap
from preint.sensors.types import ImuBias, ImuSeries, NavState, PreintegrationParams


def compute_specific_force_body(
    accel_nav: np.ndarray,
    R_b_to_n: np.ndarray,
    gravity: np.ndarray,
) -> np.ndarray:
    """
    Specific force in body frame from true navigation-frame acceleration.

    Forward model: f_b = R^T (a_N - g_N).

    Args:
        accel_nav: True acceleration in navigation frame, shape (3,) or (N, 3).
        R_b_to_n: Body-to-navigation rotation(s), shape (3, 3) or (N, 3, 3).
        gravity: Gravity vector in navigation frame, shape (3,).

    Returns:
        Ideal accelerometer reading(s), shape (3,) or (N, 3).

    Example:
        >>> import numpy as np
        >>> compute_specific_force_body(np.zeros(3), np.eye(3),
        ...                             np.array([0.0, 0.0, 9.81]))
        array([ 0.  ,  0.  , -9.81])
    """
    accel_nav = np.asarray(accel_nav, dtype=np.float64)
    R_b_to_n = np.asarray(R_b_to_n, dtype=np.float64)
    gravity = np.asarray(gravity, dtype=np.float64)

    if accel_nav.ndim == 1:
        return R_b_to_n.T @ (accel_nav - gravity)

    if R_b_to_n.shape != (accel_nav.shape[0], 3, 3):
        raise ValueError(
            f"R_b_to_n must have shape ({accel_nav.shape[0]}, 3, 3), "
            f"got {R_b_to_n.shape}"
        )
    return np.einsum("nji,nj->ni", R_b_to_n, accel_nav - gravity)


def generate_constant_rate_trajectory(
    initial_state: NavState,
    omega_body: np.ndarray,
    accel_nav: np.ndarray,
    gravity: np.ndarray,
    dt: float,
    n_samples: int,
    bias: Optional[ImuBias] = None,
) -> Tuple[ImuSeries, List[NavState]]:
    """
    Ideal IMU data and ground truth for constant body rate and acceleration.

    Ground truth at t_k = k dt:
        R_k = R_0 Exp(omega_body t_k)
        v_k = v_0 + a_N t_k
        p_k = p_0 + v_0 t_k + 0.5 a_N t_k²

    Args:
        initial_state: NavState at t = 0.
        omega_body: Constant angular rate in body frame, shape (3,). rad/s.
        accel_nav: Constant acceleration in navigation frame, shape (3,). m/s².
        gravity: Gravity vector in navigation frame, shape (3,).
        dt: Sample interval. Units: seconds.
        n_samples: Number of integration intervals.
        bias: Optional bias added to the ideal readings.

    Returns:
        (imu, states): ImuSeries with n_samples + 1 samples, and the
        n_samples + 1 ground-truth NavStates at the same timestamps.
    """
    if not np.isfinite(dt) or dt <= 0:
        raise ValueError(f"dt must be positive and finite, got {dt}")
    if n_samples < 1:
        raise ValueError(f"n_samples must be at least 1, got {n_samples}")

    omega_body = np.asarray(omega_body, dtype=np.float64)
    accel_nav = np.asarray(accel_nav, dtype=np.float64)
    if bias is None:
        bias = ImuBias()

    t = np.arange(n_samples + 1) * dt
    states = []
    for tk in t:
        states.append(NavState(
            R=initial_state.R @ expmap(omega_body * tk),
            p=initial_state.p + initial_state.v * tk + 0.5 * accel_nav * tk * tk,
            v=initial_state.v + accel_nav * tk,
        ))

    R_all = np.stack([s.R for s in states])
    accel = compute_specific_force_body(
        np.tile(accel_nav, (t.shape[0], 1)), R_all, gravity
    ) + bias.accelerometer
    gyro = np.tile(omega_body, (t.shape[0], 1)) + bias.gyroscope

    imu = ImuSeries(
        t=t,
        accel=accel,
        gyro=gyro,
        meta={"sample_rate_hz": 1.0 / dt, "source": "constant_rate_trajectory"},
    )
    return imu, states


def add_imu_noise(
    imu: ImuSeries,
    params: PreintegrationParams,
    rng: Optional[np.random.Generator] = None,
) -> ImuSeries:
    """
    Add white noise consistent with the continuous-time noise model.

    Discrete-time standard deviation is sqrt(Q / dt), so that the
    preintegrated covariance (Q dt per sample) matches the injected noise.

    Args:
        imu: Noise-free IMU series (uniformly sampled).
        params: Noise model (accelerometer and gyroscope covariances).
        rng: Random generator; default np.random.default_rng().

    Returns:
        New ImuSeries with noisy accel and gyro.
    """
    if rng is None:
        rng = np.random.default_rng()
    if len(imu) < 2:
        raise ValueError("imu must contain at least two samples")

    dt = float(np.mean(imu.dt))
    n = len(imu)
    accel_noise = rng.multivariate_normal(
        np.zeros(3), params.accelerometer_covariance / dt, size=n
    )
    gyro_noise = rng.multivariate_normal(
        np.zeros(3), params.gyroscope_covariance / dt, size=n
    )

    meta = dict(imu.meta)
    meta["noisy"] = True
    return ImuSeries(
        t=imu.t.copy(),
        accel=imu.accel + accel_noise,
        gyro=imu.gyro + gyro_noise,
        meta=meta,
    )
