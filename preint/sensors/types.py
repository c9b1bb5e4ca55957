"""
Data structures for IMU preintegration.

This module defines the shared value and configuration types used by the
preintegration engine and the IMU factor:
    - Sensor bias (accelerometer + gyroscope), constant over an interval
    - Rigid pose and navigation state (attitude, position, velocity)
    - Time-series IMU packet
    - Preintegration configuration (noise model, gravity, Coriolis options)

All structures use NumPy arrays. Configuration and sensor packets are
frozen (immutable); navigation states are mutable like any other estimate
handed back and forth with an optimizer.

Frame Conventions:
    - B: Body frame. The preintegrated quantities are expressed in B at the
      start of the interval (time i).
    - S: Sensor (IMU) frame, related to B by an optional body_P_sensor pose.
    - N: Navigation frame in which gravity and the Earth rate are given.
    - Rotation R maps B to N: v_N = R @ v_B.

Tangent-space ordering:
    - TangentState / NavState:  [dp (3), dv (3), dtheta (3)]
    - Pose:                     [dt (3), dtheta (3)]
    - ImuBias:                  [b_a (3), b_g (3)]

References:
    T. Lupton, S. Sukkarieh, "Visual-Inertial-Aided Navigation for
    High-Dynamic Motion in Built Environments Without Initial Conditions",
    IEEE Transactions on Robotics, 2012.
    C. Forster et al., "On-Manifold Preintegration for Real-Time
    Visual-Inertial Odometry", IEEE Transactions on Robotics, 2017.
"""

import warnings
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

import numpy as np

from preint.coords.so3 import expmap, logmap


def _as_vector3(value, name: str) -> np.ndarray:
    """Convert to a float64 (3,) array or raise ValueError."""
    arr = np.array(value, dtype=np.float64)
    if arr.shape != (3,):
        raise ValueError(f"{name} must have shape (3,), got {arr.shape}")
    return arr


def _read_only(arr: np.ndarray) -> np.ndarray:
    arr.flags.writeable = False
    return arr


def _as_covariance3(value, name: str) -> np.ndarray:
    """Convert to a float64 3x3 symmetric PSD matrix or raise ValueError."""
    arr = np.array(value, dtype=np.float64)
    if arr.shape != (3, 3):
        raise ValueError(f"{name} must have shape (3, 3), got {arr.shape}")

    scale = max(1.0, float(np.max(np.abs(arr))))
    if not np.allclose(arr, arr.T, rtol=0.0, atol=1e-12 * scale):
        raise ValueError(f"{name} must be symmetric")

    min_eig = float(np.min(np.linalg.eigvalsh(arr)))
    if min_eig < -1e-12 * scale:
        raise ValueError(
            f"{name} must be positive semi-definite, "
            f"smallest eigenvalue is {min_eig:.3e}"
        )
    return arr


def _check_rotation(R: np.ndarray, owner: str) -> None:
    if R.shape != (3, 3):
        raise ValueError(f"{owner}.R must have shape (3, 3), got {R.shape}")

    # Warn if R drifted away from SO(3) (tolerance 1e-6)
    orthogonality_error = np.max(np.abs(R.T @ R - np.eye(3)))
    if orthogonality_error > 1e-6 or np.linalg.det(R) < 0.0:
        warnings.warn(
            f"{owner} initialized with a matrix that is not a rotation "
            f"(max |R^T R - I| = {orthogonality_error:.3e}). "
            f"Consider re-orthonormalizing.",
            UserWarning,
        )


class CoriolisCompensation(Enum):
    """
    Earth-rotation compensation applied when predicting relative motion.

    Members:
        NONE: Navigation frame treated as inertial.
        FIRST_ORDER: Coriolis coupling of velocity with the frame rate,
                     plus the frame-rotation correction of attitude.
        SECOND_ORDER: FIRST_ORDER plus the centrifugal terms
                      W x (W x p) in position and velocity.
    """

    NONE = "none"
    FIRST_ORDER = "first_order"
    SECOND_ORDER = "second_order"


@dataclass(frozen=True)
class ImuBias:
    """
    Constant accelerometer and gyroscope bias.

    The bias is held fixed over a preintegration interval. The engine stores
    the value used during integration (bias_hat) together with Jacobians so
    that a later bias estimate can be applied as a first-order correction.

    Attributes:
        accelerometer: Accelerometer bias b_a in sensor frame, shape (3,).
                       Units: m/s².
        gyroscope: Gyroscope bias b_g in sensor frame, shape (3,).
                   Units: rad/s.

    Example:
        >>> bias = ImuBias(accelerometer=[0.01, 0.0, -0.02],
        ...                gyroscope=[0.001, 0.0, 0.0])
        >>> bias.vector().shape
        (6,)
    """

    accelerometer: np.ndarray = field(default_factory=lambda: np.zeros(3))
    gyroscope: np.ndarray = field(default_factory=lambda: np.zeros(3))

    def __post_init__(self) -> None:
        """Convert to float arrays and validate shapes."""
        object.__setattr__(
            self, "accelerometer",
            _read_only(_as_vector3(self.accelerometer, "ImuBias.accelerometer")),
        )
        object.__setattr__(
            self, "gyroscope",
            _read_only(_as_vector3(self.gyroscope, "ImuBias.gyroscope")),
        )

    @classmethod
    def from_vector(cls, b: np.ndarray) -> "ImuBias":
        """Create bias from the stacked vector [b_a, b_g]."""
        b = np.asarray(b, dtype=np.float64)
        if b.shape != (6,):
            raise ValueError(f"bias vector must have shape (6,), got {b.shape}")
        return cls(accelerometer=b[0:3], gyroscope=b[3:6])

    def vector(self) -> np.ndarray:
        """Stacked vector [b_a, b_g], shape (6,)."""
        return np.concatenate([self.accelerometer, self.gyroscope])

    def retract(self, delta: np.ndarray) -> "ImuBias":
        """Apply an additive tangent update [d b_a, d b_g]."""
        return ImuBias.from_vector(self.vector() + np.asarray(delta, dtype=np.float64))

    def local(self, other: "ImuBias") -> np.ndarray:
        """Tangent vector from self to other (other - self)."""
        return other.vector() - self.vector()


@dataclass(frozen=True)
class Pose:
    """
    Rigid-body pose (rotation and translation).

    Used both for the pose variables of the IMU factor and for the fixed
    sensor-to-body transform body_P_sensor.

    Attributes:
        R: Rotation matrix, shape (3, 3). Maps the local frame to the
           parent frame.
        t: Translation of the local origin in the parent frame, shape (3,).

    Notes:
        Tangent vector is [dt (3), dtheta (3)] with retraction
        R' = R @ Exp(dtheta), t' = t + dt.
    """

    R: np.ndarray = field(default_factory=lambda: np.eye(3))
    t: np.ndarray = field(default_factory=lambda: np.zeros(3))

    def __post_init__(self) -> None:
        """Convert to float arrays and validate."""
        R = np.array(self.R, dtype=np.float64)
        _check_rotation(R, "Pose")
        object.__setattr__(self, "R", _read_only(R))
        object.__setattr__(self, "t", _read_only(_as_vector3(self.t, "Pose.t")))

    @classmethod
    def from_rotvec(cls, theta: np.ndarray, t: np.ndarray) -> "Pose":
        """Create a pose from a rotation vector and a translation."""
        return cls(R=expmap(np.asarray(theta, dtype=np.float64)), t=t)

    def retract(self, delta: np.ndarray) -> "Pose":
        """Apply tangent update [dt, dtheta]."""
        delta = np.asarray(delta, dtype=np.float64)
        if delta.shape != (6,):
            raise ValueError(f"delta must have shape (6,), got {delta.shape}")
        return Pose(R=self.R @ expmap(delta[3:6]), t=self.t + delta[0:3])

    def transform_from(self, point: np.ndarray) -> np.ndarray:
        """Map a point from the local frame to the parent frame."""
        return self.R @ np.asarray(point, dtype=np.float64) + self.t


@dataclass
class NavState:
    """
    Navigation state: attitude, position and velocity.

    Attributes:
        R: Body-to-navigation rotation, shape (3, 3).
        p: Position in navigation frame, shape (3,). Units: m.
        v: Velocity in navigation frame, shape (3,). Units: m/s.

    Notes:
        - This is a MUTABLE dataclass; retract() returns a new instance.
        - Tangent vector is [dp, dv, dtheta] (same order as the
          preintegrated TangentState) with retraction
          R' = R @ Exp(dtheta), p' = p + dp, v' = v + dv.
        - Position and velocity perturbations are in the navigation frame.

    Example:
        >>> import numpy as np
        >>> state = NavState(R=np.eye(3), p=np.zeros(3), v=np.array([1.0, 0.0, 0.0]))
        >>> moved = state.retract(np.r_[1.0, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0, 0.1])
    """

    R: np.ndarray = field(default_factory=lambda: np.eye(3))
    p: np.ndarray = field(default_factory=lambda: np.zeros(3))
    v: np.ndarray = field(default_factory=lambda: np.zeros(3))

    dim = 9

    def __post_init__(self) -> None:
        """Convert to float arrays and validate shapes."""
        self.R = np.array(self.R, dtype=np.float64)
        _check_rotation(self.R, "NavState")
        self.p = _as_vector3(self.p, "NavState.p")
        self.v = _as_vector3(self.v, "NavState.v")

    @classmethod
    def from_pose_velocity(cls, pose: Pose, velocity: np.ndarray) -> "NavState":
        """Build a navigation state from a pose and a velocity."""
        return cls(R=pose.R, p=pose.t, v=velocity)

    def pose(self) -> Pose:
        """Attitude and position as a Pose."""
        return Pose(R=self.R, t=self.p)

    def attitude(self) -> np.ndarray:
        """Attitude as a rotation vector, shape (3,)."""
        return logmap(self.R)

    def retract(self, delta: np.ndarray) -> "NavState":
        """Apply tangent update [dp, dv, dtheta]."""
        delta = np.asarray(delta, dtype=np.float64)
        if delta.shape != (9,):
            raise ValueError(f"delta must have shape (9,), got {delta.shape}")
        return NavState(
            R=self.R @ expmap(delta[6:9]),
            p=self.p + delta[0:3],
            v=self.v + delta[3:6],
        )

    def local(self, other: "NavState") -> np.ndarray:
        """Tangent vector d such that self.retract(d) == other."""
        return np.concatenate([
            other.p - self.p,
            other.v - self.v,
            logmap(self.R.T @ other.R),
        ])


@dataclass(frozen=True)
class ImuSeries:
    """
    Time-series packet of raw IMU samples.

    Attributes:
        t: Timestamps in seconds, shape (N,). Strictly increasing.
        accel: Specific force measurements in the sensor frame, shape (N, 3).
               Units: m/s². Includes the gravity reaction and bias.
        gyro: Angular rate measurements in the sensor frame, shape (N, 3).
              Units: rad/s. Includes bias.
        meta: Optional metadata (e.g. 'sample_rate_hz', 'sensor_id').

    Notes:
        Sample k is held constant over [t[k], t[k+1]) when integrated, so the
        last sample only closes the final interval.
    """

    t: np.ndarray
    accel: np.ndarray
    gyro: np.ndarray
    meta: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        """Validate shape consistency and monotonic time."""
        if self.t.ndim != 1:
            raise ValueError(
                f"ImuSeries.t must be 1D array, got shape {self.t.shape}"
            )

        n_samples = self.t.shape[0]

        if self.accel.shape != (n_samples, 3):
            raise ValueError(
                f"ImuSeries.accel must have shape ({n_samples}, 3), "
                f"got {self.accel.shape}"
            )

        if self.gyro.shape != (n_samples, 3):
            raise ValueError(
                f"ImuSeries.gyro must have shape ({n_samples}, 3), "
                f"got {self.gyro.shape}"
            )

        if n_samples > 1 and np.any(np.diff(self.t) <= 0.0):
            raise ValueError("ImuSeries.t must be strictly increasing")

    def __len__(self) -> int:
        return self.t.shape[0]

    @property
    def dt(self) -> np.ndarray:
        """Sample intervals t[k+1] - t[k], shape (N-1,)."""
        return np.diff(self.t)


@dataclass(frozen=True)
class PreintegrationParams:
    """
    Configuration of the preintegration engine and the IMU factor.

    A single immutable struct covers every variant of the factor; there is
    no subclassing per sensor configuration.

    Attributes:
        gyroscope_covariance: Continuous-time gyro white-noise covariance,
                              shape (3, 3). Units: rad²/s.
        accelerometer_covariance: Continuous-time accel white-noise
                                  covariance, shape (3, 3). Units: m²/s³.
        integration_covariance: Covariance of the position integration
                                error, shape (3, 3).
        gravity: Gravity vector in the navigation frame, shape (3,).
        omega_coriolis: Angular rate of the navigation frame w.r.t. an
                        inertial frame, in navigation coordinates, shape (3,).
        coriolis: Which Earth-rotation terms to apply (see
                  CoriolisCompensation).
        use_2nd_order_integration: Include 0.5 * a * dt² in the position
                                   update.
        body_P_sensor: Pose of the IMU in the body frame, or None if the
                       IMU is the body frame.

    Example:
        >>> import numpy as np
        >>> params = PreintegrationParams.create_ned(
        ...     g=9.81,
        ...     gyroscope_covariance=(0.02 ** 2) * np.eye(3),
        ...     accelerometer_covariance=(0.1 ** 2) * np.eye(3),
        ... )
        >>> params.gravity
        array([0.  , 0.  , 9.81])
    """

    gyroscope_covariance: np.ndarray = field(default_factory=lambda: np.zeros((3, 3)))
    accelerometer_covariance: np.ndarray = field(default_factory=lambda: np.zeros((3, 3)))
    integration_covariance: np.ndarray = field(default_factory=lambda: np.zeros((3, 3)))
    gravity: np.ndarray = field(default_factory=lambda: np.array([0.0, 0.0, -9.81]))
    omega_coriolis: np.ndarray = field(default_factory=lambda: np.zeros(3))
    coriolis: CoriolisCompensation = CoriolisCompensation.NONE
    use_2nd_order_integration: bool = True
    body_P_sensor: Optional[Pose] = None

    def __post_init__(self) -> None:
        """Convert arrays and validate the noise model."""
        for name in (
            "gyroscope_covariance",
            "accelerometer_covariance",
            "integration_covariance",
        ):
            object.__setattr__(
                self, name,
                _read_only(
                    _as_covariance3(getattr(self, name), f"PreintegrationParams.{name}")
                ),
            )
        object.__setattr__(
            self, "gravity",
            _read_only(_as_vector3(self.gravity, "PreintegrationParams.gravity")),
        )
        object.__setattr__(
            self, "omega_coriolis",
            _read_only(
                _as_vector3(self.omega_coriolis, "PreintegrationParams.omega_coriolis")
            ),
        )
        if not isinstance(self.coriolis, CoriolisCompensation):
            raise ValueError(
                f"coriolis must be a CoriolisCompensation, got {self.coriolis!r}"
            )
        if self.body_P_sensor is not None and not isinstance(self.body_P_sensor, Pose):
            raise ValueError(
                f"body_P_sensor must be a Pose or None, got {type(self.body_P_sensor)}"
            )

    @classmethod
    def create_ned(cls, g: float = 9.81, **kwargs) -> "PreintegrationParams":
        """Z-down navigation frame: gravity = [0, 0, +g]."""
        return cls(gravity=np.array([0.0, 0.0, g]), **kwargs)

    @classmethod
    def create_enu(cls, g: float = 9.81, **kwargs) -> "PreintegrationParams":
        """Z-up navigation frame: gravity = [0, 0, -g]."""
        return cls(gravity=np.array([0.0, 0.0, -g]), **kwargs)

    @property
    def measurement_covariance(self) -> np.ndarray:
        """Block-diagonal continuous-time noise Q = diag(int, acc, gyro), 9x9."""
        Q = np.zeros((9, 9))
        Q[0:3, 0:3] = self.integration_covariance
        Q[3:6, 3:6] = self.accelerometer_covariance
        Q[6:9, 6:9] = self.gyroscope_covariance
        return Q

    @property
    def effective_omega_coriolis(self) -> np.ndarray:
        """Earth rate used by the factor (zero when compensation is off)."""
        if self.coriolis is CoriolisCompensation.NONE:
            return np.zeros(3)
        return self.omega_coriolis
