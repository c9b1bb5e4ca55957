"""SO(3) primitives for on-manifold preintegration.

This module provides the rotation-group operations needed by the
preintegration engine and the IMU factor:
- skew-symmetric (hat) operator
- exponential and logarithm maps, delegated to scipy.spatial.transform
- right Jacobian of the exponential map and its inverse

Conventions:
- Rotation matrices are 3x3 numpy arrays, R such that v_nav = R @ v_body
- Tangent vectors (rotation vectors) are (3,) arrays in radians
- Right perturbations: Exp(theta + d) ~= Exp(theta) @ Exp(Jr(theta) @ d)

Reference: C. Forster, L. Carlone, F. Dellaert, D. Scaramuzza,
"On-Manifold Preintegration for Real-Time Visual-Inertial Odometry",
IEEE Transactions on Robotics, 2017 (Section III).
"""

import numpy as np
from numpy.typing import NDArray
from scipy.spatial.transform import Rotation

# Below this angle the closed forms lose precision; Taylor series are used.
_SMALL_ANGLE = 1e-4


def skew(v: NDArray[np.float64]) -> NDArray[np.float64]:
    """Build the skew-symmetric matrix [v]x such that [v]x @ w = v x w.

    Args:
        v: 3-vector.

    Returns:
        3x3 skew-symmetric matrix.

    Example:
        >>> import numpy as np
        >>> S = skew(np.array([1.0, 2.0, 3.0]))
        >>> np.allclose(S @ np.array([0.0, 0.0, 1.0]), [2.0, -1.0, 0.0])
        True
    """
    v = np.asarray(v, dtype=np.float64)
    if v.shape != (3,):
        raise ValueError(f"v must have shape (3,), got {v.shape}")

    x, y, z = v
    return np.array(
        [
            [0.0, -z, y],
            [z, 0.0, -x],
            [-y, x, 0.0],
        ],
        dtype=np.float64,
    )


def expmap(theta: NDArray[np.float64]) -> NDArray[np.float64]:
    """Exponential map from so(3) coordinates to a rotation matrix.

    Args:
        theta: Rotation vector in radians, shape (3,).

    Returns:
        3x3 rotation matrix Exp(theta).
    """
    theta = np.array(theta, dtype=np.float64)
    if theta.shape != (3,):
        raise ValueError(f"theta must have shape (3,), got {theta.shape}")
    return Rotation.from_rotvec(theta).as_matrix()


def logmap(R: NDArray[np.float64]) -> NDArray[np.float64]:
    """Logarithm map from a rotation matrix to so(3) coordinates.

    Well defined at the identity (returns exactly zero); the returned
    rotation vector has norm in [0, pi].

    Args:
        R: 3x3 rotation matrix.

    Returns:
        Rotation vector theta such that Exp(theta) = R, shape (3,).
    """
    R = np.array(R, dtype=np.float64)
    if R.shape != (3, 3):
        raise ValueError(f"R must have shape (3, 3), got {R.shape}")
    return Rotation.from_matrix(R).as_rotvec()


def right_jacobian(theta: NDArray[np.float64]) -> NDArray[np.float64]:
    """Right Jacobian of the SO(3) exponential map.

    Jr(theta) = I - (1 - cos t)/t^2 [theta]x + (t - sin t)/t^3 [theta]x^2

    where t = ||theta||. Satisfies
    Exp(theta + d) ~= Exp(theta) @ Exp(Jr(theta) @ d) for small d.

    Args:
        theta: Rotation vector, shape (3,).

    Returns:
        3x3 right Jacobian.
    """
    K = skew(theta)
    t2 = float(np.dot(theta, theta))
    t = np.sqrt(t2)

    if t < _SMALL_ANGLE:
        a = 0.5 - t2 / 24.0
        b = 1.0 / 6.0 - t2 / 120.0
    else:
        a = (1.0 - np.cos(t)) / t2
        b = (t - np.sin(t)) / (t2 * t)

    return np.eye(3) - a * K + b * (K @ K)


def right_jacobian_inverse(theta: NDArray[np.float64]) -> NDArray[np.float64]:
    """Inverse of the right Jacobian of the SO(3) exponential map.

    Jr^-1(theta) = I + 0.5 [theta]x + (1/t^2 - cot(t/2)/(2t)) [theta]x^2

    Satisfies Log(Exp(theta) @ Exp(d)) ~= theta + Jr^-1(theta) @ d.
    Singular at t = 2*pi; finite on the range returned by logmap.

    Args:
        theta: Rotation vector, shape (3,).

    Returns:
        3x3 inverse right Jacobian.
    """
    K = skew(theta)
    t2 = float(np.dot(theta, theta))
    t = np.sqrt(t2)

    if t < _SMALL_ANGLE:
        c = 1.0 / 12.0 + t2 / 720.0
    else:
        half = 0.5 * t
        c = 1.0 / t2 - np.cos(half) / (2.0 * t * np.sin(half))

    return np.eye(3) + 0.5 * K + c * (K @ K)
