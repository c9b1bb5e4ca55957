"""
IMU measurement correction for preintegration.

This module corrects raw IMU samples before they are integrated:
    - Gyroscope bias removal (w = w_meas - b_g)
    - Accelerometer bias removal (f = f_meas - b_a)
    - Sensor-to-body compensation when the IMU is not at the body origin:
      rotate into the body frame and remove the centrifugal lever-arm term

The corrected quantities are returned together with their derivatives with
respect to the bias, which the preintegration engine chains into its
bias-sensitivity Jacobians.

Frame Conventions:
    - S: Sensor (IMU) frame, where raw samples and biases live
    - B: Body frame. body_P_sensor = (R_bs, t_bs) places S in B.

Lever-arm model (rigid body, constant angular rate over a sample):
    w_b = R_bs @ w_s
    f_b = R_bs @ f_s - [w_b]x [w_b]x t_bs
"""

from dataclasses import dataclass
from typing import Optional

import numpy as np

from preint.coords.so3 import skew
from preint.sensors.types import ImuBias, Pose


def correct_gyro(gyro_meas: np.ndarray, b_g: np.ndarray) -> np.ndarray:
    """
    Remove the gyroscope bias from an angular rate measurement.

    Args:
        gyro_meas: Raw gyroscope measurement, shape (3,) or (N, 3). Units: rad/s.
        b_g: Gyroscope bias, broadcastable to gyro_meas. Units: rad/s.

    Returns:
        Bias-corrected angular rate, same shape as gyro_meas.

    Example:
        >>> import numpy as np
        >>> correct_gyro(np.array([0.1, 0.05, -0.02]), np.array([0.001, 0.0, 0.0]))
        array([ 0.099,  0.05 , -0.02 ])
    """
    return np.asarray(gyro_meas, dtype=np.float64) - b_g


def correct_accel(accel_meas: np.ndarray, b_a: np.ndarray) -> np.ndarray:
    """
    Remove the accelerometer bias from a specific-force measurement.

    Args:
        accel_meas: Raw accelerometer measurement, shape (3,) or (N, 3).
                    Units: m/s².
        b_a: Accelerometer bias, broadcastable to accel_meas. Units: m/s².

    Returns:
        Bias-corrected specific force, same shape as accel_meas.
    """
    return np.asarray(accel_meas, dtype=np.float64) - b_a


@dataclass(frozen=True)
class CorrectedImuSample:
    """
    Bias- and lever-arm-corrected IMU sample in the body frame.

    Attributes:
        acc: Corrected specific force in body frame, shape (3,).
        omega: Corrected angular rate in body frame, shape (3,).
        acc_H_ba: d acc / d b_a, shape (3, 3).
        acc_H_bg: d acc / d b_g, shape (3, 3). Zero without a lever arm.
        omega_H_bg: d omega / d b_g, shape (3, 3).
    """

    acc: np.ndarray
    omega: np.ndarray
    acc_H_ba: np.ndarray
    acc_H_bg: np.ndarray
    omega_H_bg: np.ndarray


def correct_measurements(
    measured_acc: np.ndarray,
    measured_omega: np.ndarray,
    bias: ImuBias,
    body_P_sensor: Optional[Pose] = None,
) -> CorrectedImuSample:
    """
    Correct a raw IMU sample for bias and sensor placement.

    Without a sensor pose the sample is only bias-corrected. With one, the
    rate is rotated into the body frame and the specific force additionally
    loses the centrifugal acceleration of the lever arm t_bs:

        w_b = R_bs (w_s - b_g)
        f_b = R_bs (f_s - b_a) - [w_b]x [w_b]x t_bs

    Args:
        measured_acc: Raw accelerometer sample in sensor frame, shape (3,).
        measured_omega: Raw gyroscope sample in sensor frame, shape (3,).
        bias: Bias estimate used for integration.
        body_P_sensor: Pose of the sensor in the body frame, or None.

    Returns:
        CorrectedImuSample with body-frame quantities and bias derivatives.

    Notes:
        d([w]x [w]x t)/dw = (w.t) I + w t^T - 2 t w^T, since
        w x (w x t) = w (w.t) - t (w.w).
    """
    measured_acc = np.asarray(measured_acc, dtype=np.float64)
    measured_omega = np.asarray(measured_omega, dtype=np.float64)
    if measured_acc.shape != (3,):
        raise ValueError(f"measured_acc must have shape (3,), got {measured_acc.shape}")
    if measured_omega.shape != (3,):
        raise ValueError(
            f"measured_omega must have shape (3,), got {measured_omega.shape}"
        )

    acc = correct_accel(measured_acc, bias.accelerometer)
    omega = correct_gyro(measured_omega, bias.gyroscope)

    if body_P_sensor is None:
        return CorrectedImuSample(
            acc=acc,
            omega=omega,
            acc_H_ba=-np.eye(3),
            acc_H_bg=np.zeros((3, 3)),
            omega_H_bg=-np.eye(3),
        )

    R_bs = body_P_sensor.R
    lever = body_P_sensor.t

    omega_b = R_bs @ omega
    omega_cross = skew(omega_b)
    acc_b = R_bs @ acc - omega_cross @ omega_cross @ lever

    omega_H_bg = -R_bs
    centripetal_H_omega = (
        np.dot(omega_b, lever) * np.eye(3)
        + np.outer(omega_b, lever)
        - 2.0 * np.outer(lever, omega_b)
    )

    return CorrectedImuSample(
        acc=acc_b,
        omega=omega_b,
        acc_H_ba=-R_bs,
        acc_H_bg=-centripetal_H_omega @ omega_H_bg,
        omega_H_bg=omega_H_bg,
    )
