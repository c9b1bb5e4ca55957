"""
IMU sensor types, measurement correction and the preintegration engine.

Modules:
    types: Bias, pose, navigation state, IMU series and configuration
    imu_models: Bias and sensor-placement correction of raw samples
    preintegration: Tangent-state update, bias Jacobians, covariance

Primary data structures (from types module):
    ImuBias: Accelerometer + gyroscope bias, constant over an interval
    Pose: Rotation + translation (pose variables, body_P_sensor)
    NavState: Attitude, position, velocity
    ImuSeries: Time-series IMU data (accel, gyro)
    PreintegrationParams: Noise model, gravity and integration options
    CoriolisCompensation: Earth-rotation compensation options

Preintegration (from preintegration module):
    update_estimate: One-sample tangent-state update with Jacobians
    PreintegratedImuMeasurements: Immutable accumulated measurement
    integrate_imu_series: Integrate a whole ImuSeries

Example:
    >>> import numpy as np
    >>> from preint.sensors import PreintegrationParams, PreintegratedImuMeasurements
    >>> params = PreintegrationParams.create_ned(
    ...     gyroscope_covariance=0.02 ** 2 * np.eye(3),
    ...     accelerometer_covariance=0.1 ** 2 * np.eye(3),
    ...     integration_covariance=1e-7 * np.eye(3),
    ... )
    >>> pim = PreintegratedImuMeasurements(params)
    >>> pim = pim.integrate_measurement(np.array([0.0, 0.0, -9.81]), np.zeros(3), 0.01)
"""

from preint.sensors.types import (
    CoriolisCompensation,
    ImuBias,
    ImuSeries,
    NavState,
    Pose,
    PreintegrationParams,
)

from preint.sensors.imu_models import (
    CorrectedImuSample,
    correct_accel,
    correct_gyro,
    correct_measurements,
)

from preint.sensors.preintegration import (
    POS,
    ROT,
    VEL,
    EstimateUpdate,
    IntegrationStep,
    PreintegratedImuMeasurements,
    integrate_imu_series,
    update_estimate,
)

__all__ = [
    # Data types
    "CoriolisCompensation",
    "ImuBias",
    "ImuSeries",
    "NavState",
    "Pose",
    "PreintegrationParams",
    # IMU correction
    "CorrectedImuSample",
    "correct_accel",
    "correct_gyro",
    "correct_measurements",
    # Preintegration
    "POS",
    "VEL",
    "ROT",
    "EstimateUpdate",
    "IntegrationStep",
    "PreintegratedImuMeasurements",
    "integrate_imu_series",
    "update_estimate",
]
