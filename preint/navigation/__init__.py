"""Relative-motion (IMU) factor built on a preintegrated measurement."""

from preint.navigation.imu_factor import (
    ErrorEvaluation,
    ImuFactor,
    compute_error,
    predict,
)

__all__ = [
    "ErrorEvaluation",
    "ImuFactor",
    "compute_error",
    "predict",
]
