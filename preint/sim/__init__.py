"""Synthetic IMU data for verification and examples.

Modules:
    imu_from_trajectory: Ideal IMU forward model, constant-rate ground-truth
                         trajectory, white-noise injection
"""

from preint.sim.imu_from_trajectory import (
    add_imu_noise,
    compute_specific_force_body,
    generate_constant_rate_trajectory,
)

__all__ = [
    "add_imu_noise",
    "compute_specific_force_body",
    "generate_constant_rate_trajectory",
]
