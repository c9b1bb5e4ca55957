"""IMU preintegration for factor-graph navigation.

This package contains the components needed to summarize a stream of
inertial measurements into a single relative-motion constraint:
- coords: SO(3) primitives (Exp/Log, skew, right Jacobians)
- sensors: configuration types, IMU corrections, the preintegration engine
- navigation: the relative-motion (IMU) factor consumed by an optimizer
- sim: ideal IMU forward model and ground-truth trajectories
"""

__version__ = "0.1.0"
