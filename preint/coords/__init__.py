"""Rotation-group primitives used by the preintegration engine.

Exp/Log are delegated to scipy.spatial.transform.Rotation; the closed-form
right Jacobians of SO(3), which SciPy does not provide, live in so3.
"""

from preint.coords.so3 import (
    expmap,
    logmap,
    right_jacobian,
    right_jacobian_inverse,
    skew,
)

__all__ = [
    "skew",
    "expmap",
    "logmap",
    "right_jacobian",
    "right_jacobian_inverse",
]
