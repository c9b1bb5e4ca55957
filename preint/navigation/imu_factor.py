"""
IMU factor: residual and Jacobians between two navigation states.

The factor relates the navigation states at keyframes i and j through a
finished PreintegratedImuMeasurements. At evaluation time it
    1. predicts the relative motion implied by the two states, removing
       gravity and (optionally) Earth-rotation effects,
    2. corrects the preintegrated measurement to the current bias estimate
       with the stored bias Jacobians (no re-integration),
    3. returns the manifold difference between the two.

Residual r = [r_p, r_v, r_theta] (9,), with dt = delta_t_ij, g the gravity,
W the navigation-frame rate and c2 = 1 for second-order Coriolis:

    u_p = p_j - p_i - v_i dt + (W x v_i) dt² - g dt²/2 + c2 W x (W x p_i) dt²/2
    u_v = v_j - v_i + 2 (W x v_i) dt - g dt + c2 W x (W x p_i) dt
    r_p = R_i^T u_p - dp_c
    r_v = R_i^T u_v - dv_c
    r_theta = Log( Exp(theta_c - R_i^T W dt)^T R_i^T R_j )

Jacobians are taken with respect to the tangent spaces of NavState
([dp, dv, dtheta], navigation-frame p and v, right-perturbed R) and ImuBias
([db_a, db_g]).

The ImuFactor class exposes this as a five-variable factor
(pose_i, vel_i, pose_j, vel_j, bias) with the same interface as the other
factors of the estimation stack: variable_ids, information,
compute_error(), linearize().

References:
    C. Forster et al., "On-Manifold Preintegration for Real-Time
    Visual-Inertial Odometry", IEEE Transactions on Robotics, 2017.
    T. Lupton, S. Sukkarieh, IEEE Transactions on Robotics, 2012.
"""

from dataclasses import dataclass
from typing import Dict, Hashable, List, Optional, Tuple

import numpy as np

from preint.coords.so3 import (
    expmap,
    logmap,
    right_jacobian,
    right_jacobian_inverse,
    skew,
)
from preint.sensors.preintegration import (
    POS,
    ROT,
    VEL,
    PreintegratedImuMeasurements,
)
from preint.sensors.types import CoriolisCompensation, ImuBias, NavState, Pose


@dataclass(frozen=True)
class ErrorEvaluation:
    """
    IMU factor residual and, optionally, its Jacobians.

    Attributes:
        residual: [r_p, r_v, r_theta], shape (9,).
        H_state_i: d r / d state_i tangent, shape (9, 9).
        H_state_j: d r / d state_j tangent, shape (9, 9).
        H_bias: d r / d bias tangent, shape (9, 6).
    """

    residual: np.ndarray
    H_state_i: Optional[np.ndarray] = None
    H_state_j: Optional[np.ndarray] = None
    H_bias: Optional[np.ndarray] = None


def _motion_terms(pim: PreintegratedImuMeasurements, state_i: NavState):
    """Gravity and Earth-rotation terms that do not depend on state_j."""
    params = pim.params
    dt = pim.delta_t_ij
    W = params.effective_omega_coriolis
    W_x = skew(W)

    shift_p = state_i.v * dt - W_x @ state_i.v * dt * dt + 0.5 * params.gravity * dt * dt
    shift_v = -2.0 * W_x @ state_i.v * dt + params.gravity * dt
    if params.coriolis is CoriolisCompensation.SECOND_ORDER:
        centrifugal = W_x @ W_x @ state_i.p
        shift_p = shift_p - 0.5 * centrifugal * dt * dt
        shift_v = shift_v - centrifugal * dt

    # Rotation of the navigation frame over the interval, seen from B_i.
    w_i = state_i.R.T @ W * dt
    return shift_p, shift_v, w_i


def predict(
    pim: PreintegratedImuMeasurements,
    state_i: NavState,
    bias: ImuBias,
) -> NavState:
    """
    Predict the navigation state at j from the state at i.

    Args:
        pim: Preintegrated measurement for the interval [i, j].
        state_i: Navigation state at i.
        bias: Bias estimate (constant over the interval).

    Returns:
        Predicted NavState at j. compute_error(pim, state_i, prediction, bias)
        is zero.
    """
    corrected = pim.bias_corrected_delta(bias)
    shift_p, shift_v, w_i = _motion_terms(pim, state_i)

    R_i = state_i.R
    return NavState(
        R=R_i @ expmap(corrected[ROT] - w_i),
        p=state_i.p + shift_p + R_i @ corrected[POS],
        v=state_i.v + shift_v + R_i @ corrected[VEL],
    )


def compute_error(
    pim: PreintegratedImuMeasurements,
    state_i: NavState,
    state_j: NavState,
    bias: ImuBias,
    jacobians: bool = False,
) -> ErrorEvaluation:
    """
    Residual between predicted and preintegrated relative motion.

    Args:
        pim: Preintegrated measurement for the interval [i, j].
        state_i: Navigation state at i.
        state_j: Navigation state at j.
        bias: Bias estimate.
        jacobians: If True, also compute analytic Jacobians.

    Returns:
        ErrorEvaluation with the 9-dim residual (and Jacobians).

    Example:
        >>> import numpy as np
        >>> from preint.sensors import PreintegrationParams
        >>> pim = PreintegratedImuMeasurements(PreintegrationParams.create_ned())
        >>> out = compute_error(pim, NavState(), NavState(), ImuBias())
        >>> np.allclose(out.residual, 0.0)
        True
    """
    R_i, R_j = state_i.R, state_j.R
    Rt_i = R_i.T

    corrected = pim.bias_corrected_delta(bias)
    shift_p, shift_v, w_i = _motion_terms(pim, state_i)

    u_p = state_j.p - state_i.p - shift_p
    u_v = state_j.v - state_i.v - shift_v
    Rt_u_p = Rt_i @ u_p
    Rt_u_v = Rt_i @ u_v

    phi = corrected[ROT] - w_i
    M = expmap(phi)
    N = Rt_i @ R_j
    E = M.T @ N
    r_theta = logmap(E)

    residual = np.concatenate([
        Rt_u_p - corrected[POS],
        Rt_u_v - corrected[VEL],
        r_theta,
    ])
    if not jacobians:
        return ErrorEvaluation(residual=residual)

    params = pim.params
    dt = pim.delta_t_ij
    W_x = skew(params.effective_omega_coriolis)
    I3 = np.eye(3)
    Jrinv_r = right_jacobian_inverse(r_theta)
    Et_Jr_phi = E.T @ right_jacobian(phi)

    p_H_p_i = -I3
    v_H_p_i = np.zeros((3, 3))
    if params.coriolis is CoriolisCompensation.SECOND_ORDER:
        centrifugal = W_x @ W_x
        p_H_p_i = p_H_p_i + 0.5 * centrifugal * dt * dt
        v_H_p_i = centrifugal * dt

    H_i = np.zeros((9, 9))
    H_i[POS, POS] = Rt_i @ p_H_p_i
    H_i[POS, VEL] = Rt_i @ (-I3 * dt + W_x * dt * dt)
    H_i[POS, ROT] = skew(Rt_u_p)
    H_i[VEL, POS] = Rt_i @ v_H_p_i
    H_i[VEL, VEL] = Rt_i @ (-I3 + 2.0 * W_x * dt)
    H_i[VEL, ROT] = skew(Rt_u_v)
    H_i[ROT, ROT] = Jrinv_r @ (Et_Jr_phi @ skew(w_i) - N.T)

    H_j = np.zeros((9, 9))
    H_j[POS, POS] = Rt_i
    H_j[VEL, VEL] = Rt_i
    H_j[ROT, ROT] = Jrinv_r

    correction_H_bias = pim.bias_correction_jacobian(bias)
    H_bias = np.zeros((9, 6))
    H_bias[POS] = -correction_H_bias[POS]
    H_bias[VEL] = -correction_H_bias[VEL]
    H_bias[ROT] = -Jrinv_r @ Et_Jr_phi @ correction_H_bias[ROT]

    return ErrorEvaluation(
        residual=residual, H_state_i=H_i, H_state_j=H_j, H_bias=H_bias
    )


class ImuFactor:
    """
    Five-variable IMU factor for nonlinear least squares.

    Connects pose_i, vel_i, pose_j, vel_j and bias through a finished
    preintegrated measurement. The noise model is the accumulated
    covariance of the measurement, which must be positive definite.

    Attributes:
        variable_ids: [pose_i, vel_i, pose_j, vel_j, bias] keys.
        preintegrated: The (read-only) preintegrated measurement.
        noise_covariance: 9x9 measurement covariance.
        information: 9x9 information matrix (inverse covariance).

    Variable tangent spaces (for Jacobians):
        Pose: [dt (3), dtheta (3)];  velocity: dv (3);  bias: [db_a, db_g].

    Example:
        >>> factor = ImuFactor(0, 1, 2, 3, 4, pim)           # doctest: +SKIP
        >>> r, H = factor.evaluate_error(pose_i, v_i, pose_j, v_j, bias,
        ...                              jacobians=True)      # doctest: +SKIP
    """

    def __init__(
        self,
        pose_i: Hashable,
        vel_i: Hashable,
        pose_j: Hashable,
        vel_j: Hashable,
        bias: Hashable,
        preintegrated: PreintegratedImuMeasurements,
    ):
        """
        Initialize ImuFactor.

        Args:
            pose_i, vel_i, pose_j, vel_j, bias: Variable keys.
            preintegrated: Measurement for the interval [i, j].

        Raises:
            ValueError: If the measurement covariance is not positive definite.
        """
        cov = np.asarray(preintegrated.preint_meas_cov, dtype=np.float64)
        try:
            L = np.linalg.cholesky(cov)
        except np.linalg.LinAlgError as exc:
            raise ValueError(
                "Preintegrated covariance is not positive definite "
                f"(delta_t_ij = {preintegrated.delta_t_ij}); cannot build the "
                "IMU factor noise model"
            ) from exc

        self.variable_ids = [pose_i, vel_i, pose_j, vel_j, bias]
        self.preintegrated = preintegrated
        self.noise_covariance = cov
        L_inv = np.linalg.inv(L)
        self.information = L_inv.T @ L_inv

    def evaluate_error(
        self,
        pose_i: Pose,
        vel_i: np.ndarray,
        pose_j: Pose,
        vel_j: np.ndarray,
        bias: ImuBias,
        jacobians: bool = False,
    ) -> Tuple[np.ndarray, Optional[List[np.ndarray]]]:
        """
        Residual and Jacobians with respect to the five variables.

        Returns:
            (residual (9,), [H_pose_i (9x6), H_vel_i (9x3), H_pose_j (9x6),
            H_vel_j (9x3), H_bias (9x6)]) or (residual, None).
        """
        state_i = NavState.from_pose_velocity(pose_i, vel_i)
        state_j = NavState.from_pose_velocity(pose_j, vel_j)
        out = compute_error(
            self.preintegrated, state_i, state_j, bias, jacobians=jacobians
        )
        if not jacobians:
            return out.residual, None

        def split(H_state):
            return np.hstack([H_state[:, POS], H_state[:, ROT]]), H_state[:, VEL]

        H_pose_i, H_vel_i = split(out.H_state_i)
        H_pose_j, H_vel_j = split(out.H_state_j)
        return out.residual, [H_pose_i, H_vel_i, H_pose_j, H_vel_j, out.H_bias]

    def compute_error(self, variables: Dict[Hashable, object]) -> float:
        """
        Weighted squared error r^T Lambda r.

        Args:
            variables: Mapping from variable key to value.
        """
        r, _ = self.evaluate_error(*[variables[vid] for vid in self.variable_ids])
        return float(r @ self.information @ r)

    def linearize(
        self, variables: Dict[Hashable, object]
    ) -> Tuple[np.ndarray, List[np.ndarray]]:
        """
        Linearize the factor around the current variable values.

        Returns:
            (residual, jacobians) with one Jacobian per connected variable.
        """
        x_vars = [variables[vid] for vid in self.variable_ids]
        return self.evaluate_error(*x_vars, jacobians=True)
