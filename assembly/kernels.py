"""
Cell kernels of the backward-Euler CDR discretization.

For one cell with shape functions phi_i:

    M_ij = (phi_j, phi_i)                     mass
    K_ij = (grad phi_j, grad phi_i)           stiffness
    C_ij = (b . grad phi_j, phi_i)            advection
    A    = M + dt * (eps*K + C + r*M)         time dependent
    A    = eps*K + C + r*M                    stationary

    rhs  = M u_old + dt * (f(t_new), phi_i)   time dependent
    rhs  = (f(t_new), phi_i)                  stationary

Both kernels are pure: inputs in, dense local arrays out.
"""

from __future__ import annotations

import numpy as np

from core.fe import FEValues
from core.types import FloatArray


def cell_matrix(
    fe_values: FEValues,
    convection: FloatArray,
    diffusion_coefficient: float,
    reaction_coefficient: float,
    time_step: float,
    time_dependent: bool = True,
) -> FloatArray:
    """Local system matrix; ``convection`` has shape (2, n_quadrature_points)."""
    phi = fe_values.shape_values
    grads = fe_values.shape_grads
    jxw = fe_values.JxW

    mass = np.einsum("iq,jq,q->ij", phi, phi, jxw)
    stiffness = np.einsum("iqa,jqa,q->ij", grads, grads, jxw)
    b_dot_grad = np.einsum("aq,jqa->jq", np.asarray(convection, dtype=np.float64), grads)
    advection = np.einsum("iq,jq,q->ij", phi, b_dot_grad, jxw)

    operator = diffusion_coefficient * stiffness + advection + reaction_coefficient * mass
    if time_dependent:
        return mass + time_step * operator
    return operator


def cell_rhs(
    fe_values: FEValues,
    u_old: FloatArray,
    forcing: FloatArray,
    time_step: float,
    time_dependent: bool = True,
) -> FloatArray:
    """Local right-hand side from the previous cell values and f at quadrature points."""
    phi = fe_values.shape_values
    jxw = fe_values.JxW
    load = phi @ (np.asarray(forcing, dtype=np.float64) * jxw)
    if not time_dependent:
        return load
    u_q = phi.T @ np.asarray(u_old, dtype=np.float64)
    return phi @ (u_q * jxw) + time_step * load
