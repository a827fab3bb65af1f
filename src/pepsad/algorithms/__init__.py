"""Hamiltonian models and variational PEPS optimization."""

from pepsad.algorithms.models import (
    LocalTerm,
    heisenberg_terms,
    site_indices,
    spin_half_ops,
    tfim_terms,
)
from pepsad.algorithms.optimize import (
    ErrorRecord,
    OptimizeConfig,
    OptimizerMethod,
    gd_error_tracker,
    gradient_descent,
    loss_grad_wrap,
    optimize,
    polak_ribiere,
)

__all__ = [
    "spin_half_ops",
    "site_indices",
    "LocalTerm",
    "tfim_terms",
    "heisenberg_terms",
    "OptimizerMethod",
    "OptimizeConfig",
    "ErrorRecord",
    "loss_grad_wrap",
    "gradient_descent",
    "optimize",
    "polak_ribiere",
    "gd_error_tracker",
]
