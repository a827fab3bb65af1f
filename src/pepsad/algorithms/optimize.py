"""Variational PEPS optimization of the Rayleigh quotient.

The loss is the Rayleigh quotient

    E(psi) = sum_k <psi|H_k|psi> / <psi|psi>

evaluated as one batch of networks through the differentiable contraction
graph. The bra, the link-primed ket and the fully primed ket are separate
leaves of the batch; their gradients are summed back onto the site tensors.

Optimizers:
    gradient_descent: fixed step, applied through ``optax.sgd``.
    optimize:         GD, L-BFGS (``optax.scale_by_lbfgs``) or nonlinear
                      conjugate gradient (Polak-Ribiere+), each followed by
                      Armijo backtracking, so the loss never increases.
"""

from __future__ import annotations

import math
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any, NamedTuple

import jax
import jax.numpy as jnp
import optax

from pepsad.algorithms.models import LocalTerm
from pepsad.autodiff.cache import NetworkCache
from pepsad.autodiff.expression import value_and_grad
from pepsad.contraction.strategies import ContractionContext, ContractionStrategy
from pepsad.core.tensor import DenseTensor
from pepsad.network.network import LeafTensor, TensorArena
from pepsad.network.peps import (
    PEPS,
    inner_networks,
    line_axis,
    line_network,
    rayleigh_quotient,
    register,
)

LossAndGrad = Callable[[PEPS], tuple[float, PEPS]]


class OptimizerMethod(Enum):
    GD = "GD"
    LBFGS = "LBFGS"
    CG = "CG"


@dataclass
class OptimizeConfig:
    """Configuration for line-search optimization of a PEPS.

    Attributes:
        method:                 Search direction: GD, LBFGS or CG.
        num_sweeps:             Maximum number of iterations.
        stepsize:               Initial trial step of each line search.
        gradtol:                Stop when the gradient norm drops below this.
        memory_size:            Number of L-BFGS correction pairs.
        armijo:                 Sufficient-decrease constant.
        shrink:                 Backtracking step reduction factor.
        max_backtracking_steps: Line-search attempts before giving up.
        verbose:                Print the loss after every iteration.
    """

    method: OptimizerMethod = OptimizerMethod.GD
    num_sweeps: int = 20
    stepsize: float = 0.1
    gradtol: float = 1e-8
    memory_size: int = 16
    armijo: float = 1e-4
    shrink: float = 0.5
    max_backtracking_steps: int = 30
    verbose: bool = False


# ------------------------------------------------------------------ #
# Loss and gradient                                                  #
# ------------------------------------------------------------------ #

def _site_gradient(site: DenseTensor, grads: Sequence[DenseTensor]) -> DenseTensor:
    total = DenseTensor.zeros(site.indices, site.dtype)
    for g in grads:
        total = total + g.noprime().permute(site.indices)
    return total


def loss_grad_wrap(
    peps: PEPS,
    terms: Sequence[LocalTerm],
    context: ContractionContext | None = None,
    line: bool = False,
) -> LossAndGrad:
    """Build ``loss_w_grad(peps) -> (rayleigh_quotient, gradient PEPS)``.

    Args:
        peps:    Template PEPS fixing the lattice and the site indices.
        terms:   Local Hamiltonian terms.
        context: Contraction context. Defaults to exact contraction with a
                 fresh NetworkCache, which is reused by every call since the
                 network topology does not change between steps.
        line:    Build line-tree networks instead of flat ones (useful with
                 the TREE and MPS strategies). Each term uses the row or
                 column line its sites lie on.
    """
    context = context or ContractionContext(cache=NetworkCache())
    sites = peps.site_indices()

    def loss_w_grad(peps: PEPS) -> tuple[float, PEPS]:
        arena = TensorArena()
        bra = register(arena, peps)
        ket = register(arena, peps.prime_links())
        ket_ham = register(arena, peps.prime())
        term_ops = [
            [(coord, arena.register(op)) for coord, op in term.operator_tensors(sites)]
            for term in terms
        ]
        if line:
            networks = [
                line_network(bra, ket, ket_ham, ops, axis=line_axis(term.coords))
                for term, ops in zip(terms, term_ops)
            ]
            networks.append(line_network(bra, ket))
        else:
            networks = inner_networks(bra, ket, ket_ham, term_ops)

        value, grads = value_and_grad(rayleigh_quotient, networks, context)

        def site_grad(r: int, c: int) -> DenseTensor:
            copies: list[LeafTensor] = [bra[r][c], ket[r][c], ket_ham[r][c]]
            return _site_gradient(
                peps.data[r][c], [grads[leaf.handle] for leaf in copies if leaf.handle in grads]
            )

        rows, cols = peps.shape
        grad = PEPS([[site_grad(r, c) for c in range(cols)] for r in range(rows)])
        return float(value), grad

    return loss_w_grad


# ------------------------------------------------------------------ #
# Fixed-step gradient descent                                        #
# ------------------------------------------------------------------ #

def gradient_descent(
    peps: PEPS,
    loss_w_grad: LossAndGrad,
    stepsize: float,
    num_sweeps: int,
    verbose: bool = False,
) -> list[float]:
    """Plain gradient descent with a fixed step.

    Returns:
        The loss at every iteration, before the step is taken.
    """
    optimizer = optax.sgd(stepsize)
    opt_state = optimizer.init(peps)
    losses = []
    for it in range(num_sweeps):
        loss, grad = loss_w_grad(peps)
        if verbose:
            print(f"Iteration {it + 1}: rayleigh quotient = {loss:.12f}")
        updates, opt_state = optimizer.update(grad, opt_state, peps)
        peps = optax.apply_updates(peps, updates)
        losses.append(loss)
    return losses


# ------------------------------------------------------------------ #
# Conjugate gradient as an optax transformation                      #
# ------------------------------------------------------------------ #

def _tree_vdot(a: Any, b: Any) -> jax.Array:
    leaves = zip(jax.tree_util.tree_leaves(a), jax.tree_util.tree_leaves(b))
    return sum((jnp.vdot(x, y) for x, y in leaves), jnp.zeros(()))


class PolakRibiereState(NamedTuple):
    prev_grad: Any
    prev_direction: Any
    count: int


def polak_ribiere(restart_every: int | None = None) -> optax.GradientTransformation:
    """Nonlinear conjugate-gradient search directions (Polak-Ribiere+).

    ``d_k = -g_k + beta_k d_{k-1}`` with
    ``beta_k = max(0, <g_k, g_k - g_{k-1}> / <g_{k-1}, g_{k-1}>)``.
    Evaluated eagerly: not meant to be jitted.

    Args:
        restart_every: Reset to steepest descent every this many updates.
    """

    def init_fn(params: Any) -> PolakRibiereState:
        zeros = jax.tree_util.tree_map(jnp.zeros_like, params)
        return PolakRibiereState(zeros, zeros, 0)

    def update_fn(updates: Any, state: PolakRibiereState, params: Any = None):
        del params
        restart = state.count == 0 or (
            restart_every is not None and state.count % restart_every == 0
        )
        beta = 0.0
        if not restart:
            denom = float(_tree_vdot(state.prev_grad, state.prev_grad))
            if denom > 0:
                diff = jax.tree_util.tree_map(lambda g, p: g - p, updates, state.prev_grad)
                beta = max(0.0, float(_tree_vdot(updates, diff)) / denom)
        direction = jax.tree_util.tree_map(
            lambda g, d: -g + beta * d, updates, state.prev_direction
        )
        return direction, PolakRibiereState(updates, direction, state.count + 1)

    return optax.GradientTransformation(init_fn, update_fn)


def _direction_transform(config: OptimizeConfig) -> optax.GradientTransformation:
    if config.method is OptimizerMethod.GD:
        return optax.sgd(1.0)
    if config.method is OptimizerMethod.LBFGS:
        return optax.chain(
            optax.scale_by_lbfgs(memory_size=config.memory_size),
            optax.scale(-1.0),
        )
    if config.method is OptimizerMethod.CG:
        return polak_ribiere()
    raise ValueError(f"Unknown optimizer method {config.method!r}")


# ------------------------------------------------------------------ #
# Line-search optimization                                           #
# ------------------------------------------------------------------ #

def optimize(
    peps: PEPS,
    loss_w_grad: LossAndGrad,
    config: OptimizeConfig | None = None,
) -> tuple[PEPS, list[float]]:
    """Minimize the loss with a line-searched GD, L-BFGS or CG direction.

    Each iteration asks the optax transformation for a search direction,
    falls back to steepest descent if it is not a descent direction, and
    backtracks until the Armijo condition holds. If no step is accepted,
    the optimization stops.

    Args:
        peps:        Initial PEPS.
        loss_w_grad: Function returning ``(loss, gradient PEPS)``.
        config:      Optimizer settings.

    Returns:
        ``(final_peps, losses)`` where ``losses[0]`` is the initial loss and
        the sequence is non-increasing.
    """
    config = config or OptimizeConfig()
    transform = _direction_transform(config)
    state = transform.init(peps)

    loss, grad = loss_w_grad(peps)
    losses = [loss]
    if config.verbose:
        print(f"Iteration 0: rayleigh quotient = {loss:.12f}")

    for it in range(config.num_sweeps):
        gnorm2 = float(grad.inner(grad))
        if math.sqrt(gnorm2) < config.gradtol:
            break

        direction, state = transform.update(grad, state, peps)
        slope = float(grad.inner(direction))
        if not slope < 0.0:
            direction, slope = -grad, -gnorm2

        alpha = config.stepsize
        accepted = None
        for _ in range(config.max_backtracking_steps):
            candidate = peps + alpha * direction
            new_loss, new_grad = loss_w_grad(candidate)
            if math.isfinite(new_loss) and new_loss <= loss + config.armijo * alpha * slope:
                accepted = (candidate, new_loss, new_grad)
                break
            alpha *= config.shrink

        if accepted is None:
            if config.verbose:
                print(f"Iteration {it + 1}: line search failed, stopping")
            break
        peps, loss, grad = accepted
        losses.append(loss)
        if config.verbose:
            print(f"Iteration {it + 1}: rayleigh quotient = {loss:.12f}, step = {alpha:.3e}")

    return peps, losses


# ------------------------------------------------------------------ #
# Approximation diagnostics                                          #
# ------------------------------------------------------------------ #

class ErrorRecord(NamedTuple):
    loss: float
    approx_loss: float
    grad_diff_norm: float


def gd_error_tracker(
    peps: PEPS,
    terms: Sequence[LocalTerm],
    approx_context: ContractionContext,
    stepsize: float,
    num_sweeps: int,
    line: bool = True,
    verbose: bool = False,
) -> list[ErrorRecord]:
    """Compare exact and approximate losses/gradients along a GD run.

    The PEPS follows the exact gradient; at each iteration the approximate
    loss and gradient (from ``approx_context``) are recorded alongside.

    Returns:
        One ErrorRecord per iteration.
    """
    exact = loss_grad_wrap(
        peps, terms, ContractionContext(ContractionStrategy.EXACT, cache=NetworkCache())
    )
    approx = loss_grad_wrap(peps, terms, approx_context, line=line)
    records = []
    for it in range(num_sweeps):
        loss, grad = exact(peps)
        approx_loss, approx_grad = approx(peps)
        diff = grad - approx_grad
        record = ErrorRecord(loss, approx_loss, float(jnp.sqrt(diff.inner(diff))))
        if verbose:
            print(
                f"Iteration {it + 1}: loss = {loss:.12f}, approx = {approx_loss:.12f}, "
                f"|grad diff| = {record.grad_diff_norm:.3e}"
            )
        records.append(record)
        peps = peps - stepsize * grad
    return records
