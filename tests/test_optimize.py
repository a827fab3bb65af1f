"""Tests for PEPS optimization of the Rayleigh quotient."""

import numpy as np
import pytest

from pepsad.algorithms.models import site_indices, tfim_terms
from pepsad.algorithms.optimize import (
    OptimizeConfig,
    OptimizerMethod,
    gd_error_tracker,
    gradient_descent,
    loss_grad_wrap,
    optimize,
    polak_ribiere,
)
from pepsad.autodiff.cache import NetworkCache
from pepsad.contraction.strategies import ContractionContext, ContractionStrategy
from pepsad.network.peps import PEPS


@pytest.fixture
def problem(rng):
    sites = site_indices(2, 2)
    peps = PEPS.build(sites, linkdims=2, key=rng)
    terms = tfim_terms(2, 2, h=1.0)
    return peps, terms


@pytest.fixture
def problem23(rng):
    sites = site_indices(2, 3)
    peps = PEPS.build(sites, linkdims=2, key=rng)
    terms = tfim_terms(2, 3, h=1.0)
    return peps, terms


class TestGradientDescent:
    def test_small_step_decreases_loss(self, problem):
        peps, terms = problem
        losses = gradient_descent(peps, loss_grad_wrap(peps, terms), stepsize=1e-3, num_sweeps=3)
        assert len(losses) == 3
        assert losses[-1] < losses[0]

    def test_cache_reused_between_steps(self, problem):
        peps, terms = problem
        cache = NetworkCache()
        loss_w_grad = loss_grad_wrap(peps, terms, ContractionContext(cache=cache))
        gradient_descent(peps, loss_w_grad, stepsize=1e-3, num_sweeps=3)
        assert cache.misses == 1
        assert cache.hits == 2


class TestOptimize:
    @pytest.mark.slow
    @pytest.mark.parametrize("method", list(OptimizerMethod))
    def test_losses_non_increasing(self, problem23, method):
        peps, terms = problem23
        config = OptimizeConfig(method=method, num_sweeps=4, stepsize=0.1)
        final, losses = optimize(peps, loss_grad_wrap(peps, terms), config)
        assert len(losses) >= 2
        assert all(b <= a for a, b in zip(losses, losses[1:]))
        assert losses[-1] < losses[0]
        assert isinstance(final, PEPS)

    def test_gradtol_stops_immediately(self, problem):
        peps, terms = problem
        config = OptimizeConfig(num_sweeps=5, gradtol=1e6)
        final, losses = optimize(peps, loss_grad_wrap(peps, terms), config)
        assert len(losses) == 1
        assert final is peps

    def test_variational_bound(self, problem):
        peps, terms = problem
        config = OptimizeConfig(method=OptimizerMethod.LBFGS, num_sweeps=10)
        _, losses = optimize(peps, loss_grad_wrap(peps, terms), config)
        # Exact ground-state energy of the 2x2 open TFIM at h=1 is about -5.226.
        assert losses[-1] >= -6.0
        assert losses[-1] < losses[0]


class TestPolakRibiere:
    def test_first_direction_is_steepest_descent(self, problem):
        peps, terms = problem
        _, grad = loss_grad_wrap(peps, terms)(peps)
        transform = polak_ribiere()
        state = transform.init(peps)
        direction, state = transform.update(grad, state, peps)
        np.testing.assert_allclose(float(direction.inner(grad)), -float(grad.inner(grad)))
        assert state.count == 1


class TestErrorTracker:
    def test_unbounded_tree_matches_exact(self, problem):
        peps, terms = problem
        ctx = ContractionContext(ContractionStrategy.TREE, cutoff=0.0, cache=NetworkCache())
        records = gd_error_tracker(peps, terms, ctx, stepsize=1e-3, num_sweeps=2)
        assert len(records) == 2
        for r in records:
            np.testing.assert_allclose(r.approx_loss, r.loss, rtol=1e-10)
            assert r.grad_diff_norm < 1e-8

    def test_bounded_tree_reports_error(self, rng):
        peps = PEPS.build(site_indices(3, 3), linkdims=2, key=rng)
        terms = tfim_terms(3, 3, h=1.0)[:3]
        ctx = ContractionContext(ContractionStrategy.TREE, cutoff=0.0, max_dim=1)
        records = gd_error_tracker(peps, terms, ctx, stepsize=1e-3, num_sweeps=1)
        assert records[0].grad_diff_norm > 0.0
