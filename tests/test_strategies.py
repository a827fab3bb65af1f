"""Tests for contraction strategies and the contraction context."""

import numpy as np
import pytest

from pepsad.autodiff.tape import Tape
from pepsad.contraction.contractor import contract
from pepsad.contraction.strategies import (
    ContractionContext,
    ContractionStrategy,
    ExactContractor,
    MPSContractor,
    TreeContractor,
    make_contractor,
)
from pepsad.core.exceptions import TruncationInfeasible
from pepsad.core.index import Index


class TestMakeContractor:
    @pytest.mark.parametrize(
        "strategy, cls",
        [
            (ContractionStrategy.EXACT, ExactContractor),
            (ContractionStrategy.TREE, TreeContractor),
            (ContractionStrategy.MPS, MPSContractor),
        ],
    )
    def test_dispatch(self, strategy, cls):
        assert isinstance(make_contractor(strategy), cls)

    def test_string_strategy_raises(self):
        with pytest.raises(TypeError, match="ContractionStrategy"):
            make_contractor("tree")


class TestContractionContext:
    def test_defaults(self):
        ctx = ContractionContext()
        assert ctx.strategy is ContractionStrategy.EXACT
        assert ctx.cache is None
        assert isinstance(ctx.contractor, ExactContractor)

    def test_contractor_is_cached(self):
        ctx = ContractionContext(ContractionStrategy.TREE, max_dim=4)
        assert ctx.contractor is ctx.contractor
        assert ctx.contractor.max_dim == 4

    def test_tree_keeps_nodes_whole(self):
        assert ContractionContext(ContractionStrategy.TREE).graph_optimize is False
        assert ContractionContext(optimize="greedy").graph_optimize == "greedy"

    def test_invalid_truncation_raises(self):
        with pytest.raises(TruncationInfeasible):
            ContractionContext(max_dim=0)
        with pytest.raises(TruncationInfeasible):
            ContractionContext(cutoff=float("nan"))

    def test_invalid_strategy_raises(self):
        with pytest.raises(TypeError):
            ContractionContext(strategy="exact")


class TestContractors:
    def test_tree_contractor_memoizes_tree(self, make_tensor):
        i, j, k, l = (Index(2) for _ in range(4))
        tensors = [make_tensor(i, j), make_tensor(j, k), make_tensor(k, l)]
        tape = Tape()
        slots = [tape.constant(t) for t in tensors]
        memo = {}
        out = TreeContractor().contract(tape, slots, (i, l), memo=memo, key=7)
        assert ("tree", 7) in memo
        np.testing.assert_allclose(
            tape.value(out).todense(), contract(*tensors).todense(), rtol=1e-10
        )

    def test_mps_contractor_bounded_rank(self, make_tensor):
        inds = [Index(2) for _ in range(4)]
        t = make_tensor(*inds)
        tape = Tape()
        out = MPSContractor(max_dim=1).contract(tape, [tape.constant(t)], inds)
        result = tape.value(out)
        assert result.indices == tuple(inds)
        # A bond-1 MPS is a product state: every unfolding has rank one.
        mat = np.asarray(result.todense()).reshape(2, 8)
        s = np.linalg.svd(mat, compute_uv=False)
        assert s[1] < 1e-10 * s[0]

    def test_mps_contractor_exact_without_truncation(self, make_tensor):
        inds = [Index(2) for _ in range(3)]
        t = make_tensor(*inds)
        tape = Tape()
        slot = tape.constant(t)
        assert MPSContractor().contract(tape, [slot], inds) == slot
