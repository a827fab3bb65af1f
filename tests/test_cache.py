"""Tests for the topology-keyed contraction-graph cache."""

from concurrent.futures import ThreadPoolExecutor

import numpy as np
import pytest

from pepsad.autodiff.cache import NetworkCache, topology_signature
from pepsad.autodiff.expression import batch_tensor_contraction, generate_expression
from pepsad.contraction.strategies import ContractionContext, ContractionStrategy
from pepsad.core.index import Index
from pepsad.network.network import SubNetwork, TensorArena


def chain(arena, dims, key_tensor):
    """Open chain network with fresh indices of the given bond dims."""
    bonds = [Index(d) for d in dims]
    ends = Index(2), Index(2)
    legs = [(ends[0], bonds[0])]
    legs += [(bonds[n], bonds[n + 1]) for n in range(len(bonds) - 1)]
    legs.append((bonds[-1], ends[1]))
    return SubNetwork(*arena.register_many([key_tensor(*l) for l in legs]))


class TestTopologySignature:
    def test_same_structure_same_signature(self, make_tensor):
        a = chain(TensorArena(), [3, 4], make_tensor)
        b = chain(TensorArena(), [3, 4], make_tensor)
        assert topology_signature([a]) == topology_signature([b])

    def test_dims_are_part_of_signature(self, make_tensor):
        a = chain(TensorArena(), [3, 4], make_tensor)
        b = chain(TensorArena(), [3, 5], make_tensor)
        assert topology_signature([a]) != topology_signature([b])

    def test_leaf_sharing_is_part_of_signature(self, arena, make_tensor):
        i = Index(2)
        x, y, z, w = arena.register_many([make_tensor(i) for _ in range(4)])
        shared = [SubNetwork(x, z), SubNetwork(x, w)]
        distinct = [SubNetwork(x, z), SubNetwork(y, w)]
        assert topology_signature(shared) != topology_signature(distinct)

    def test_nesting_is_part_of_signature(self, arena, make_tensor):
        i, j = Index(2), Index(2)
        leaves = arena.register_many([make_tensor(i), make_tensor(i, j), make_tensor(j)])
        flat = SubNetwork(*leaves)
        nested = SubNetwork(SubNetwork(*leaves[:2]), leaves[2])
        assert topology_signature([flat]) != topology_signature([nested])


class TestNetworkCache:
    def test_get_or_build_is_idempotent(self, make_tensor):
        cache = NetworkCache()
        net = chain(TensorArena(), [3, 3, 3], make_tensor)
        g1 = cache.get_or_build([net])
        g2 = cache.get_or_build([net])
        assert g1 is g2
        assert (cache.hits, cache.misses) == (1, 1)
        assert len(cache) == 1
        assert [net] in cache

    def test_new_arena_same_topology_hits(self, make_tensor):
        cache = NetworkCache()
        g1 = cache.get_or_build([chain(TensorArena(), [2, 3], make_tensor)])
        g2 = cache.get_or_build([chain(TensorArena(), [2, 3], make_tensor)])
        assert g1 is g2

    def test_optimize_is_part_of_key(self, make_tensor):
        cache = NetworkCache()
        net = chain(TensorArena(), [3, 3, 3], make_tensor)
        assert cache.get_or_build([net], "auto") is not cache.get_or_build([net], False)
        assert len(cache) == 2

    def test_membership_ignores_path_strategy(self, make_tensor):
        cache = NetworkCache()
        net = chain(TensorArena(), [3, 3, 3], make_tensor)
        ctx = ContractionContext(ContractionStrategy.TREE, cache=cache)
        batch_tensor_contraction([net], ctx)
        assert [net] in cache
        assert topology_signature([net]) in cache
        assert [chain(TensorArena(), [3, 4], make_tensor)] not in cache

    def test_signature_requires_builder(self, make_tensor):
        cache = NetworkCache()
        net = chain(TensorArena(), [3], make_tensor)
        sig = topology_signature([net])
        with pytest.raises(ValueError, match="builder"):
            cache.get_or_build(sig)
        graph = cache.get_or_build(sig, builder=lambda: generate_expression([net])[0])
        assert cache.get_or_build([net]) is graph

    def test_invalidate_and_clear(self, make_tensor):
        cache = NetworkCache()
        net = chain(TensorArena(), [3], make_tensor)
        cache.get_or_build([net])
        assert cache.invalidate([net])
        assert not cache.invalidate([net])
        cache.get_or_build([net])
        cache.clear()
        assert len(cache) == 0
        assert (cache.hits, cache.misses) == (0, 0)

    def test_cached_graph_evaluates_new_values(self, make_tensor):
        cache = NetworkCache()
        ctx = ContractionContext(cache=cache)
        first = chain(TensorArena(), [3, 3], make_tensor)
        second = chain(TensorArena(), [3, 3], make_tensor)
        batch_tensor_contraction([first], ctx)
        out = batch_tensor_contraction([second], ctx)[0]
        mats = [t.todense() for t in second.tensors()]
        np.testing.assert_allclose(out.todense(), mats[0] @ mats[1] @ mats[2], rtol=1e-10)
        assert cache.hits == 1

    def test_concurrent_access_builds_once(self, make_tensor):
        cache = NetworkCache()
        nets = [chain(TensorArena(), [3, 3, 3], make_tensor) for _ in range(8)]
        with ThreadPoolExecutor(max_workers=4) as pool:
            graphs = list(pool.map(lambda n: cache.get_or_build([n]), nets))
        assert all(g is graphs[0] for g in graphs)
        assert cache.misses == 1
        assert cache.hits == 7
