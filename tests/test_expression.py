"""Tests for the symbolic contraction graph, evaluation and gradients."""

import jax
import jax.numpy as jnp
import numpy as np
import pytest

from pepsad.autodiff.expression import (
    NodeKind,
    batch_tensor_contraction,
    evaluate,
    extract_network,
    generate_expression,
    gradient,
    ordered_leaves,
    topological_order,
    value_and_grad,
)
from pepsad.contraction.contractor import contract
from pepsad.contraction.strategies import ContractionContext, ContractionStrategy
from pepsad.core.exceptions import MalformedNetwork, ScalarDegenerateNode
from pepsad.core.index import Index
from pepsad.core.tensor import DenseTensor
from pepsad.network.network import Group, Leaf, SubNetwork

# ------------------------------------------------------------------ #
# Fixtures                                                             #
# ------------------------------------------------------------------ #


@pytest.fixture
def triangle(arena, ijk, make_tensor):
    """Closed triangle A(i,j) B(j,k) C(k,i) registered in the arena."""
    i, j, k = ijk
    A, B, C = make_tensor(i, j), make_tensor(j, k), make_tensor(k, i)
    return arena.register_many([A, B, C])


@pytest.fixture
def ladder(arena, make_tensor):
    """A 2x3 open ladder: six tensors with one free leg each."""
    phys = [Index(2, f"p{n}") for n in range(6)]
    h = [Index(3, f"h{n}") for n in range(4)]
    v = [Index(3, f"v{n}") for n in range(3)]
    legs = [
        [phys[0], h[0], v[0]],
        [phys[1], h[0], h[1], v[1]],
        [phys[2], h[1], v[2]],
        [phys[3], h[2], v[0]],
        [phys[4], h[2], h[3], v[1]],
        [phys[5], h[3], v[2]],
    ]
    leaves = arena.register_many([make_tensor(*l) for l in legs])
    return leaves, phys


def exact_scalar(leaves):
    return contract(*[leaf.tensor for leaf in leaves]).scalar()


# ------------------------------------------------------------------ #
# Graph construction                                                   #
# ------------------------------------------------------------------ #


class TestGenerateExpression:
    def test_one_variable_per_handle(self, triangle):
        a, b, c = triangle
        graph, leaf_map = generate_expression([SubNetwork(a, b, c), SubNetwork(b, c, a)])
        variables = [n for n in graph.nodes if n.kind is NodeKind.VARIABLE]
        assert len(variables) == 3
        assert graph.num_variables == 3
        assert sorted(leaf.handle for leaf in leaf_map.values()) == sorted(
            leaf.handle for leaf in triangle
        )

    def test_pairwise_split(self, triangle):
        graph, _ = generate_expression([SubNetwork(*triangle)], optimize="auto")
        contractions = [n for n in graph.nodes if n.kind is NodeKind.CONTRACT]
        assert len(contractions) == 2
        assert all(len(n.inputs) == 2 for n in contractions)

    def test_unsplit_nodes(self, triangle):
        graph, _ = generate_expression([SubNetwork(*triangle)], optimize=False)
        contractions = [n for n in graph.nodes if n.kind is NodeKind.CONTRACT]
        assert len(contractions) == 1
        assert contractions[0].equation == "ab,bc,ca->"

    def test_identical_networks_are_hash_consed(self, triangle):
        net = SubNetwork(*triangle)
        graph, _ = generate_expression([net, SubNetwork(*triangle)])
        assert graph.outputs[0] == graph.outputs[1]

    def test_shared_subnetwork_is_computed_once(self, triangle):
        a, b, c = triangle
        ab = SubNetwork(a, b)
        graph, _ = generate_expression(
            [SubNetwork(ab, c), SubNetwork(SubNetwork(a, b), c)], optimize=False
        )
        contractions = [n for n in graph.nodes if n.kind is NodeKind.CONTRACT]
        assert len(contractions) == 2

    def test_empty_group_is_scalar(self):
        graph, _ = generate_expression([Group(())])
        assert graph.nodes[graph.outputs[0]].kind is NodeKind.SCALAR

    def test_malformed_network_raises(self, arena, ijk, make_tensor):
        i, j, _ = ijk
        a = arena.register(make_tensor(i, j))
        b = arena.register(make_tensor(i, j))
        c = arena.register(make_tensor(i))
        net = SubNetwork(SubNetwork(a, b), c)
        with pytest.raises(MalformedNetwork):
            generate_expression([net])

    def test_non_network_raises(self, triangle):
        with pytest.raises(TypeError, match="network"):
            generate_expression([triangle[0]])

    def test_extract_network_roundtrip(self, triangle):
        a, b, c = triangle
        net = SubNetwork(SubNetwork(a, b), c)
        graph, leaf_map = generate_expression([net], optimize=False)
        rebuilt = extract_network(graph, graph.outputs[0], leaf_map)
        assert [leaf.handle for leaf in rebuilt.leaves()] == [a.handle, b.handle, c.handle]
        assert isinstance(rebuilt.children[1], Leaf)

    def test_topological_order(self, triangle):
        graph, _ = generate_expression([SubNetwork(*triangle)])
        order = [n.id for n in topological_order(graph)]
        for node in topological_order(graph):
            for i in node.inputs:
                assert order.index(i) < order.index(node.id)


# ------------------------------------------------------------------ #
# Evaluation                                                           #
# ------------------------------------------------------------------ #


class TestEvaluate:
    def test_triangle_value(self, triangle):
        out = batch_tensor_contraction([SubNetwork(*triangle)])
        np.testing.assert_allclose(out[0].scalar(), exact_scalar(triangle), rtol=1e-10)

    def test_open_network_output_order(self, arena, ijk, make_tensor):
        i, j, k = ijk
        a = arena.register(make_tensor(i, j))
        b = arena.register(make_tensor(j, k))
        net = SubNetwork(a, b)
        out = batch_tensor_contraction([net])[0]
        assert out.indices == net.free_indices
        np.testing.assert_allclose(out.todense(), a.tensor.todense() @ b.tensor.todense())

    def test_scalar_output_is_one(self):
        out = batch_tensor_contraction([Group(())])
        np.testing.assert_allclose(out[0].scalar(), 1.0)

    def test_graph_reused_with_new_values(self, triangle, arena, make_tensor):
        graph, _ = generate_expression([SubNetwork(*triangle)])
        fresh = [make_tensor(*leaf.indices) for leaf in triangle]
        out = evaluate(graph, fresh)
        np.testing.assert_allclose(out[0].scalar(), contract(*fresh).scalar(), rtol=1e-10)

    def test_missing_leaf_raises(self, triangle):
        graph, _ = generate_expression([SubNetwork(*triangle)])
        with pytest.raises(ScalarDegenerateNode):
            evaluate(graph, [leaf.tensor for leaf in triangle[:2]])

    @pytest.mark.parametrize("strategy", list(ContractionStrategy))
    def test_strategies_exact_without_truncation(self, ladder, strategy):
        leaves, phys = ladder
        ctx = ContractionContext(strategy=strategy, cutoff=0.0, max_dim=None)
        net = SubNetwork(*leaves)
        out = batch_tensor_contraction([net], ctx)[0].permute(phys)
        exact = contract(*[leaf.tensor for leaf in leaves], output_indices=phys)
        np.testing.assert_allclose(out.todense(), exact.todense(), rtol=1e-9, atol=1e-10)

    @pytest.mark.parametrize("strategy", [ContractionStrategy.TREE, ContractionStrategy.MPS])
    def test_strategies_truncate_with_max_dim(self, ladder, strategy):
        leaves, phys = ladder
        ctx = ContractionContext(strategy=strategy, cutoff=0.0, max_dim=1)
        out = batch_tensor_contraction([SubNetwork(*leaves)], ctx)[0].permute(phys)
        exact = contract(*[leaf.tensor for leaf in leaves], output_indices=phys)
        assert float(jnp.linalg.norm(out.todense() - exact.todense())) > 1e-8


# ------------------------------------------------------------------ #
# Gradients                                                            #
# ------------------------------------------------------------------ #


class TestGradient:
    def test_triangle_gradient(self, triangle):
        a, b, c = triangle
        graph, _ = generate_expression([SubNetwork(a, b, c)])
        _, grads = gradient(graph, [a, b, c], [1.0])
        expected = contract(b.tensor, c.tensor).permute(a.indices)
        np.testing.assert_allclose(grads[0].todense(), expected.todense(), rtol=1e-10)
        assert grads[0].indices == a.indices

    def test_open_product_gradient(self, arena, ijk, make_tensor):
        # d sum(A B) / dA = row sums of B broadcast over i
        i, j, k = ijk
        a = arena.register(make_tensor(i, j))
        b = arena.register(make_tensor(j, k))
        _, grads = value_and_grad(lambda outs: jnp.sum(outs[0].todense()), [SubNetwork(a, b)])
        expected = jnp.broadcast_to(jnp.sum(b.tensor.todense(), axis=1), (2, 3))
        np.testing.assert_allclose(grads[a.handle].todense(), expected, rtol=1e-12)

    def test_shared_leaf_gradients_sum(self, triangle, arena, make_tensor):
        a, b, c = triangle
        net1 = SubNetwork(a, b, c)
        d = arena.register(make_tensor(*c.indices))
        net2 = SubNetwork(a, b, d)
        graph, _ = generate_expression([net1, net2])
        leaves = ordered_leaves([net1, net2])
        _, grads = gradient(graph, leaves, [1.0, 1.0])
        expected = contract(b.tensor, c.tensor) + contract(b.tensor, d.tensor)
        np.testing.assert_allclose(
            grads[0].todense(), expected.permute(a.indices).todense(), rtol=1e-10
        )

    def test_none_cotangent_skips_output(self, triangle, arena, make_tensor):
        a, b, c = triangle
        d = arena.register(make_tensor(*c.indices))
        nets = [SubNetwork(a, b, c), SubNetwork(a, b, d)]
        graph, _ = generate_expression(nets)
        _, grads = gradient(graph, ordered_leaves(nets), [None, 1.0])
        np.testing.assert_allclose(grads[2].todense(), 0.0)

    def test_value_and_grad_matches_jax(self, triangle):
        a, b, c = triangle

        def loss(outs):
            return outs[0].scalar() ** 2

        value, grads = value_and_grad(loss, [SubNetwork(a, b, c)])

        def f(x):
            return jnp.einsum("ij,jk,ki->", x, b.tensor.todense(), c.tensor.todense()) ** 2

        np.testing.assert_allclose(value, f(a.tensor.todense()), rtol=1e-10)
        np.testing.assert_allclose(
            grads[a.handle].todense(), jax.grad(f)(a.tensor.todense()), rtol=1e-10
        )

    def test_hash_consed_outputs_double_gradient(self, triangle):
        a, b, c = triangle
        nets = [SubNetwork(a, b, c), SubNetwork(a, b, c)]
        _, grads = value_and_grad(lambda outs: outs[0].scalar() + outs[1].scalar(), nets)
        expected = 2 * contract(b.tensor, c.tensor).permute(a.indices).todense()
        np.testing.assert_allclose(grads[a.handle].todense(), expected, rtol=1e-10)

    @pytest.mark.parametrize("strategy", list(ContractionStrategy))
    def test_gradient_strategies_agree_without_truncation(self, ladder, arena, strategy):
        leaves, phys = ladder
        bra = SubNetwork(*leaves)
        # <psi|psi> with the ket as a primed copy of the same leaves
        ket = [arena.register(l.tensor.prime(1, [i for i in l.indices if i not in phys]))
               for l in leaves]
        net = SubNetwork(bra, SubNetwork(*ket))
        ctx = ContractionContext(strategy=strategy, cutoff=0.0)
        _, grads = value_and_grad(lambda outs: outs[0].scalar(), [net], ctx)
        _, ref = value_and_grad(lambda outs: outs[0].scalar(), [net])
        for leaf in leaves:
            np.testing.assert_allclose(
                grads[leaf.handle].todense(), ref[leaf.handle].todense(),
                rtol=1e-8, atol=1e-10,
            )
