"""Tests for DenseTensor."""

import jax
import jax.numpy as jnp
import numpy as np
import pytest

from pepsad.core.exceptions import IndexMismatch
from pepsad.core.index import Index
from pepsad.core.tensor import DenseTensor


class TestDenseTensorCreation:
    def test_shape_and_indices(self, ijk):
        i, j, k = ijk
        t = DenseTensor.zeros((i, j, k))
        assert t.shape == (2, 3, 4)
        assert t.indices == (i, j, k)
        assert t.ndim == 3
        assert t.size == 24

    def test_rank_mismatch_raises(self, ijk):
        i, j, _ = ijk
        with pytest.raises(IndexMismatch, match="dims"):
            DenseTensor(jnp.ones((2,)), (i, j))

    def test_dim_mismatch_raises(self, ijk):
        i, j, _ = ijk
        with pytest.raises(IndexMismatch):
            DenseTensor(jnp.ones((2, 4)), (i, j))

    def test_repeated_index_raises(self, ijk):
        i, _, _ = ijk
        with pytest.raises(ValueError, match="Repeated"):
            DenseTensor(jnp.ones((2, 2)), (i, i))

    def test_default_dtype_is_float64(self, ijk):
        t = DenseTensor.random_normal(ijk, jax.random.PRNGKey(0))
        assert t.dtype == jnp.float64

    def test_scalar(self):
        t = DenseTensor.from_scalar(2.5)
        assert float(t.scalar()) == 2.5

    def test_scalar_with_indices_raises(self, ijk):
        with pytest.raises(ValueError, match="no indices"):
            DenseTensor.zeros(ijk).scalar()


class TestDenseTensorTransforms:
    def test_permute_reorders_data(self, ijk, make_tensor):
        i, j, k = ijk
        t = make_tensor(i, j, k)
        p = t.permute((k, i, j))
        assert p.indices == (k, i, j)
        np.testing.assert_allclose(p.todense(), jnp.transpose(t.todense(), (2, 0, 1)))

    def test_permute_wrong_set_raises(self, ijk, make_tensor):
        i, j, k = ijk
        with pytest.raises(IndexMismatch):
            make_tensor(i, j).permute((i, k))

    def test_axis_of_missing_raises(self, ijk, make_tensor):
        i, j, k = ijk
        with pytest.raises(KeyError):
            make_tensor(i, j).axis_of(k)

    def test_prime_selected(self, ijk, make_tensor):
        i, j, _ = ijk
        t = make_tensor(i, j).prime(1, [j])
        assert t.indices == (i, j.prime())

    def test_noprime(self, ijk, make_tensor):
        i, j, _ = ijk
        t = make_tensor(i, j).prime(2)
        assert t.noprime().indices == (i, j)

    def test_replaceinds_dim_check(self, ijk, make_tensor):
        i, j, _ = ijk
        t = make_tensor(i, j)
        with pytest.raises(IndexMismatch, match="dimensions"):
            t.replaceinds({i: Index(5)})
        new = Index(2, "new")
        assert t.replaceinds({i: new}).indices == (new, j)


class TestDenseTensorArithmetic:
    def test_add_aligns_by_index(self, ijk, make_tensor):
        i, j, _ = ijk
        a = make_tensor(i, j)
        b = a.permute((j, i))
        np.testing.assert_allclose((a + b).todense(), 2 * a.todense())

    def test_sub_to_zero(self, ijk, make_tensor):
        i, j, _ = ijk
        a = make_tensor(i, j)
        np.testing.assert_allclose((a - a.permute((j, i))).todense(), 0.0)

    def test_add_different_indices_raises(self, ijk, make_tensor):
        i, j, k = ijk
        with pytest.raises(IndexMismatch):
            make_tensor(i, j) + make_tensor(i, k)

    def test_scalar_multiplication(self, ijk, make_tensor):
        i, j, _ = ijk
        a = make_tensor(i, j)
        np.testing.assert_allclose((3.0 * a).todense(), 3.0 * a.todense())
        np.testing.assert_allclose((a / 2.0).todense(), a.todense() / 2.0)


class TestDenseTensorPytree:
    def test_flatten_roundtrip(self, ijk, make_tensor):
        t = make_tensor(*ijk)
        leaves, treedef = jax.tree_util.tree_flatten(t)
        assert len(leaves) == 1
        back = jax.tree_util.tree_unflatten(treedef, leaves)
        assert back.indices == t.indices

    def test_grad_through_tensor(self, ijk, make_tensor):
        t = make_tensor(*ijk)
        g = jax.grad(lambda x: jnp.sum(x.todense() ** 2))(t)
        assert isinstance(g, DenseTensor)
        np.testing.assert_allclose(g.todense(), 2 * t.todense())
