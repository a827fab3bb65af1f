"""Dense tensor with index metadata.

DenseTensor pairs a JAX array with a tuple of Index objects, one per axis.
It is registered as a JAX pytree (the array is the only leaf), so values
flow through ``jax.grad``/``jax.jit`` while the index structure stays
static.

Arithmetic between tensors aligns axes by index identity, so
``A + B`` is well defined whenever A and B carry the same set of indices
in any order.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping, Sequence
from typing import Any

import jax
import jax.numpy as jnp
import numpy as np

from pepsad.core.exceptions import IndexMismatch
from pepsad.core.index import Index


@jax.tree_util.register_pytree_node_class
class DenseTensor:
    """A tensor stored as a plain JAX array with index metadata.

    Pytree structure:
        Leaves:     (data_array,)
        Aux data:   indices tuple (static, not traced by JAX)

    Args:
        data:    JAX array whose shape matches the dimension of each index.
        indices: Sequence of Index objects, one per axis.

    Raises:
        IndexMismatch: If the array rank or shape disagrees with the indices.
        ValueError:    If an index is repeated.

    Example:
        >>> i, j = Index(2), Index(3)
        >>> t = DenseTensor(jnp.ones((2, 3)), (i, j))
        >>> t.norm()
        Array(2.44948974, dtype=float64)
    """

    def __init__(self, data: Any, indices: Sequence[Index]) -> None:
        indices = tuple(indices)
        if not hasattr(data, "ndim"):
            data = jnp.asarray(data)
        if data.ndim != len(indices):
            raise IndexMismatch(
                f"data has {data.ndim} dims but {len(indices)} indices given"
            )
        for i, (dim, idx) in enumerate(zip(data.shape, indices)):
            if dim != idx.dim:
                raise IndexMismatch(
                    f"data.shape[{i}]={dim} but indices[{i}].dim={idx.dim}"
                )
        if len(set(indices)) != len(indices):
            raise ValueError(f"Repeated index in {indices}")
        self._data = data
        self._indices = indices

    # --- Pytree interface ---

    def tree_flatten(self) -> tuple[tuple[Any], tuple[Index, ...]]:
        return (self._data,), self._indices

    @classmethod
    def tree_unflatten(
        cls,
        aux: tuple[Index, ...],
        children: tuple[Any],
    ) -> DenseTensor:
        # Bypass validation: JAX may pass placeholder leaves during tracing.
        obj = object.__new__(cls)
        obj._data = children[0]
        obj._indices = aux
        return obj

    # --- Construction helpers ---

    @classmethod
    def zeros(cls, indices: Sequence[Index], dtype: Any = jnp.float64) -> DenseTensor:
        shape = tuple(idx.dim for idx in indices)
        return cls(jnp.zeros(shape, dtype=dtype), indices)

    @classmethod
    def random_normal(
        cls,
        indices: Sequence[Index],
        key: jax.Array,
        stddev: float = 1.0,
        dtype: Any = jnp.float64,
    ) -> DenseTensor:
        """Create a tensor with i.i.d. normal entries.

        Args:
            indices: Indices of the new tensor.
            key:     JAX PRNG key.
            stddev:  Standard deviation of the entries.
            dtype:   Array dtype.
        """
        shape = tuple(idx.dim for idx in indices)
        data = stddev * jax.random.normal(key, shape, dtype=dtype)
        return cls(data, indices)

    @classmethod
    def from_scalar(cls, value: Any) -> DenseTensor:
        return cls(jnp.asarray(value), ())

    # --- Introspection ---

    @property
    def indices(self) -> tuple[Index, ...]:
        return self._indices

    @property
    def ndim(self) -> int:
        return self._data.ndim

    @property
    def shape(self) -> tuple[int, ...]:
        return tuple(self._data.shape)

    @property
    def size(self) -> int:
        return int(np.prod(self.shape, dtype=np.int64))

    @property
    def dtype(self) -> Any:
        return self._data.dtype

    def todense(self) -> jax.Array:
        return self._data

    def has_index(self, idx: Index) -> bool:
        return idx in self._indices

    def axis_of(self, idx: Index) -> int:
        """Position of ``idx`` among this tensor's axes.

        Raises:
            KeyError: If the index is not on this tensor.
        """
        try:
            return self._indices.index(idx)
        except ValueError:
            raise KeyError(f"{idx!r} not found in tensor with indices {self._indices}") from None

    def norm(self) -> jax.Array:
        """Frobenius norm."""
        return jnp.linalg.norm(self._data.ravel())

    def scalar(self) -> jax.Array:
        """Value of a zero-index tensor.

        Raises:
            ValueError: If the tensor has any index.
        """
        if self._indices:
            raise ValueError(
                f"scalar() requires a tensor with no indices, got {len(self._indices)}"
            )
        return self._data.reshape(())

    # --- Structural transforms ---

    def conj(self) -> DenseTensor:
        return DenseTensor(jnp.conj(self._data), self._indices)

    def dag(self) -> DenseTensor:
        return self.conj()

    def transpose(self, axes: Sequence[int]) -> DenseTensor:
        """Permute tensor legs.

        Args:
            axes: New ordering of leg positions.

        Returns:
            New DenseTensor with permuted data and reordered indices.
        """
        axes = tuple(axes)
        return DenseTensor(
            jnp.transpose(self._data, axes),
            tuple(self._indices[i] for i in axes),
        )

    def permute(self, indices: Sequence[Index]) -> DenseTensor:
        """Reorder legs to match ``indices``.

        Raises:
            IndexMismatch: If ``indices`` is not a permutation of this
                tensor's indices.
        """
        indices = tuple(indices)
        if set(indices) != set(self._indices) or len(indices) != len(self._indices):
            raise IndexMismatch(
                f"Cannot permute indices {self._indices} into {indices}"
            )
        if indices == self._indices:
            return self
        return self.transpose([self._indices.index(i) for i in indices])

    def map_indices(self, fn: Callable[[Index], Index]) -> DenseTensor:
        return DenseTensor(self._data, tuple(fn(i) for i in self._indices))

    def replaceinds(self, mapping: Mapping[Index, Index]) -> DenseTensor:
        """Return a copy with some indices replaced.

        Args:
            mapping: ``{old: new}`` pairs. Indices not present in the
                mapping are left unchanged. Replacement dims must match.
        """
        for old, new in mapping.items():
            if old.dim != new.dim:
                raise IndexMismatch(
                    f"Cannot replace {old!r} with {new!r}: dimensions differ"
                )
        return self.map_indices(lambda i: mapping.get(i, i))

    def prime(self, n: int = 1, indices: Iterable[Index] | None = None) -> DenseTensor:
        """Prime all indices, or only the given ones."""
        if indices is None:
            return self.map_indices(lambda i: i.prime(n))
        selected = set(indices)
        return self.map_indices(lambda i: i.prime(n) if i in selected else i)

    def noprime(self) -> DenseTensor:
        return self.map_indices(lambda i: i.noprime())

    def addtags(self, tags: str, indices: Iterable[Index] | None = None) -> DenseTensor:
        if indices is None:
            return self.map_indices(lambda i: i.addtags(tags))
        selected = set(indices)
        return self.map_indices(lambda i: i.addtags(tags) if i in selected else i)

    # --- Arithmetic ---

    def _aligned(self, other: DenseTensor) -> jax.Array:
        if set(other.indices) != set(self._indices):
            raise IndexMismatch(
                f"Index sets differ: {self._indices} vs {other.indices}"
            )
        return other.permute(self._indices).todense()

    def __add__(self, other: DenseTensor) -> DenseTensor:
        if not isinstance(other, DenseTensor):
            return NotImplemented
        return DenseTensor(self._data + self._aligned(other), self._indices)

    def __sub__(self, other: DenseTensor) -> DenseTensor:
        if not isinstance(other, DenseTensor):
            return NotImplemented
        return DenseTensor(self._data - self._aligned(other), self._indices)

    def __neg__(self) -> DenseTensor:
        return DenseTensor(-self._data, self._indices)

    def __mul__(self, factor: Any) -> DenseTensor:
        if isinstance(factor, DenseTensor):
            return NotImplemented
        return DenseTensor(self._data * factor, self._indices)

    __rmul__ = __mul__

    def __truediv__(self, factor: Any) -> DenseTensor:
        if isinstance(factor, DenseTensor):
            return NotImplemented
        return DenseTensor(self._data / factor, self._indices)

    def __repr__(self) -> str:
        return f"DenseTensor(shape={self.shape}, indices={self._indices})"
