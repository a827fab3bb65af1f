r"""Index-identity tensor contraction and rank-truncated factorizations.

Primary API::

    contract(\*tensors, output_indices=None, optimize="auto") -> DenseTensor

Indices drive contraction: an Index that appears on two tensors is
contracted (summed over); an Index that appears once is a free output leg.
Each distinct Index is assigned an einsum symbol with
``opt_einsum.get_symbol``, so networks are not limited to 52 legs.

Under the hood the equation is fed to opt_einsum for contraction path
finding and then executed with the JAX backend.

Lower-level API::

    einsum_equation(index_lists, output_indices) -> (subscripts, output_indices)
    contract_with_subscripts(tensors, subscripts, output_indices, optimize) -> DenseTensor
    truncation_rank(s, cutoff, max_dim) -> (n_keep, discarded_weight)
    truncated_svd(tensor, left_indices, ...) -> (U, s, Vh, discarded_weight)
    qr_decompose(tensor, left_indices, ...) -> (Q, R)
"""

from __future__ import annotations

import math
from collections import Counter
from collections.abc import Sequence
from typing import Any

import jax
import jax.numpy as jnp
import numpy as np
import opt_einsum

from pepsad.core.exceptions import IndexMismatch, MalformedNetwork, TruncationInfeasible
from pepsad.core.index import Index
from pepsad.core.tensor import DenseTensor

# ---------- Index → Subscript Translation ----------

def free_indices_of(index_lists: Sequence[Sequence[Index]]) -> tuple[Index, ...]:
    """Indices appearing exactly once, in order of first appearance."""
    counts: Counter[Index] = Counter()
    for inds in index_lists:
        counts.update(inds)
    seen: set[Index] = set()
    out: list[Index] = []
    for inds in index_lists:
        for idx in inds:
            if counts[idx] == 1 and idx not in seen:
                out.append(idx)
                seen.add(idx)
    return tuple(out)


def einsum_equation(
    index_lists: Sequence[Sequence[Index]],
    output_indices: Sequence[Index] | None = None,
) -> tuple[str, tuple[Index, ...]]:
    """Build an einsum subscript string from per-tensor index lists.

    Algorithm:
    1. Count how many times each index appears across all operands.
    2. Indices appearing twice are contracted; once are free.
    3. Assign one symbol per distinct index, in order of first appearance.
    4. Build the subscript string "legs_t0,legs_t1,...->output_legs".

    Args:
        index_lists:    Per-operand index sequences.
        output_indices: Explicit ordering of free indices in the output.
                        If None, free indices appear in first-seen order.

    Returns:
        (subscripts, output_indices)

    Raises:
        MalformedNetwork: If an index appears more than twice, or
            ``output_indices`` names an index that is not free.
        IndexMismatch: If a shared index is used with two different dims.
    """
    counts: Counter[Index] = Counter()
    first_seen: dict[Index, Index] = {}
    for inds in index_lists:
        for idx in inds:
            counts[idx] += 1
            prev = first_seen.setdefault(idx, idx)
            if prev.dim != idx.dim:
                raise IndexMismatch(
                    f"Index {idx!r} has dimension {idx.dim} on one tensor "
                    f"and {prev.dim} on another"
                )

    for idx, count in counts.items():
        if count > 2:
            raise MalformedNetwork(
                f"Index {idx!r} appears {count} times across tensors. "
                f"Indices must appear at most 2 times."
            )

    symbols = {idx: opt_einsum.get_symbol(i) for i, idx in enumerate(first_seen)}
    free = free_indices_of(index_lists)

    if output_indices is None:
        output_indices = free
    else:
        output_indices = tuple(output_indices)
        free_set = set(free)
        for idx in output_indices:
            if idx not in free_set:
                raise MalformedNetwork(
                    f"output_indices contains {idx!r} which is not a free index. "
                    f"Free indices are: {free}"
                )
        if len(set(output_indices)) != len(free_set):
            raise MalformedNetwork(
                f"output_indices {output_indices} must list every free index {free}"
            )

    lhs = ",".join("".join(symbols[i] for i in inds) for inds in index_lists)
    rhs = "".join(symbols[i] for i in output_indices)
    return f"{lhs}->{rhs}", tuple(first_seen[i] for i in output_indices)


# ---------- Public API ----------

def contract(
    *tensors: DenseTensor,
    output_indices: Sequence[Index] | None = None,
    optimize: Any = "auto",
) -> DenseTensor:
    """Contract tensors over shared indices.

    Args:
        *tensors:       One or more DenseTensor objects to contract.
        output_indices: Explicit ordering of output legs. If None, free
                        indices are ordered by first appearance.
        optimize:       opt_einsum path optimizer strategy.

    Returns:
        Contracted DenseTensor carrying the free indices.

    Raises:
        ValueError:       If no tensors are given.
        MalformedNetwork: If an index appears more than 2 times.
        IndexMismatch:    If a shared index has inconsistent dimensions.

    Example:
        >>> # A has indices (i, j), B has indices (j, k)
        >>> contract(A, B).indices
        (i, k)
    """
    if not tensors:
        raise ValueError("contract() requires at least one tensor")

    subscripts, out = einsum_equation([t.indices for t in tensors], output_indices)

    if len(tensors) == 1:
        lhs, rhs = subscripts.split("->")
        if lhs == rhs:
            return tensors[0]

    return contract_with_subscripts(tensors, subscripts, out, optimize)


def contract_with_subscripts(
    tensors: Sequence[DenseTensor],
    subscripts: str,
    output_indices: Sequence[Index],
    optimize: Any = "auto",
) -> DenseTensor:
    """Contract tensors using an explicit einsum subscript string.

    Calls opt_einsum.contract_path first (Python-level, no JAX tracing)
    then executes the contraction with backend='jax'.

    Args:
        tensors:        Sequence of DenseTensor.
        subscripts:     Einsum subscript string (e.g., "ij,jk->ik").
        output_indices: Index metadata for output legs in subscript order.
        optimize:       opt_einsum optimizer ('auto', 'greedy', 'dp', ...).

    Returns:
        Contracted DenseTensor.
    """
    lhs, rhs = subscripts.split("->")
    arrays = []
    terms = []
    factor = None
    # Zero-index operands are plain multipliers.
    for t, subs in zip(tensors, lhs.split(",")):
        if subs:
            arrays.append(t.todense())
            terms.append(subs)
        else:
            factor = t.todense() if factor is None else factor * t.todense()

    if not arrays:
        result = factor
    else:
        eq = ",".join(terms) + "->" + rhs
        if len(arrays) > 2:
            _, path_info = opt_einsum.contract_path(eq, *arrays, optimize=optimize)
            path = path_info.path
        else:
            path = [tuple(range(len(arrays)))]
        result = opt_einsum.contract(eq, *arrays, optimize=path, backend="jax")
        if factor is not None:
            result = result * factor
    return DenseTensor(result, tuple(output_indices))


# ---------- Truncation policy ----------

def _check_truncation_params(cutoff: float, max_dim: int | None) -> None:
    if max_dim is not None and max_dim < 1:
        raise TruncationInfeasible(f"max_dim must be >= 1, got {max_dim}")
    if not math.isfinite(cutoff) or cutoff < 0:
        raise TruncationInfeasible(f"cutoff must be finite and >= 0, got {cutoff}")


def truncation_rank(
    s: Any,
    cutoff: float = 0.0,
    max_dim: int | None = None,
) -> tuple[int, float]:
    """Number of singular values to keep under a cutoff/max_dim policy.

    The discarded weight of keeping ``r`` values is the relative squared
    norm of the dropped tail, ``sum(s[r:]**2) / sum(s**2)``. The kept rank
    is the smallest ``r`` whose discarded weight is at most ``cutoff``,
    capped at ``max_dim`` and never below one.

    Args:
        s:       Singular values in descending order.
        cutoff:  Maximum allowed relative discarded weight.
        max_dim: Maximum rank, or None for unbounded.

    Returns:
        ``(n_keep, discarded_weight)``

    Raises:
        TruncationInfeasible: If ``max_dim < 1`` or ``cutoff`` is negative
            or not finite.
    """
    _check_truncation_params(cutoff, max_dim)
    s_np = np.asarray(s, dtype=np.float64)
    if s_np.size == 0:
        raise TruncationInfeasible("Cannot truncate an empty spectrum")

    sq = s_np**2
    total = float(np.sum(sq))
    if total == 0.0:
        return 1, 0.0

    # tails[r] = relative weight discarded when keeping r values
    tails = np.append(np.cumsum(sq[::-1])[::-1] / total, 0.0)
    n_keep = int(np.nonzero(tails[1:] <= cutoff)[0][0]) + 1
    if max_dim is not None:
        n_keep = min(n_keep, max_dim)
    n_keep = max(1, n_keep)
    return n_keep, float(tails[n_keep])


# ---------- Matricization helpers ----------

def _split_axes(
    tensor: DenseTensor,
    left_indices: Sequence[Index],
) -> tuple[tuple[Index, ...], tuple[Index, ...], jax.Array]:
    left = tuple(left_indices)
    for idx in left:
        if not tensor.has_index(idx):
            raise KeyError(f"{idx!r} not found in tensor with indices {tensor.indices}")
    if len(set(left)) != len(left):
        raise ValueError(f"left_indices contains duplicates: {left}")
    right = tuple(i for i in tensor.indices if i not in set(left))
    dense = tensor.permute(left + right).todense()
    left_dim = int(np.prod([i.dim for i in left], dtype=np.int64))
    right_dim = int(np.prod([i.dim for i in right], dtype=np.int64))
    return left, right, dense.reshape(left_dim, right_dim)


# ---------- Truncated SVD ----------

def truncated_svd(
    tensor: DenseTensor,
    left_indices: Sequence[Index],
    max_dim: int | None = None,
    cutoff: float = 0.0,
    bond_tags: str = "Link",
) -> tuple[DenseTensor, jax.Array, DenseTensor, float]:
    """Reshape tensor into a matrix, compute SVD, truncate, reshape back.

    The tensor is reshaped into a matrix by grouping ``left_indices`` as
    rows and the remaining indices as columns. U and Vh share one new bond
    Index, so ``contract(U * s, Vh)`` reproduces the (truncated) tensor.

    Output indices::

        U:  (left_indices..., bond)
        Vh: (bond, right_indices...)

    Note:
        Not JIT-able as a whole: the kept rank depends on the singular
        values. Call at Python level.

    Args:
        tensor:       Tensor to decompose.
        left_indices: Indices forming the U factor.
        max_dim:      Hard cap on the bond dimension.
        cutoff:       Maximum relative discarded weight.
        bond_tags:    Tags of the new bond index.

    Returns:
        ``(U, s, Vh, discarded_weight)``

    Raises:
        KeyError:             If a left index is not on the tensor.
        TruncationInfeasible: On an invalid ``cutoff``/``max_dim``.
    """
    _check_truncation_params(cutoff, max_dim)
    left, right, matrix = _split_axes(tensor, left_indices)

    U, s, Vh = jnp.linalg.svd(matrix, full_matrices=False)
    n_keep, discarded = truncation_rank(s, cutoff, max_dim)

    U = U[:, :n_keep]
    s = s[:n_keep]
    Vh = Vh[:n_keep, :]

    bond = Index(n_keep, bond_tags)
    U_t = DenseTensor(U.reshape(tuple(i.dim for i in left) + (n_keep,)), left + (bond,))
    Vh_t = DenseTensor(Vh.reshape((n_keep,) + tuple(i.dim for i in right)), (bond,) + right)
    return U_t, s, Vh_t, discarded


# ---------- QR Decomposition ----------

def qr_decompose(
    tensor: DenseTensor,
    left_indices: Sequence[Index],
    bond_tags: str = "Link",
) -> tuple[DenseTensor, DenseTensor]:
    """Reduced QR decomposition across a bipartition of the tensor's legs.

    Output indices::

        Q: (left_indices..., bond)
        R: (bond, right_indices...)

    Args:
        tensor:       Tensor to decompose.
        left_indices: Indices forming the Q (isometric) factor.
        bond_tags:    Tags of the new bond index.

    Returns:
        (Q, R) where Q is isometric (Q^T Q = I).
    """
    left, right, matrix = _split_axes(tensor, left_indices)
    Q, R = jnp.linalg.qr(matrix)

    bond = Index(Q.shape[1], bond_tags)
    Q_t = DenseTensor(Q.reshape(tuple(i.dim for i in left) + (bond.dim,)), left + (bond,))
    R_t = DenseTensor(R.reshape((bond.dim,) + tuple(i.dim for i in right)), (bond,) + right)
    return Q_t, R_t
