"""Binary contraction trees: construction, bounded-rank contraction, approximation.

A contraction tree is a ``BinaryTree`` whose leaves are positions into a
list of tensors. ``build_tree`` derives one by recursive bisection of the
network's free indices; ``contract_tree`` walks it bottom-up and truncates
the rank across each internal node's bipartition.

Typical usage::

    tree = build_tree(tensors, free_indices)
    result = contract_tree(tree, tensors, cutoff=1e-10, max_dim=16)
"""

from __future__ import annotations

import logging
import math
from collections import Counter
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Generic, TypeVar, Union

import jax.numpy as jnp
import networkx as nx
import numpy as np

from pepsad.contraction.contractor import (
    _check_truncation_params,
    contract,
    qr_decompose,
    truncated_svd,
)
from pepsad.core import EPS
from pepsad.core.exceptions import IndexMismatch, MalformedNetwork
from pepsad.core.index import Index
from pepsad.core.tensor import DenseTensor

logger = logging.getLogger(__name__)

T = TypeVar("T")
U = TypeVar("U")


# ------------------------------------------------------------------ #
# Tree representation                                                #
# ------------------------------------------------------------------ #

@dataclass(frozen=True)
class TreeLeaf(Generic[T]):
    """A leaf holding one item (usually a tensor position)."""

    item: T

    def leaves(self) -> list[T]:
        return [self.item]

    def depth(self) -> int:
        return 0

    def map(self, fn: Callable[[T], U]) -> TreeLeaf[U]:
        return TreeLeaf(fn(self.item))

    def to_nested(self) -> list:
        return [self.item]


@dataclass(frozen=True)
class TreeNode(Generic[T]):
    """An internal node with exactly two children."""

    left: BinaryTree[T]
    right: BinaryTree[T]

    def leaves(self) -> list[T]:
        return self.left.leaves() + self.right.leaves()

    def depth(self) -> int:
        return 1 + max(self.left.depth(), self.right.depth())

    def map(self, fn: Callable[[T], U]) -> TreeNode[U]:
        return TreeNode(self.left.map(fn), self.right.map(fn))

    def to_nested(self) -> list:
        return [self.left.to_nested(), self.right.to_nested()]


BinaryTree = Union[TreeLeaf[T], TreeNode[T]]


def tree_from_nested(nested: Any, items: Sequence[Any] | None = None) -> BinaryTree:
    """Build a tree from a nested-list description.

    Lists of two entries become internal nodes, a one-entry list is
    unwrapped, longer lists are folded left (``[a, b, c]`` is
    ``[[a, b], c]``). Anything else is a leaf.

    Args:
        nested: Nested lists, e.g. ``[[[A, B], [C, D]], E]``.
        items:  If given, leaves are replaced by their position in
            ``items`` (matched by identity), so the result can be passed
            to ``contract_tree`` together with ``items``.

    Raises:
        MalformedNetwork: If a leaf is not among ``items`` or a list is empty.
    """
    def leaf(x: Any) -> TreeLeaf:
        if items is None:
            return TreeLeaf(x)
        for pos, candidate in enumerate(items):
            if candidate is x:
                return TreeLeaf(pos)
        raise MalformedNetwork(f"Tree leaf {x!r} is not one of the given items")

    def build(x: Any) -> BinaryTree:
        if not isinstance(x, list):
            return leaf(x)
        if not x:
            raise MalformedNetwork("Empty list in nested tree description")
        if len(x) == 1:
            return build(x[0])
        node = TreeNode(build(x[0]), build(x[1]))
        for extra in x[2:]:
            node = TreeNode(node, build(extra))
        return node

    return build(nested)


# ------------------------------------------------------------------ #
# Tree builder                                                       #
# ------------------------------------------------------------------ #

def _index_lists(tensors: Sequence[Any]) -> list[tuple[Index, ...]]:
    return [tuple(t.indices) if hasattr(t, "indices") else tuple(t) for t in tensors]


def _validate_network(
    index_lists: Sequence[tuple[Index, ...]],
    free_indices: Sequence[Index],
) -> Counter[Index]:
    if not index_lists:
        raise MalformedNetwork("Cannot build a contraction tree over zero tensors")
    counts: Counter[Index] = Counter()
    for inds in index_lists:
        counts.update(inds)
    for idx, count in counts.items():
        if count > 2:
            raise MalformedNetwork(
                f"Index {idx!r} appears on {count} tensors; at most 2 allowed"
            )
    for idx in free_indices:
        if counts[idx] == 0:
            raise MalformedNetwork(f"Free index {idx!r} is not on any tensor")
        if counts[idx] == 2:
            raise MalformedNetwork(
                f"Free index {idx!r} is contracted between two tensors"
            )
    return counts


def _tensor_graph(index_lists: Sequence[tuple[Index, ...]], positions: Sequence[int]) -> nx.Graph:
    owner: dict[Index, list[int]] = {}
    for p in positions:
        for idx in index_lists[p]:
            owner.setdefault(idx, []).append(p)
    graph = nx.Graph()
    graph.add_nodes_from(positions)
    for ps in owner.values():
        if len(ps) == 2:
            graph.add_edge(ps[0], ps[1])
    return graph


def _assign_sides(
    index_lists: Sequence[tuple[Index, ...]],
    positions: list[int],
    free: list[Index],
) -> tuple[list[int], list[int]]:
    half = math.ceil(len(free) / 2)
    first, second = set(free[:half]), set(free[half:])

    side: dict[int, int] = {}
    for p in positions:
        inds = index_lists[p]
        o1 = sum(1 for i in inds if i in first)
        o2 = sum(1 for i in inds if i in second)
        if o1 or o2:
            side[p] = 0 if o1 >= o2 else 1

    rest = [p for p in positions if p not in side]
    if rest:
        graph = _tensor_graph(index_lists, positions)
        seeds = ([p for p in side if side[p] == 0], [p for p in side if side[p] == 1])
        dist = [
            nx.multi_source_dijkstra_path_length(graph, s) if s else {}
            for s in seeds
        ]
        for p in rest:
            d0, d1 = dist[0].get(p, math.inf), dist[1].get(p, math.inf)
            if d0 < d1:
                side[p] = 0
            elif d1 < d0:
                side[p] = 1
            elif math.isinf(d0):
                side[p] = 0
            else:
                inds = set(index_lists[p])
                shared = [
                    sum(len(inds.intersection(index_lists[q])) for q in s)
                    for s in seeds
                ]
                side[p] = 0 if shared[0] >= shared[1] else 1

    left = [p for p in positions if side[p] == 0]
    right = [p for p in positions if side[p] == 1]
    return left, right


def _boundary(
    index_lists: Sequence[tuple[Index, ...]],
    subset: list[int],
    other: list[int],
    free: list[Index],
) -> list[Index]:
    inds_here = {i for p in subset for i in index_lists[p]}
    inds_other = {i for p in other for i in index_lists[p]}
    boundary = [i for i in free if i in inds_here]
    seen = set(boundary)
    for p in subset:
        for idx in index_lists[p]:
            if idx in inds_other and idx not in seen:
                boundary.append(idx)
                seen.add(idx)
    return boundary


def build_tree(
    tensors: Sequence[Any],
    free_indices: Sequence[Index] = (),
) -> BinaryTree[int]:
    """Build a binary contraction tree by recursive bisection of free indices.

    At every level the subset's boundary indices are split into two
    contiguous halves (the first half takes the extra index when odd).
    Tensors touching boundary indices join the half they overlap most,
    ties going to the first half; the remaining tensors join the half
    nearest to them in the tensor-adjacency graph. When the indices cannot
    separate the subset, the tensors are bisected in order. Each side is
    then recursed on with its own boundary: the parent boundary indices it
    carries followed by the bonds cut between the two sides.

    Args:
        tensors:      DenseTensors (or plain index sequences).
        free_indices: The network's open indices. Indices that appear once
            but are not listed are appended in first-seen order.

    Returns:
        BinaryTree whose leaves are positions into ``tensors``. Every
        position appears exactly once.

    Raises:
        MalformedNetwork: If an index is on more than two tensors, or a
            free index is absent or contracted.
    """
    index_lists = _index_lists(tensors)
    free = list(free_indices)
    counts = _validate_network(index_lists, free)
    listed = set(free)
    for inds in index_lists:
        for idx in inds:
            if counts[idx] == 1 and idx not in listed:
                free.append(idx)
                listed.add(idx)

    def split(positions: list[int], boundary: list[Index]) -> BinaryTree[int]:
        if len(positions) == 1:
            return TreeLeaf(positions[0])
        left: list[int] = []
        right: list[int] = []
        if len(boundary) >= 2:
            left, right = _assign_sides(index_lists, positions, boundary)
        if not left or not right:
            half = math.ceil(len(positions) / 2)
            left, right = positions[:half], positions[half:]
        return TreeNode(
            split(left, _boundary(index_lists, left, right, boundary)),
            split(right, _boundary(index_lists, right, left, boundary)),
        )

    tree = split(list(range(len(index_lists))), free)
    logger.debug(
        "Built contraction tree over %d tensors, depth %d",
        len(index_lists), tree.depth(),
    )
    return tree


def index_tree(
    tree: BinaryTree[int],
    tensors: Sequence[Any],
    free_indices: Sequence[Index],
) -> list | None:
    """Nested-list form of a tree with leaves replaced by their free indices.

    Each leaf becomes the list of ``free_indices`` carried by that tensor,
    in ``free_indices`` order. Leaves without free indices are pruned, and
    a node left with a single child collapses into it.

    Example:
        >>> tree = tree_from_nested([[[A, B], [C, D]], E], [A, B, C, D, E])
        >>> index_tree(tree, [A, B, C, D, E], [i, j, k, l, m])
        [[[[i], [j]], [[k], [l]]], [m]]
    """
    index_lists = _index_lists(tensors)

    def walk(node: BinaryTree[int]) -> list | None:
        if isinstance(node, TreeLeaf):
            carried = set(index_lists[node.item])
            inds = [i for i in free_indices if i in carried]
            return inds or None
        left, right = walk(node.left), walk(node.right)
        if left is None:
            return right
        if right is None:
            return left
        return [left, right]

    return walk(tree)


# ------------------------------------------------------------------ #
# Bounded-rank contraction                                           #
# ------------------------------------------------------------------ #

@dataclass(frozen=True)
class CompressedNode:
    """Record of one internal node of a bounded-rank contraction.

    Attributes:
        tensor:           The node's (possibly truncated) representative.
        factors:          ``(P_left, P_right)`` projectors when truncation
                          was applied, else None.
        rank:             Bond rank across the node's bipartition.
        discarded_weight: Relative squared weight discarded at this node.
    """

    tensor: DenseTensor
    factors: tuple[DenseTensor, DenseTensor] | None
    rank: int
    discarded_weight: float


def bond_projectors(
    left: DenseTensor,
    right: DenseTensor,
    cutoff: float,
    max_dim: int | None,
) -> tuple[DenseTensor, DenseTensor, int, float] | None:
    """Projectors truncating the bond between two tensors.

    With ``L = Q_L R_L`` and ``R = Q_R R_R`` (QR across the shared indices)
    and ``R_L R_R^T = U s V^T``, the projectors

        P_L = R_R^T V_r s_r^{-1/2},    P_R = s_r^{-1/2} U_r^T R_L

    make ``(L P_L)(P_R R)`` the optimal rank-``r`` approximation of ``L R``
    across the (outer L | outer R) bipartition.

    Returns:
        ``(P_left, P_right, rank, discarded_weight)`` or None when the kept
        rank discards no weight (exact contraction is then equivalent).
    """
    shared = [i for i in left.indices if right.has_index(i)]
    outer_l = [i for i in left.indices if i not in set(shared)]
    outer_r = [i for i in right.indices if i not in set(shared)]
    if not shared or not outer_l or not outer_r:
        return None

    _, r_left = qr_decompose(left, outer_l)
    _, r_right = qr_decompose(right, outer_r)
    core = contract(r_left, r_right)
    bond_l = r_left.indices[0]
    u, s, vh, discarded = truncated_svd(core, [bond_l], max_dim=max_dim, cutoff=cutoff)
    full_rank = min(core.shape)
    if s.shape[0] >= full_rank or discarded <= 0.0:
        return None

    inv_sqrt = 1.0 / jnp.sqrt(jnp.maximum(s, EPS))
    bond = vh.indices[0]
    p_left = contract(r_right, vh)
    p_left = DenseTensor(
        p_left.todense() * inv_sqrt.reshape((1,) * (p_left.ndim - 1) + (-1,)),
        p_left.indices,
    ).permute(tuple(shared) + (bond,))
    p_right = contract(u, r_left)
    p_right = DenseTensor(
        p_right.todense() * inv_sqrt.reshape((-1,) + (1,) * (p_right.ndim - 1)),
        p_right.indices,
    ).permute((bond,) + tuple(shared))
    return p_left, p_right, int(s.shape[0]), discarded


def contract_tree_on_tape(
    tape: Any,
    tree: BinaryTree[int],
    leaf_slots: Mapping[int, int] | Sequence[int],
    cutoff: float = 0.0,
    max_dim: int | None = None,
    records: list[CompressedNode] | None = None,
) -> int:
    """Bounded-rank tree contraction recorded on a Tape.

    Projectors are recorded as tape constants, so gradients flow through the
    children but not through the truncation itself.

    Args:
        tape:       Tape holding the leaf values.
        tree:       Contraction tree with positions as leaves.
        leaf_slots: Tape slot for every tree leaf.
        cutoff:     Maximum relative discarded weight per node.
        max_dim:    Maximum bond rank per node, None for unbounded.
        records:    Optional list collecting a CompressedNode per internal node.

    Returns:
        Tape slot of the root result.
    """
    _check_truncation_params(cutoff, max_dim)

    def walk(node: BinaryTree[int]) -> int:
        if isinstance(node, TreeLeaf):
            return leaf_slots[node.item]
        l_slot, r_slot = walk(node.left), walk(node.right)
        left, right = tape.value(l_slot), tape.value(r_slot)

        shared = [i for i in left.indices if right.has_index(i)]
        right_dims = {i: i.dim for i in right.indices}
        for idx in shared:
            if right_dims[idx] != idx.dim:
                raise IndexMismatch(
                    f"Index {idx!r} has dimension {idx.dim} on one side of a tree "
                    f"node and {right_dims[idx]} on the other"
                )
        bond_dim = int(np.prod([i.dim for i in shared], dtype=np.int64))
        wants_truncation = shared and (cutoff > 0 or (max_dim is not None and bond_dim > max_dim))
        proj = bond_projectors(left, right, cutoff, max_dim) if wants_truncation else None

        if proj is None:
            out = tape.contract([l_slot, r_slot])
            if records is not None:
                records.append(CompressedNode(tape.value(out), None, bond_dim, 0.0))
            return out

        p_left, p_right, rank, discarded = proj
        half_l = tape.contract([l_slot, tape.constant(p_left)])
        half_r = tape.contract([tape.constant(p_right), r_slot])
        out = tape.contract([half_l, half_r])
        logger.debug(
            "Truncated tree node bond %d -> %d, discarded weight %.3e",
            bond_dim, rank, discarded,
        )
        if records is not None:
            records.append(CompressedNode(tape.value(out), (p_left, p_right), rank, discarded))
        return out

    return walk(tree)


def contract_tree(
    tree: BinaryTree[int],
    leaf_values: Mapping[int, DenseTensor] | Sequence[DenseTensor],
    cutoff: float = 0.0,
    max_dim: int | None = None,
    return_nodes: bool = False,
) -> DenseTensor | tuple[DenseTensor, list[CompressedNode]]:
    """Contract a tree bottom-up, truncating each node's bipartition rank.

    At every internal node the two children are contracted over their
    shared indices. When the shared bond exceeds ``max_dim`` (or
    ``cutoff > 0``), the product is replaced by its optimal low-rank
    approximation across the (outer left | outer right) bipartition: rank
    at most ``max_dim`` and relative discarded weight at most ``cutoff``,
    whichever binds first. With ``cutoff=0`` and ``max_dim=None`` the
    result equals the full contraction.

    Args:
        tree:         BinaryTree whose leaves index ``leaf_values``.
        leaf_values:  Tensor for every leaf.
        cutoff:       Maximum relative discarded weight per node.
        max_dim:      Maximum bond rank per node.
        return_nodes: Also return the per-node CompressedNode records.

    Returns:
        The root tensor, or ``(root, records)`` if ``return_nodes``.

    Raises:
        TruncationInfeasible: If ``max_dim < 1`` or ``cutoff < 0``.
        IndexMismatch:        If a shared index has inconsistent dims.
    """
    from pepsad.autodiff.tape import Tape

    tape = Tape()
    positions = tree.leaves()
    slots = {p: tape.constant(leaf_values[p]) for p in positions}
    records: list[CompressedNode] = []
    root = contract_tree_on_tape(tape, tree, slots, cutoff, max_dim, records)
    result = tape.value(root)
    if return_nodes:
        return result, records
    return result


# ------------------------------------------------------------------ #
# Tree-structured approximation                                      #
# ------------------------------------------------------------------ #

def tree_approximation(
    tensors: Sequence[DenseTensor],
    itree: list,
    cutoff: float = 0.0,
    max_dim: int | None = None,
) -> list[DenseTensor]:
    """Approximate the contraction of ``tensors`` as a tree tensor network.

    The product of all tensors is factorized top-down following the
    nested index tree returned by ``index_tree``: at each node the indices
    of the left subtree are split off by a truncated SVD. The returned
    tensors, one per leaf of ``itree``, contract to the approximation.

    Args:
        tensors: Tensors to contract.
        itree:   Nested lists of indices, e.g. ``[[[i], [j]], [k]]``.
        cutoff:  Maximum relative discarded weight per split.
        max_dim: Maximum bond rank per split.
    """
    def flat(node: list) -> list[Index]:
        if all(isinstance(x, Index) for x in node):
            return list(node)
        return [i for child in node for i in flat(child)]

    def is_leaf(node: list) -> bool:
        return all(isinstance(x, Index) for x in node)

    def split(tensor: DenseTensor, node: list) -> list[DenseTensor]:
        if is_leaf(node):
            return [tensor]
        left, right = node
        u, s, vh, _ = truncated_svd(tensor, flat(left), max_dim=max_dim, cutoff=cutoff)
        rest = DenseTensor(s.reshape((-1,) + (1,) * (vh.ndim - 1)) * vh.todense(), vh.indices)
        return split(u, left) + split(rest, right)

    if itree is None:
        return [contract(*tensors)]
    return split(contract(*tensors), itree)
