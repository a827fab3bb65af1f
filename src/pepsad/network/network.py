"""Nested tensor networks over arena-registered leaf tensors.

A Network is a closed tagged variant:

- ``Leaf``:  one registered tensor.
- ``Group``: an ordered collection of sub-networks, contracted together.

Leaf tensors are registered in a ``TensorArena`` which hands out integer
handles. Deduplication of shared leaves (e.g. the same site tensor used
in several expectation-value networks) is done by handle only, never by
value equality or object identity.

Key design choices:
- A Group's free indices are the ordered symmetric difference of its
  children's free indices (first-appearance order)
- An index may appear in at most two places among a network's leaves
- ``to_graph()`` exposes the flattened leaf adjacency as an nx.MultiGraph
"""

from __future__ import annotations

import itertools
from collections import Counter
from collections.abc import Iterable, Iterator, Sequence
from dataclasses import dataclass, field
from typing import Union

import networkx as nx

from pepsad.core.exceptions import IndexMismatch, MalformedNetwork
from pepsad.core.index import Index
from pepsad.core.tensor import DenseTensor


@dataclass(frozen=True, slots=True)
class LeafTensor:
    """A tensor together with its arena handle.

    Attributes:
        handle: Identity used for deduplication across networks.
        tensor: The tensor value.
    """

    handle: int
    tensor: DenseTensor

    @property
    def indices(self) -> tuple[Index, ...]:
        return self.tensor.indices


class TensorArena:
    """Registry assigning a fresh handle to every registered tensor.

    Registering the same tensor twice yields two distinct handles; the
    caller decides which leaves are shared by reusing the LeafTensor.

    Example:
        >>> arena = TensorArena()
        >>> a = arena.register(A)
        >>> b = arena.register(A)
        >>> a.handle != b.handle
        True
    """

    def __init__(self) -> None:
        self._counter = itertools.count()
        self._leaves: dict[int, LeafTensor] = {}

    def register(self, tensor: DenseTensor) -> LeafTensor:
        if not isinstance(tensor, DenseTensor):
            raise TypeError(f"Expected DenseTensor, got {type(tensor).__name__}")
        leaf = LeafTensor(next(self._counter), tensor)
        self._leaves[leaf.handle] = leaf
        return leaf

    def register_many(self, tensors: Iterable[DenseTensor]) -> list[LeafTensor]:
        return [self.register(t) for t in tensors]

    def __getitem__(self, handle: int) -> LeafTensor:
        return self._leaves[handle]

    def __contains__(self, handle: object) -> bool:
        return handle in self._leaves

    def __len__(self) -> int:
        return len(self._leaves)

    def __iter__(self) -> Iterator[LeafTensor]:
        return iter(self._leaves.values())


def _symmetric_difference(index_lists: Iterable[Sequence[Index]]) -> tuple[Index, ...]:
    lists = [tuple(inds) for inds in index_lists]
    counts: Counter[Index] = Counter()
    for inds in lists:
        counts.update(inds)
    for idx, count in counts.items():
        if count > 2:
            raise MalformedNetwork(
                f"Index {idx!r} appears {count} times among sub-network boundaries"
            )
    return tuple(i for inds in lists for i in inds if counts[i] == 1)


@dataclass(frozen=True)
class Leaf:
    """A network consisting of a single registered tensor."""

    leaf: LeafTensor

    def __post_init__(self) -> None:
        if not isinstance(self.leaf, LeafTensor):
            raise TypeError(
                f"Leaf expects a LeafTensor, got {type(self.leaf).__name__}; "
                f"register tensors with TensorArena first"
            )

    @property
    def free_indices(self) -> tuple[Index, ...]:
        return self.leaf.indices

    @property
    def is_flat(self) -> bool:
        return True

    def leaves(self) -> list[LeafTensor]:
        return [self.leaf]

    def tensors(self) -> list[DenseTensor]:
        return [self.leaf.tensor]

    def validate(self) -> None:
        return None

    def to_graph(self) -> nx.MultiGraph:
        return _leaf_graph(self.leaves())

    def is_connected(self) -> bool:
        return True


@dataclass(frozen=True)
class Group:
    """A network whose children are contracted together.

    Attributes:
        children: Sub-networks, each a Leaf or a Group.
    """

    children: tuple[Network, ...]
    _free: tuple[Index, ...] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        children = tuple(self.children)
        for child in children:
            if not isinstance(child, (Leaf, Group)):
                raise TypeError(
                    f"Group children must be networks, got {type(child).__name__}"
                )
        object.__setattr__(self, "children", children)
        object.__setattr__(
            self, "_free", _symmetric_difference(c.free_indices for c in children)
        )

    @property
    def free_indices(self) -> tuple[Index, ...]:
        return self._free

    @property
    def is_flat(self) -> bool:
        return all(isinstance(c, Leaf) for c in self.children)

    def leaves(self) -> list[LeafTensor]:
        out: list[LeafTensor] = []
        for child in self.children:
            out.extend(child.leaves())
        return out

    def tensors(self) -> list[DenseTensor]:
        return [leaf.tensor for leaf in self.leaves()]

    def validate(self) -> None:
        """Check index bookkeeping over the flattened leaves.

        Raises:
            MalformedNetwork: If an index appears in more than two places.
            IndexMismatch:    If a shared index has two different dims.
        """
        counts: Counter[Index] = Counter()
        dims: dict[Index, int] = {}
        for leaf in self.leaves():
            for idx in leaf.indices:
                counts[idx] += 1
                if dims.setdefault(idx, idx.dim) != idx.dim:
                    raise IndexMismatch(
                        f"Index {idx!r} used with dimensions {dims[idx]} and {idx.dim}"
                    )
        for idx, count in counts.items():
            if count > 2:
                raise MalformedNetwork(
                    f"Index {idx!r} appears {count} times in the network"
                )

    def to_graph(self) -> nx.MultiGraph:
        return _leaf_graph(self.leaves())

    def is_connected(self) -> bool:
        graph = self.to_graph()
        return graph.number_of_nodes() == 0 or nx.is_connected(graph)


Network = Union[Leaf, Group]


def _leaf_graph(leaves: Sequence[LeafTensor]) -> nx.MultiGraph:
    """MultiGraph over leaf positions with one edge per shared index."""
    graph = nx.MultiGraph()
    owner: dict[Index, int] = {}
    for pos, leaf in enumerate(leaves):
        graph.add_node(pos, handle=leaf.handle)
        for idx in leaf.indices:
            if idx in owner:
                graph.add_edge(owner.pop(idx), pos, index=idx)
            else:
                owner[idx] = pos
    return graph


def _as_network(item: object) -> Network:
    if isinstance(item, (Leaf, Group)):
        return item
    if isinstance(item, LeafTensor):
        return Leaf(item)
    if isinstance(item, (list, tuple)):
        return Group(tuple(_as_network(x) for x in item))
    if isinstance(item, DenseTensor):
        raise TypeError(
            "Raw DenseTensor in a network; register it with TensorArena.register()"
        )
    raise TypeError(f"Cannot build a network from {type(item).__name__}")


def SubNetwork(*items: object) -> Group:
    """Group leaves and networks into a new network.

    Each item may be a LeafTensor, a Network, or a list/tuple of those (a
    nested flat group).

    Raises:
        TypeError: If an item is a raw DenseTensor or any other type.

    Example:
        >>> row1 = SubNetwork(a, b)
        >>> net = SubNetwork(row1, c, d)
        >>> net.free_indices
    """
    return Group(tuple(_as_network(x) for x in items))


def flatten(network: Network) -> Group:
    """The flat Group with the same leaves."""
    return Group(tuple(Leaf(leaf) for leaf in network.leaves()))


def neighboring_tensors(
    network: Network,
    candidates: Iterable[LeafTensor],
) -> list[LeafTensor]:
    """Candidates sharing at least one index with the network's boundary."""
    boundary = set(network.free_indices)
    return [c for c in candidates if boundary.intersection(c.indices)]
