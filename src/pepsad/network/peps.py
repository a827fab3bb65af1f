"""Finite PEPS and the inner-product networks built from it.

``PEPS`` is a rows x cols grid of site tensors connected by link indices,
registered as a JAX pytree so it can be handed directly to optax.

Convention for link indices:
- Horizontal link between (r, c) and (r, c+1): tags "Link,Lh,{r},{c}"
- Vertical link between (r, c) and (r+1, c):   tags "Link,Lv,{r},{c}"
- Site tensor legs: (left, right, up, down, site), boundary legs omitted

The network builders take grids of arena-registered LeafTensors, so the
same site leaf can be shared by every network in a batch:

    bra:     the PEPS itself
    ket:     the PEPS with primed links          (<bra|ket> contracts sites)
    ket_ham: the PEPS with every index primed    (used under an operator)
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Sequence
from typing import Any

import jax
import jax.numpy as jnp

from pepsad.core.index import Index
from pepsad.core.tensor import DenseTensor
from pepsad.network.network import (
    Group,
    LeafTensor,
    Network,
    SubNetwork,
    TensorArena,
    neighboring_tensors,
)

Coord = tuple[int, int]
LeafGrid = Sequence[Sequence[LeafTensor]]


@jax.tree_util.register_pytree_node_class
class PEPS:
    """A finite projected entangled pair state.

    Args:
        data: Grid ``data[row][col]`` of site DenseTensors.

    Example:
        >>> sites = site_indices(2, 2)
        >>> peps = PEPS.build(sites, linkdims=2, key=jax.random.PRNGKey(0))
        >>> peps.shape
        (2, 2)
    """

    def __init__(self, data: Sequence[Sequence[DenseTensor]]) -> None:
        self.data = [list(row) for row in data]

    # --- Pytree interface ---

    def tree_flatten(self) -> tuple[list[DenseTensor], tuple[int, int]]:
        return self.tensors(), self.shape

    @classmethod
    def tree_unflatten(cls, aux: tuple[int, int], children: Sequence[Any]) -> PEPS:
        rows, cols = aux
        children = list(children)
        return cls([children[r * cols:(r + 1) * cols] for r in range(rows)])

    # --- Construction ---

    @classmethod
    def build(
        cls,
        sites: Sequence[Sequence[Index]],
        linkdims: int = 1,
        key: jax.Array | None = None,
    ) -> PEPS:
        """Create a PEPS on the lattice spanned by ``sites``.

        Args:
            sites:    Grid of physical indices, at least 2 x 2.
            linkdims: Dimension of every link index.
            key:      PRNG key. If given, site tensors are random normal and
                      normalized; otherwise they are zero.

        Raises:
            ValueError: If the lattice is smaller than 2 x 2.
        """
        rows = len(sites)
        cols = len(sites[0]) if rows else 0
        if rows < 2 or cols < 2:
            raise ValueError(f"PEPS requires at least a 2x2 lattice, got {rows}x{cols}")

        lh = [[Index(linkdims, f"Link,Lh,{r},{c}") for c in range(cols - 1)] for r in range(rows)]
        lv = [[Index(linkdims, f"Link,Lv,{r},{c}") for c in range(cols)] for r in range(rows - 1)]

        grid = []
        for r in range(rows):
            row = []
            for c in range(cols):
                inds = []
                if c > 0:
                    inds.append(lh[r][c - 1])
                if c < cols - 1:
                    inds.append(lh[r][c])
                if r > 0:
                    inds.append(lv[r - 1][c])
                if r < rows - 1:
                    inds.append(lv[r][c])
                inds.append(sites[r][c])
                row.append(DenseTensor.zeros(inds))
            grid.append(row)

        peps = cls(grid)
        if key is not None:
            peps = peps.randomize(key)
        return peps

    def randomize(self, key: jax.Array) -> PEPS:
        """Random normal site tensors, each normalized to unit norm."""
        keys = jax.random.split(key, self.shape[0] * self.shape[1])
        out = []
        for t, k in zip(self.tensors(), keys):
            t = DenseTensor.random_normal(t.indices, k)
            out.append(t / t.norm())
        return PEPS.tree_unflatten(self.shape, out)

    # --- Introspection ---

    @property
    def shape(self) -> tuple[int, int]:
        return len(self.data), len(self.data[0])

    def __getitem__(self, coord: Coord) -> DenseTensor:
        r, c = coord
        return self.data[r][c]

    def tensors(self) -> list[DenseTensor]:
        """Site tensors in row-major order."""
        return [t for row in self.data for t in row]

    def map(self, fn: Callable[[DenseTensor], DenseTensor]) -> PEPS:
        return PEPS([[fn(t) for t in row] for row in self.data])

    def link_indices(self) -> list[Index]:
        """Indices shared between two site tensors, in first-seen order."""
        seen: dict[Index, int] = {}
        for t in self.tensors():
            for idx in t.indices:
                seen[idx] = seen.get(idx, 0) + 1
        return [i for i, n in seen.items() if n == 2]

    def site_indices(self) -> list[list[Index]]:
        """The physical index of every site (the one not shared)."""
        links = set(self.link_indices())
        out = []
        for row in self.data:
            out_row = []
            for t in row:
                phys = [i for i in t.indices if i not in links]
                if len(phys) != 1:
                    raise ValueError(f"Site tensor has {len(phys)} physical indices")
                out_row.append(phys[0])
            out.append(out_row)
        return out

    # --- Index transforms ---

    def prime(self, n: int = 1) -> PEPS:
        """Prime every index of every site tensor."""
        return self.map(lambda t: t.prime(n))

    def prime_indices(self, indices: Iterable[Index], n: int = 1) -> PEPS:
        selected = set(indices)
        return self.map(lambda t: t.prime(n, [i for i in t.indices if i in selected]))

    def prime_links(self, n: int = 1) -> PEPS:
        return self.prime_indices(self.link_indices(), n)

    def addtags_links(self, tags: str) -> PEPS:
        links = set(self.link_indices())
        return self.map(lambda t: t.addtags(tags, [i for i in t.indices if i in links]))

    # --- Parameter algebra ---

    def _zip(self, other: PEPS, fn: Callable[[DenseTensor, DenseTensor], DenseTensor]) -> PEPS:
        if self.shape != other.shape:
            raise ValueError(f"PEPS shapes differ: {self.shape} vs {other.shape}")
        return PEPS(
            [[fn(a, b) for a, b in zip(ra, rb)] for ra, rb in zip(self.data, other.data)]
        )

    def __add__(self, other: PEPS) -> PEPS:
        return self._zip(other, lambda a, b: a + b)

    def __sub__(self, other: PEPS) -> PEPS:
        return self._zip(other, lambda a, b: a - b)

    def __neg__(self) -> PEPS:
        return self.map(lambda t: -t)

    def __mul__(self, factor: Any) -> PEPS:
        return self.map(lambda t: t * factor)

    __rmul__ = __mul__

    def inner(self, other: PEPS) -> jax.Array:
        """Sum over sites of the elementwise product of site tensors."""
        total = jnp.zeros(())
        for a, b in zip(self.tensors(), other.tensors()):
            total = total + jnp.sum(a.todense() * b.permute(a.indices).todense())
        return total

    def norm(self) -> jax.Array:
        return jnp.sqrt(self.inner(self))

    def __repr__(self) -> str:
        return f"PEPS(shape={self.shape})"


# ------------------------------------------------------------------ #
# Network builders                                                   #
# ------------------------------------------------------------------ #

def register(arena: TensorArena, peps: PEPS) -> list[list[LeafTensor]]:
    """Register every site tensor and return the grid of leaves."""
    return [arena.register_many(row) for row in peps.data]


def _flat(grid: LeafGrid) -> list[LeafTensor]:
    return [leaf for row in grid for leaf in row]


def inner_network(
    bra: LeafGrid,
    ket: LeafGrid,
    projectors: Sequence[LeafTensor] = (),
) -> Group:
    """Flat network of <bra|ket>, optionally with projector leaves."""
    return SubNetwork(*_flat(bra), *_flat(ket), *projectors)


def term_network(
    bra: LeafGrid,
    ket: LeafGrid,
    ket_ham: LeafGrid,
    ops: Sequence[tuple[Coord, LeafTensor]],
    projectors: Sequence[LeafTensor] = (),
) -> Group:
    """Flat network of <bra|H_k|ket> for one local term.

    Sites acted on by the term use the fully primed ``ket_ham`` leaf and the
    operator leaf; all other sites use ``ket``.
    """
    op_at = dict(ops)
    if len(op_at) != len(ops):
        raise ValueError("A term may act on each site at most once")
    items: list[LeafTensor] = _flat(bra)
    for r, row in enumerate(ket):
        for c, leaf in enumerate(row):
            if (r, c) in op_at:
                items.extend([op_at[(r, c)], ket_ham[r][c]])
            else:
                items.append(leaf)
    return SubNetwork(*items, *projectors)


def inner_networks(
    bra: LeafGrid,
    ket: LeafGrid,
    ket_ham: LeafGrid,
    term_ops: Sequence[Sequence[tuple[Coord, LeafTensor]]],
    projectors: Sequence[LeafTensor] = (),
) -> list[Group]:
    """Networks <bra|H_1|ket>, ..., <bra|H_n|ket>, <bra|ket>.

    The norm network is always last, matching ``rayleigh_quotient``.
    """
    networks = [term_network(bra, ket, ket_ham, ops, projectors) for ops in term_ops]
    networks.append(inner_network(bra, ket, projectors))
    return networks


def line_axis(coords: Sequence[Coord]) -> str:
    """Orientation of the lattice line a term's contraction belongs to.

    ``"row"`` when every coordinate lies on one row (single-site terms
    included), ``"col"`` when they lie on one column. Terms spanning both
    fall back to ``"row"``.
    """
    if len({r for r, _ in coords}) <= 1:
        return "row"
    if len({c for _, c in coords}) == 1:
        return "col"
    return "row"


def line_tree(
    bra_line: Sequence[LeafTensor],
    ket_line: Sequence[LeafTensor],
    projectors: Sequence[LeafTensor] = (),
    ops_line: Sequence[LeafTensor | None] | None = None,
) -> Group:
    """Nested network of one lattice line, split at a center site.

    Sites in front of the center are absorbed front to back into one
    sub-network and sites behind it back to front into another; each site
    brings the projectors it touches that are still unclaimed. The center
    site joins both halves together with the leftover projectors.

    The center is the only site touching the line's boundary when there is
    exactly one (every other outgoing bond projected), else the middle site.

    Example::

           |  |   |
        p1-p2 |  p3-p4
         | |  |   | |
        s1-s2-s3-s4-s5

    gives ``[s3, [s2, p2, [s1, p1]], [s4, p3, [s5, p4]]]``.

    Args:
        bra_line:   Bra leaves along the line.
        ket_line:   Ket leaves along the line (the ``ket_ham`` leaf where an
                    operator acts).
        projectors: Projector leaves available to this line.
        ops_line:   Operator leaf per position, None where nothing acts.

    Raises:
        ValueError: If the line is empty or the per-site lists differ in length.
    """
    n = len(bra_line)
    ops_line = list(ops_line) if ops_line is not None else [None] * n
    if n == 0:
        raise ValueError("line_tree() needs at least one site")
    if len(ket_line) != n or len(ops_line) != n:
        raise ValueError(
            f"Line lengths differ: bra {n}, ket {len(ket_line)}, ops {len(ops_line)}"
        )

    def site(i: int) -> list[LeafTensor]:
        items = [bra_line[i], ket_line[i]]
        if ops_line[i] is not None:
            items.append(ops_line[i])
        return items

    everything = SubNetwork(*[leaf for i in range(n) for leaf in site(i)], *projectors)
    boundary = set(everything.free_indices)
    touching = [i for i in range(n) if boundary.intersection(bra_line[i].indices)]
    center = touching[0] if len(touching) == 1 else n // 2

    pool = list(projectors)

    def absorb(order: Iterable[int]) -> Group | None:
        nonlocal pool
        acc: Group | None = None
        for i in order:
            items = site(i)
            claimed = neighboring_tensors(SubNetwork(*items), pool)
            taken = {p.handle for p in claimed}
            pool = [p for p in pool if p.handle not in taken]
            acc = SubNetwork(*items, *claimed, *([acc] if acc is not None else []))
        return acc

    front = absorb(range(center))
    back = absorb(range(n - 1, center, -1))
    halves = [t for t in (front, back) if t is not None]
    return SubNetwork(*site(center), *pool, *halves)


def line_network(
    bra: LeafGrid,
    ket: LeafGrid,
    ket_ham: LeafGrid | None = None,
    ops: Sequence[tuple[Coord, LeafTensor]] = (),
    projectors: Sequence[LeafTensor] = (),
    axis: str = "row",
) -> Network:
    """Line-grouped nested network ``((line_1, line_2), line_3) ...``.

    Every row (``axis="row"``) or column (``axis="col"``) becomes a
    ``line_tree``. Lines are absorbed one at a time in lattice order. A line
    claims the projectors touching it that no earlier line claimed; any
    projector touching no line is added at the top level.

    Raises:
        ValueError: If ``axis`` is unknown, an operator sits outside the
            lattice, or ops are given without ``ket_ham``.
    """
    if axis not in ("row", "col"):
        raise ValueError(f"axis must be 'row' or 'col', got {axis!r}")
    op_at = dict(ops)
    if len(op_at) != len(ops):
        raise ValueError("A term may act on each site at most once")
    if op_at and ket_ham is None:
        raise ValueError("ket_ham is required when ops are given")
    rows, cols = len(bra), len(bra[0])
    outside = [rc for rc in op_at if not (0 <= rc[0] < rows and 0 <= rc[1] < cols)]
    if outside:
        raise ValueError(f"Operators outside the {rows}x{cols} lattice: {outside}")

    n_lines, n_sites = (rows, cols) if axis == "row" else (cols, rows)
    remaining = list(projectors)
    acc: Network | None = None
    for k in range(n_lines):
        bra_line, ket_line, ops_line = [], [], []
        for i in range(n_sites):
            r, c = (k, i) if axis == "row" else (i, k)
            op = op_at.get((r, c))
            bra_line.append(bra[r][c])
            ket_line.append(ket_ham[r][c] if op is not None else ket[r][c])
            ops_line.append(op)
        sites = SubNetwork(*bra_line, *ket_line, *[o for o in ops_line if o is not None])
        claimed = neighboring_tensors(sites, remaining)
        taken = {p.handle for p in claimed}
        remaining = [p for p in remaining if p.handle not in taken]
        line = line_tree(bra_line, ket_line, claimed, ops_line)
        acc = line if acc is None else SubNetwork(acc, line)
    if remaining:
        acc = SubNetwork(acc, *remaining)
    return acc


def rayleigh_quotient(values: Sequence[Any]) -> jax.Array:
    """``sum(values[:-1]) / values[-1]`` over scalar tensors or arrays."""
    def scalar(v: Any) -> jax.Array:
        return v.scalar() if isinstance(v, DenseTensor) else jnp.asarray(v).reshape(())

    if not values:
        raise ValueError("rayleigh_quotient() needs at least the norm value")
    expectation = sum((scalar(v) for v in values[:-1]), jnp.zeros(()))
    return expectation / scalar(values[-1])
