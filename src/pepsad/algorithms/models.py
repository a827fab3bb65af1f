"""Local Hamiltonian terms on a 2D lattice.

A Hamiltonian is a list of ``LocalTerm`` objects, each a coefficient times a
product of single-site operators. Terms are turned into operator tensors
carrying ``(site, site')`` indices, which connect a bra site tensor to the
primed copy of the ket site tensor in ``network.peps.term_network``.

Example::

    sites = site_indices(2, 3)
    terms = tfim_terms(2, 3, h=1.0)
    ops = terms[0].operator_tensors(sites)
"""

from __future__ import annotations

from dataclasses import dataclass

import jax.numpy as jnp
import numpy as np

from pepsad.core.index import Index
from pepsad.core.tensor import DenseTensor

Coord = tuple[int, int]


def spin_half_ops() -> dict[str, np.ndarray]:
    """Standard spin-1/2 single-site operators (d=2).

    Returns a dict with keys "Sz", "Sx", "Sp", "Sm", "Id" (spin operators)
    and "X", "Z" (Pauli matrices).
    """
    return {
        "Sz": np.array([[0.5, 0.0], [0.0, -0.5]], dtype=np.float64),
        "Sx": np.array([[0.0, 0.5], [0.5, 0.0]], dtype=np.float64),
        "Sp": np.array([[0.0, 1.0], [0.0, 0.0]], dtype=np.float64),
        "Sm": np.array([[0.0, 0.0], [1.0, 0.0]], dtype=np.float64),
        "Id": np.eye(2, dtype=np.float64),
        "X": np.array([[0.0, 1.0], [1.0, 0.0]], dtype=np.float64),
        "Z": np.array([[1.0, 0.0], [0.0, -1.0]], dtype=np.float64),
    }


def site_indices(rows: int, cols: int, dim: int = 2) -> list[list[Index]]:
    """Physical indices of a ``rows x cols`` lattice, tagged by position."""
    return [
        [Index(dim, f"Site,r={r},c={c}") for c in range(cols)]
        for r in range(rows)
    ]


@dataclass(frozen=True, eq=False)
class LocalTerm:
    """One Hamiltonian term: coefficient * product of local operators.

    Attributes:
        coefficient: Real prefactor.
        ops: Tuple of ``((row, col), operator_matrix)`` pairs, one per site.
    """

    coefficient: float
    ops: tuple[tuple[Coord, np.ndarray], ...]

    def __post_init__(self) -> None:
        coords = [c for c, _ in self.ops]
        if len(set(coords)) != len(coords):
            raise ValueError(f"LocalTerm acts twice on a site: {coords}")

    @property
    def coords(self) -> tuple[Coord, ...]:
        return tuple(c for c, _ in self.ops)

    def operator_tensors(self, sites: list[list[Index]]) -> list[tuple[Coord, DenseTensor]]:
        """Operator tensors with indices ``(site, site')``.

        The coefficient is folded into the first operator.
        """
        out = []
        for k, ((r, c), op) in enumerate(self.ops):
            s = sites[r][c]
            data = jnp.asarray(op, dtype=jnp.float64)
            if k == 0:
                data = self.coefficient * data
            out.append(((r, c), DenseTensor(data, (s, s.prime()))))
        return out


def _bonds(rows: int, cols: int) -> list[tuple[Coord, Coord]]:
    bonds = []
    for r in range(rows):
        for c in range(cols):
            if c + 1 < cols:
                bonds.append(((r, c), (r, c + 1)))
            if r + 1 < rows:
                bonds.append(((r, c), (r + 1, c)))
    return bonds


def tfim_terms(rows: int, cols: int, h: float = 1.0) -> list[LocalTerm]:
    """Transverse-field Ising model with open boundaries.

    H = -sum_<ij> Z_i Z_j - h sum_i X_i
    """
    ops = spin_half_ops()
    terms = [LocalTerm(-1.0, ((a, ops["Z"]), (b, ops["Z"]))) for a, b in _bonds(rows, cols)]
    if h != 0.0:
        terms.extend(
            LocalTerm(-h, (((r, c), ops["X"]),))
            for r in range(rows)
            for c in range(cols)
        )
    return terms


def heisenberg_terms(rows: int, cols: int, J: float = 1.0) -> list[LocalTerm]:
    """Nearest-neighbour Heisenberg model with open boundaries.

    H = J sum_<ij> [Sz_i Sz_j + 1/2 (S+_i S-_j + S-_i S+_j)]
    """
    ops = spin_half_ops()
    terms = []
    for a, b in _bonds(rows, cols):
        terms.append(LocalTerm(J, ((a, ops["Sz"]), (b, ops["Sz"]))))
        terms.append(LocalTerm(0.5 * J, ((a, ops["Sp"]), (b, ops["Sm"]))))
        terms.append(LocalTerm(0.5 * J, ((a, ops["Sm"]), (b, ops["Sp"]))))
    return terms
