"""Tensor index (leg) metadata with identity, tags and prime level.

Each leg of a tensor is described by an Index, which carries:
- The dimension of the leg
- A unique identity token assigned at construction
- A sorted tuple of string tags ("Site", "Lh,1,2", ...)
- A prime level used to distinguish bra/ket copies of the same leg

Two legs are the *same* index when identity, tags and prime level agree.
Shared indices across tensors are contracted automatically by contract().
The dimension is deliberately excluded from equality: a dimension
disagreement between equal indices is reported by the contractor.
"""

from __future__ import annotations

import itertools
from dataclasses import dataclass, field

_ids = itertools.count(1)


def _normalize_tags(tags: str | tuple[str, ...] | list[str]) -> tuple[str, ...]:
    if isinstance(tags, str):
        tags = tags.split(",") if tags else []
    return tuple(sorted({t.strip() for t in tags if t.strip()}))


@dataclass(frozen=True, slots=True)
class Index:
    """Metadata for one leg of a tensor.

    Index is frozen and slots-based; networks create many of these and
    they are used as dictionary keys throughout the contraction engine.

    Attributes:
        dim:  Bond dimension of this leg.
        tags: Sorted tuple of string tags.
        plev: Prime level (0 for unprimed).
        id:   Identity token. Fresh for every constructed index unless
              given explicitly.

    Example:
        >>> i = Index(2, "Site")
        >>> i.prime() == i
        False
        >>> i.prime().noprime() == i
        True
    """

    dim: int
    tags: tuple[str, ...] = ()
    plev: int = 0
    id: int = field(default_factory=lambda: next(_ids))

    def __post_init__(self) -> None:
        if int(self.dim) < 1:
            raise ValueError(f"Index dim must be >= 1, got {self.dim}")
        if self.plev < 0:
            raise ValueError(f"Index prime level must be >= 0, got {self.plev}")
        object.__setattr__(self, "dim", int(self.dim))
        object.__setattr__(self, "tags", _normalize_tags(self.tags))

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Index):
            return NotImplemented
        return (
            self.id == other.id
            and self.plev == other.plev
            and self.tags == other.tags
        )

    def __hash__(self) -> int:
        return hash((self.id, self.plev, self.tags))

    def __repr__(self) -> str:
        tags = ",".join(self.tags)
        primes = "'" * self.plev
        return f"Index(dim={self.dim}|id={self.id}|{tags!r}){primes}"

    def _replace(self, **changes) -> Index:
        values = {
            "dim": self.dim,
            "tags": self.tags,
            "plev": self.plev,
            "id": self.id,
        }
        values.update(changes)
        return Index(**values)

    def prime(self, n: int = 1) -> Index:
        """Return the index with its prime level raised by ``n``."""
        return self._replace(plev=self.plev + n)

    def setprime(self, plev: int) -> Index:
        return self._replace(plev=plev)

    def noprime(self) -> Index:
        return self._replace(plev=0)

    def addtags(self, *tags: str) -> Index:
        """Return the index with additional tags.

        Args:
            *tags: Tags to add. Each entry may itself be a comma-separated
                string, e.g. ``addtags("Lh,1,2")``.
        """
        extra: list[str] = []
        for t in tags:
            extra.extend(_normalize_tags(t))
        return self._replace(tags=self.tags + tuple(extra))

    def removetags(self, *tags: str) -> Index:
        drop: set[str] = set()
        for t in tags:
            drop.update(_normalize_tags(t))
        return self._replace(tags=tuple(t for t in self.tags if t not in drop))

    def hastags(self, *tags: str) -> bool:
        want: set[str] = set()
        for t in tags:
            want.update(_normalize_tags(t))
        return want.issubset(self.tags)

    def sim(self) -> Index:
        """Return a similar index: same dim, tags and prime level, new identity."""
        return Index(self.dim, self.tags, self.plev)
