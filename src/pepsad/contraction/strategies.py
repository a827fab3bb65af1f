"""Contraction strategies and the explicit contraction context.

A ``ContractionContext`` carries every knob of a contraction call: the
strategy, the truncation parameters and an optional topology cache. It is
created and owned by the caller and passed explicitly; nothing here is
process-global.

Strategies (``ContractionStrategy``):
    EXACT: one multi-operand einsum per graph node.
    TREE:  bisection tree over the node's inputs, contracted with bounded
           bipartition rank (see ``contraction.tree``).
    MPS:   exact contraction followed by a left-canonical MPS truncation
           of the result, contracted back to a dense tensor.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import MutableMapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from pepsad.contraction.contractor import _check_truncation_params, truncated_svd
from pepsad.contraction.tree import BinaryTree, build_tree, contract_tree_on_tape
from pepsad.core.index import Index
from pepsad.core.tensor import DenseTensor

if TYPE_CHECKING:
    from pepsad.autodiff.cache import NetworkCache
    from pepsad.autodiff.tape import Tape

logger = logging.getLogger(__name__)


class ContractionStrategy(Enum):
    """How a graph node's inputs are contracted."""

    EXACT = "exact"
    TREE = "tree"
    MPS = "mps"


class Contractor(ABC):
    """Contracts a set of tape slots into one output slot."""

    @abstractmethod
    def contract(
        self,
        tape: Tape,
        slots: Sequence[int],
        output_indices: Sequence[Index] | None = None,
        memo: MutableMapping[Any, Any] | None = None,
        key: Any = None,
    ) -> int:
        """Contract ``slots`` on ``tape``.

        Args:
            tape:           Tape holding the input values.
            slots:          Input slots.
            output_indices: Output index order, None for first-seen order.
            memo:           Optional per-graph memo for reusable plans.
            key:            Memo key of the calling graph node.

        Returns:
            Slot of the result.
        """


class ExactContractor(Contractor):
    def __init__(self, optimize: Any = "auto") -> None:
        self.optimize = optimize

    def contract(self, tape, slots, output_indices=None, memo=None, key=None) -> int:
        return tape.contract(slots, output_indices, optimize=self.optimize)


class TreeContractor(Contractor):
    """Bounded-rank contraction along a bisection tree.

    The tree only depends on the index structure of the inputs, so it is
    memoized under ``key`` when a memo is supplied.
    """

    def __init__(self, cutoff: float = 0.0, max_dim: int | None = None) -> None:
        _check_truncation_params(cutoff, max_dim)
        self.cutoff = cutoff
        self.max_dim = max_dim

    def contract(self, tape, slots, output_indices=None, memo=None, key=None) -> int:
        slots = list(slots)
        if len(slots) == 1:
            return tape.contract(slots, output_indices)
        tensors = [tape.value(s) for s in slots]

        tree: BinaryTree[int] | None = None
        if memo is not None and key is not None:
            tree = memo.get(("tree", key))
        if tree is None:
            free = output_indices if output_indices is not None else ()
            tree = build_tree(tensors, free)
            if memo is not None and key is not None:
                memo[("tree", key)] = tree

        root = contract_tree_on_tape(
            tape, tree, slots, cutoff=self.cutoff, max_dim=self.max_dim
        )
        return tape.contract([root], output_indices)


class MPSContractor(Contractor):
    """Exact contraction re-expressed as a truncated left-canonical MPS.

    The exact result ``T`` is split by sequential truncated SVDs into
    isometries ``A_1 ... A_{n-1}``; the representative is
    ``A_1 ... A_{n-1} A_{n-1}^T ... A_1^T T``. The isometries are tape
    constants. If no split discards weight, ``T`` itself is returned.
    """

    def __init__(
        self,
        cutoff: float = 0.0,
        max_dim: int | None = None,
        optimize: Any = "auto",
    ) -> None:
        _check_truncation_params(cutoff, max_dim)
        self.cutoff = cutoff
        self.max_dim = max_dim
        self.optimize = optimize

    def contract(self, tape, slots, output_indices=None, memo=None, key=None) -> int:
        exact_slot = tape.contract(slots, output_indices, optimize=self.optimize)
        exact = tape.value(exact_slot)
        if exact.ndim <= 1:
            return exact_slot

        inds = exact.indices
        isometries = []
        rest = exact
        prev_bond: Index | None = None
        truncated = False
        for k in range(len(inds) - 1):
            left = ([prev_bond] if prev_bond is not None else []) + [inds[k]]
            left_dim = _dim(left)
            full_rank = min(left_dim, rest.size // left_dim)
            u, s, vh, discarded = truncated_svd(
                rest, left, max_dim=self.max_dim, cutoff=self.cutoff,
                bond_tags=f"Link,l={k + 1}",
            )
            truncated = truncated or (s.shape[0] < full_rank and discarded > 0.0)
            isometries.append(u)
            rest = DenseTensor(
                s.reshape((-1,) + (1,) * (vh.ndim - 1)) * vh.todense(), vh.indices
            )
            prev_bond = u.indices[-1]

        if not truncated:
            return exact_slot

        iso_slots = [tape.constant(u) for u in isometries]
        slot = exact_slot
        for u_slot in iso_slots:
            slot = tape.contract([u_slot, slot])
        for u_slot in reversed(iso_slots):
            slot = tape.contract([u_slot, slot])
        logger.debug("MPS truncation applied over %d indices", len(inds))
        return tape.contract([slot], inds if output_indices is None else output_indices)


def _dim(indices: Sequence[Index]) -> int:
    out = 1
    for idx in indices:
        out *= idx.dim
    return out


def make_contractor(
    strategy: ContractionStrategy,
    cutoff: float = 0.0,
    max_dim: int | None = None,
    optimize: Any = "auto",
) -> Contractor:
    """Instantiate the Contractor implementing ``strategy``.

    Raises:
        TypeError: If ``strategy`` is not a ContractionStrategy.
    """
    if not isinstance(strategy, ContractionStrategy):
        raise TypeError(
            f"strategy must be a ContractionStrategy, got {strategy!r}"
        )
    if strategy is ContractionStrategy.EXACT:
        return ExactContractor(optimize)
    if strategy is ContractionStrategy.TREE:
        return TreeContractor(cutoff, max_dim)
    return MPSContractor(cutoff, max_dim, optimize)


@dataclass
class ContractionContext:
    """Configuration for graph evaluation and differentiation.

    Attributes:
        strategy: How each graph node is contracted.
        cutoff:   Maximum relative discarded weight per truncation.
        max_dim:  Maximum bond rank per truncation, None for unbounded.
        optimize: opt_einsum path strategy used to split multi-input nodes
                  into pairwise steps. ``False`` keeps nodes whole.
        cache:    Optional NetworkCache reused across calls with the same
                  topology. Owned by the caller.
        verbose:  Print graph construction and evaluation summaries.
    """

    strategy: ContractionStrategy = ContractionStrategy.EXACT
    cutoff: float = 1e-15
    max_dim: int | None = None
    optimize: Any = "auto"
    cache: NetworkCache | None = None
    verbose: bool = False
    _contractor: Contractor | None = field(default=None, init=False, repr=False)

    def __post_init__(self) -> None:
        if not isinstance(self.strategy, ContractionStrategy):
            raise TypeError(
                f"strategy must be a ContractionStrategy, got {self.strategy!r}"
            )
        _check_truncation_params(self.cutoff, self.max_dim)

    @property
    def graph_optimize(self) -> Any:
        """Path strategy for splitting graph nodes; TREE keeps nodes whole."""
        if self.strategy is ContractionStrategy.TREE:
            return False
        return self.optimize

    @property
    def contractor(self) -> Contractor:
        if self._contractor is None:
            self._contractor = make_contractor(
                self.strategy, self.cutoff, self.max_dim, self.optimize
            )
        return self._contractor
