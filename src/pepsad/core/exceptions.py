"""Exception hierarchy for structural failures in network contraction.

All errors are local and non-recoverable: they are raised at the point of
detection and never retried. Numerical ill-conditioning is not an error.
"""

from __future__ import annotations


class TensorNetworkError(Exception):
    """Base class for all pepsad errors."""


class MalformedNetwork(TensorNetworkError, ValueError):
    """Index or tensor bookkeeping is inconsistent.

    Raised when an index appears on more than two tensors, when a
    requested free index is absent from (or contracted inside) the
    network, or when a network element has the wrong kind.
    """


class IndexMismatch(TensorNetworkError, ValueError):
    """Shapes and indices disagree, or a shared index has two dimensions."""


class ScalarDegenerateNode(TensorNetworkError, ValueError):
    """A symbolic graph input resolved to neither a value nor the unit scalar."""


class TruncationInfeasible(TensorNetworkError, ValueError):
    """The ``cutoff``/``max_dim`` pair would require a non-positive rank."""
