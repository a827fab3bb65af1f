"""Core index and tensor classes."""

from pepsad.core.exceptions import (
    IndexMismatch,
    MalformedNetwork,
    ScalarDegenerateNode,
    TensorNetworkError,
    TruncationInfeasible,
)
from pepsad.core.index import Index
from pepsad.core.tensor import DenseTensor

# Floor for singular values before inverse square roots.
EPS = 1e-15

__all__ = [
    "EPS",
    "Index",
    "DenseTensor",
    "TensorNetworkError",
    "MalformedNetwork",
    "IndexMismatch",
    "ScalarDegenerateNode",
    "TruncationInfeasible",
]
