"""Reverse-mode differentiation through batched contraction graphs."""

from pepsad.autodiff.cache import NetworkCache, topology_signature
from pepsad.autodiff.expression import (
    ContractionGraph,
    NodeKind,
    SymbolicNode,
    batch_tensor_contraction,
    evaluate,
    extract_network,
    generate_expression,
    gradient,
    ordered_leaves,
    topological_order,
    value_and_grad,
)
from pepsad.autodiff.tape import Tape

__all__ = [
    "Tape",
    "NodeKind",
    "SymbolicNode",
    "ContractionGraph",
    "generate_expression",
    "topological_order",
    "ordered_leaves",
    "evaluate",
    "gradient",
    "extract_network",
    "batch_tensor_contraction",
    "value_and_grad",
    "NetworkCache",
    "topology_signature",
]
