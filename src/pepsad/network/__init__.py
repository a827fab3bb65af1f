"""Nested networks, leaf arenas and finite PEPS."""

from pepsad.network.network import (
    Group,
    Leaf,
    LeafTensor,
    Network,
    SubNetwork,
    TensorArena,
    flatten,
    neighboring_tensors,
)
from pepsad.network.peps import (
    PEPS,
    inner_network,
    inner_networks,
    line_axis,
    line_network,
    line_tree,
    rayleigh_quotient,
    register,
    term_network,
)

__all__ = [
    "LeafTensor",
    "TensorArena",
    "Leaf",
    "Group",
    "Network",
    "SubNetwork",
    "flatten",
    "neighboring_tensors",
    "PEPS",
    "register",
    "inner_network",
    "term_network",
    "inner_networks",
    "line_axis",
    "line_network",
    "line_tree",
    "rayleigh_quotient",
]
