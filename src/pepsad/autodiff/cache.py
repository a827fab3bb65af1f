"""Topology-keyed cache of contraction graphs.

Repeated contractions of networks with the same shape (e.g. every step of
an optimization loop, where only tensor values change) reuse one
ContractionGraph. The key is a structural signature: leaves are numbered
by handle first appearance, indices by first appearance, and index
dimensions are included. Tensor values and raw handle numbers are not.

The cache never evicts on its own; its lifetime is owned by the caller
(typically one cache per optimization run).
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Hashable, Sequence
from typing import Any

from pepsad.autodiff.expression import ContractionGraph, generate_expression
from pepsad.core.index import Index
from pepsad.network.network import Group, Leaf, Network

logger = logging.getLogger(__name__)

Signature = tuple


def topology_signature(networks: Sequence[Network]) -> Signature:
    """Hashable description of a batch's structure.

    Two batches with equal signatures lower to identical contraction
    graphs.
    """
    handles: dict[int, int] = {}
    indices: dict[Index, int] = {}

    def walk(net: Network) -> tuple:
        if isinstance(net, Leaf):
            h = handles.setdefault(net.leaf.handle, len(handles))
            legs = tuple(
                (indices.setdefault(i, len(indices)), i.dim) for i in net.leaf.indices
            )
            return ("L", h, legs)
        return ("G",) + tuple(walk(c) for c in net.children)

    return tuple(walk(n) for n in networks)


def _is_batch(obj: Any) -> bool:
    return (
        isinstance(obj, (list, tuple))
        and len(obj) > 0
        and all(isinstance(n, (Leaf, Group)) for n in obj)
    )


class NetworkCache:
    """Thread-safe mapping from topology signature to ContractionGraph.

    Example:
        >>> cache = NetworkCache()
        >>> ctx = ContractionContext(cache=cache)
        >>> batch_tensor_contraction(networks, ctx)  # builds the graph
        >>> batch_tensor_contraction(networks, ctx)  # reuses it
        >>> cache.hits
        1
    """

    def __init__(self) -> None:
        self._graphs: dict[Hashable, ContractionGraph] = {}
        self._lock = threading.RLock()
        self.hits = 0
        self.misses = 0

    @staticmethod
    def key(networks_or_signature: Any, optimize: Any = "auto") -> Hashable:
        """Cache key for a batch of networks or a precomputed signature."""
        if _is_batch(networks_or_signature):
            networks_or_signature = topology_signature(networks_or_signature)
        return (networks_or_signature, repr(optimize))

    def get_or_build(
        self,
        networks_or_signature: Any,
        optimize: Any = "auto",
        builder: Callable[[], ContractionGraph] | None = None,
    ) -> ContractionGraph:
        """Return the cached graph, building it on a miss.

        Args:
            networks_or_signature: A batch of networks, or a signature from
                ``topology_signature``.
            optimize: Path strategy the graph is built with (part of the key).
            builder:  Zero-argument callable producing the graph. Required
                when a signature is passed instead of networks.

        Raises:
            ValueError: If a signature is given without a builder on a miss.
        """
        key = self.key(networks_or_signature, optimize)
        with self._lock:
            graph = self._graphs.get(key)
            if graph is not None:
                self.hits += 1
                logger.debug("Network cache hit (%d entries)", len(self._graphs))
                return graph

            self.misses += 1
            if builder is not None:
                graph = builder()
            elif _is_batch(networks_or_signature):
                graph, _ = generate_expression(networks_or_signature, optimize)
            else:
                raise ValueError("A builder is required to build a graph from a signature")
            self._graphs[key] = graph
            logger.debug("Network cache miss, stored %r", graph)
            return graph

    def invalidate(self, networks_or_signature: Any, optimize: Any = "auto") -> bool:
        """Drop one entry. Returns whether it was present."""
        key = self.key(networks_or_signature, optimize)
        with self._lock:
            return self._graphs.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._graphs.clear()
            self.hits = 0
            self.misses = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._graphs)

    def __contains__(self, networks_or_signature: object) -> bool:
        """Whether a graph for this topology is cached under any path strategy."""
        signature, _ = self.key(networks_or_signature)
        with self._lock:
            return any(sig == signature for sig, _ in self._graphs)
