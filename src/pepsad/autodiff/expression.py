"""Symbolic contraction graph for batches of nested networks.

``generate_expression`` lowers a batch of networks to a DAG of einsum nodes:

- one VARIABLE node per distinct leaf handle (numbered by first appearance),
- one CONTRACT node per Group (optionally split into pairwise steps along
  an opt_einsum path),
- a SCALAR node standing for the constant ``1.0`` (an empty Group).

Every distinct Index in the batch gets one einsum symbol, and structurally
identical CONTRACT nodes are hash-consed, so subexpressions shared between
networks are computed once per evaluation. The graph holds no tensor
values; it can be evaluated and differentiated with any leaf values whose
index structure matches the batch it was built from.

Typical usage::

    arena = TensorArena()
    a, b, c = arena.register_many([A, B, C])
    outs = batch_tensor_contraction([SubNetwork(a, b, c)])
    loss, grads = value_and_grad(lambda outs: outs[0].scalar(), [SubNetwork(a, b, c)])
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any

import jax
import opt_einsum

from pepsad.autodiff.tape import Tape
from pepsad.contraction.strategies import ContractionContext
from pepsad.core.exceptions import ScalarDegenerateNode
from pepsad.core.index import Index
from pepsad.core.tensor import DenseTensor
from pepsad.network.network import Group, Leaf, LeafTensor, Network

logger = logging.getLogger(__name__)


class NodeKind(Enum):
    VARIABLE = "variable"
    CONTRACT = "contract"
    SCALAR = "scalar"


@dataclass(frozen=True, slots=True)
class SymbolicNode:
    """One node of a contraction graph.

    Attributes:
        id:         Position of the node in the graph.
        kind:       VARIABLE, CONTRACT or SCALAR.
        inputs:     Node ids consumed by a CONTRACT node.
        subscripts: Einsum subscripts of each input.
        output:     Einsum subscript of the node's result.
        position:   Leaf position of a VARIABLE node.
        value:      Constant of a SCALAR node (always 1.0).
    """

    id: int
    kind: NodeKind
    inputs: tuple[int, ...] = ()
    subscripts: tuple[str, ...] = ()
    output: str = ""
    position: int | None = None
    value: float | None = None

    @property
    def equation(self) -> str:
        return ",".join(self.subscripts) + "->" + self.output


class ContractionGraph:
    """Topologically ordered contraction DAG with designated outputs.

    Attributes:
        nodes:         All nodes; every node's inputs precede it.
        outputs:       One node id per network of the batch.
        num_variables: Number of distinct leaves.
        memo:          Per-graph store for strategy plans (e.g. trees).
    """

    def __init__(
        self,
        nodes: Sequence[SymbolicNode],
        outputs: Sequence[int],
        num_variables: int,
    ) -> None:
        self.nodes = tuple(nodes)
        self.outputs = tuple(outputs)
        self.num_variables = num_variables
        self.memo: dict[Any, Any] = {}

    def __len__(self) -> int:
        return len(self.nodes)

    def __repr__(self) -> str:
        n_contract = sum(1 for n in self.nodes if n.kind is NodeKind.CONTRACT)
        return (
            f"ContractionGraph(nodes={len(self.nodes)}, contractions={n_contract}, "
            f"variables={self.num_variables}, outputs={len(self.outputs)})"
        )


# ------------------------------------------------------------------ #
# Graph construction                                                 #
# ------------------------------------------------------------------ #

def ordered_leaves(networks: Sequence[Network]) -> list[LeafTensor]:
    """Distinct leaves of a batch, by handle, in first-appearance order."""
    seen: dict[int, LeafTensor] = {}
    for net in networks:
        for leaf in net.leaves():
            seen.setdefault(leaf.handle, leaf)
    return list(seen.values())


class _GraphBuilder:
    def __init__(self, optimize: Any) -> None:
        self.optimize = optimize
        self.nodes: list[SymbolicNode] = []
        self.symbols: dict[Index, str] = {}
        self.dims: dict[str, int] = {}
        self.variables: dict[int, int] = {}
        self.consed: dict[tuple, int] = {}
        self.scalar_id: int | None = None
        self.leaf_value_map: dict[int, LeafTensor] = {}

    def subs(self, indices: Sequence[Index]) -> str:
        out = []
        for idx in indices:
            sym = self.symbols.get(idx)
            if sym is None:
                sym = opt_einsum.get_symbol(len(self.symbols))
                self.symbols[idx] = sym
                self.dims[sym] = idx.dim
            out.append(sym)
        return "".join(out)

    def _add(self, **kwargs: Any) -> int:
        node = SymbolicNode(id=len(self.nodes), **kwargs)
        self.nodes.append(node)
        return node.id

    def scalar(self) -> int:
        if self.scalar_id is None:
            self.scalar_id = self._add(kind=NodeKind.SCALAR, value=1.0)
        return self.scalar_id

    def variable(self, leaf: LeafTensor) -> int:
        node_id = self.variables.get(leaf.handle)
        if node_id is None:
            node_id = self._add(
                kind=NodeKind.VARIABLE,
                output=self.subs(leaf.indices),
                position=len(self.variables),
            )
            self.variables[leaf.handle] = node_id
            self.leaf_value_map[node_id] = leaf
        return node_id

    def contraction(self, inputs: Sequence[int], output: str) -> int:
        subscripts = tuple(self.nodes[i].output for i in inputs)
        if len(inputs) == 1 and subscripts[0] == output:
            return inputs[0]
        key = (tuple(inputs), subscripts, output)
        node_id = self.consed.get(key)
        if node_id is None:
            node_id = self._add(
                kind=NodeKind.CONTRACT,
                inputs=tuple(inputs),
                subscripts=subscripts,
                output=output,
            )
            self.consed[key] = node_id
        return node_id

    def pairwise(self, inputs: list[int], output: str) -> int:
        """Split a multi-input contraction along an opt_einsum path."""
        terms = [self.nodes[i].output for i in inputs]
        shapes = [tuple(self.dims[c] for c in t) for t in terms]
        eq = ",".join(terms) + "->" + output
        path, _ = opt_einsum.contract_path(eq, *shapes, shapes=True, optimize=self.optimize)

        live = list(inputs)
        for step, contracted in enumerate(path):
            picked = [live[k] for k in contracted]
            for k in sorted(contracted, reverse=True):
                live.pop(k)
            if step == len(path) - 1:
                out = output
            else:
                needed = set(output)
                for i in live:
                    needed.update(self.nodes[i].output)
                out = ""
                for i in picked:
                    for c in self.nodes[i].output:
                        if c in needed and c not in out:
                            out += c
            live.append(self.contraction(picked, out))
        return live[-1]

    def build(self, net: Network) -> int:
        if isinstance(net, Leaf):
            return self.variable(net.leaf)
        inputs = [self.build(child) for child in net.children]
        inputs = [i for i in inputs if self.nodes[i].kind is not NodeKind.SCALAR]
        if not inputs:
            return self.scalar()
        output = self.subs(net.free_indices)
        if self.optimize and len(inputs) > 2:
            return self.pairwise(inputs, output)
        return self.contraction(inputs, output)


def generate_expression(
    networks: Sequence[Network],
    optimize: Any = "auto",
) -> tuple[ContractionGraph, dict[int, LeafTensor]]:
    """Lower a batch of networks to a ContractionGraph.

    Args:
        networks: Networks to contract; one graph output per network.
        optimize: opt_einsum path strategy used to split Groups with more
            than two inputs into pairwise steps. ``False`` keeps each
            Group as a single multi-input node.

    Returns:
        ``(graph, leaf_value_map)`` where ``leaf_value_map`` maps each
        VARIABLE node id to its LeafTensor.

    Raises:
        MalformedNetwork: If a network has an index in more than two places.
        TypeError:        If an element is not a network.
    """
    builder = _GraphBuilder(optimize)
    outputs = []
    for net in networks:
        if not isinstance(net, (Leaf, Group)):
            raise TypeError(f"Expected a network, got {type(net).__name__}")
        net.validate()
        outputs.append(builder.build(net))
    graph = ContractionGraph(builder.nodes, outputs, len(builder.variables))
    logger.debug("Generated %r", graph)
    return graph, builder.leaf_value_map


def topological_order(graph: ContractionGraph, outputs: Sequence[int] | None = None) -> list[SymbolicNode]:
    """Nodes reachable from ``outputs`` in dependency order."""
    outputs = graph.outputs if outputs is None else outputs
    needed: set[int] = set()
    stack = list(outputs)
    while stack:
        node_id = stack.pop()
        if node_id in needed:
            continue
        needed.add(node_id)
        stack.extend(graph.nodes[node_id].inputs)
    return [n for n in graph.nodes if n.id in needed]


def extract_network(
    graph: ContractionGraph,
    output: int,
    leaf_value_map: Mapping[int, LeafTensor],
) -> Network:
    """Rebuild the nested network that graph node ``output`` contracts."""
    node = graph.nodes[output]
    if node.kind is NodeKind.VARIABLE:
        return Leaf(leaf_value_map[node.id])
    if node.kind is NodeKind.SCALAR:
        return Group(())
    return Group(tuple(extract_network(graph, i, leaf_value_map) for i in node.inputs))


# ------------------------------------------------------------------ #
# Evaluation                                                         #
# ------------------------------------------------------------------ #

def _leaf_tensors(leaf_values: Sequence[Any]) -> list[DenseTensor]:
    return [v.tensor if isinstance(v, LeafTensor) else v for v in leaf_values]


def _run(
    graph: ContractionGraph,
    tape: Tape,
    leaf_slots: Sequence[int],
    context: ContractionContext,
) -> list[int]:
    """Realize every reachable node once on ``tape``; return output slots."""
    symbol_index: dict[str, Index] = {}
    for node in graph.nodes:
        if node.kind is NodeKind.VARIABLE and node.position < len(leaf_slots):
            inds = tape.value(leaf_slots[node.position]).indices
            symbol_index.update(zip(node.output, inds))

    contractor = context.contractor
    slots: dict[int, int] = {}
    unit: int | None = None

    def unit_slot() -> int:
        nonlocal unit
        if unit is None:
            unit = tape.constant(DenseTensor.from_scalar(1.0))
        return unit

    for node in topological_order(graph):
        if node.kind is NodeKind.SCALAR:
            continue
        if node.kind is NodeKind.VARIABLE:
            if node.position >= len(leaf_slots):
                raise ScalarDegenerateNode(
                    f"Variable node {node.id} has no bound leaf value "
                    f"(position {node.position}, {len(leaf_slots)} given)"
                )
            slots[node.id] = leaf_slots[node.position]
            continue

        inputs = []
        for i in node.inputs:
            src = graph.nodes[i]
            if src.kind is NodeKind.SCALAR and src.value == 1.0:
                continue
            if i not in slots:
                raise ScalarDegenerateNode(
                    f"Input {i} of node {node.id} resolves to neither a value "
                    f"nor the unit scalar"
                )
            inputs.append(slots[i])
        if not inputs:
            slots[node.id] = unit_slot()
            continue
        output_indices = [symbol_index[c] for c in node.output]
        slots[node.id] = contractor.contract(
            tape, inputs, output_indices, memo=graph.memo, key=node.id
        )

    out = []
    for node_id in graph.outputs:
        if graph.nodes[node_id].kind is NodeKind.SCALAR:
            out.append(unit_slot())
        else:
            out.append(slots[node_id])
    return out


def evaluate(
    graph: ContractionGraph,
    leaf_values: Sequence[Any],
    context: ContractionContext | None = None,
) -> list[DenseTensor]:
    """Evaluate every output of ``graph``.

    Args:
        graph:       Graph from generate_expression.
        leaf_values: Leaf tensors (or LeafTensors) in variable-position order.
        context:     Contraction context; defaults to exact contraction.

    Returns:
        One DenseTensor per graph output.

    Raises:
        ScalarDegenerateNode: If a node input cannot be resolved.
    """
    context = context or ContractionContext()
    tape = Tape()
    leaf_slots = [tape.constant(t) for t in _leaf_tensors(leaf_values)]
    return [tape.value(s) for s in _run(graph, tape, leaf_slots, context)]


def gradient(
    graph: ContractionGraph,
    leaf_values: Sequence[Any],
    cotangents: Sequence[Any],
    context: ContractionContext | None = None,
) -> tuple[list[DenseTensor], list[DenseTensor]]:
    """Reverse-mode gradient of the graph outputs.

    Args:
        graph:       Graph from generate_expression.
        leaf_values: Leaf tensors in variable-position order.
        cotangents:  One cotangent per output (array, DenseTensor, or None
                     for no contribution).
        context:     Contraction context.

    Returns:
        ``(outputs, grads)`` with one gradient DenseTensor per leaf, in the
        leaf's index order. A leaf reached from several outputs receives
        the sum of all contributions.
    """
    context = context or ContractionContext()
    tensors = _leaf_tensors(leaf_values)
    tape = Tape()
    leaf_slots = [tape.variable(t) for t in tensors]
    out_slots = _run(graph, tape, leaf_slots, context)
    grads = _backward(tape, tensors, leaf_slots, out_slots, cotangents)
    return [tape.value(s) for s in out_slots], grads


def _backward(
    tape: Tape,
    tensors: Sequence[DenseTensor],
    leaf_slots: Sequence[int],
    out_slots: Sequence[int],
    cotangents: Sequence[Any],
) -> list[DenseTensor]:
    # Hash-consed networks may share an output slot; their seeds add up.
    seeds: dict[int, Any] = {}
    for slot, ct in zip(out_slots, cotangents):
        if ct is None:
            continue
        if isinstance(ct, DenseTensor):
            ct = ct.permute(tape.value(slot).indices).todense()
        seeds[slot] = seeds[slot] + ct if slot in seeds else ct

    grads = tape.backward(seeds)
    return [
        DenseTensor(grads[slot], tensors[pos].indices)
        for pos, slot in enumerate(leaf_slots)
    ]


# ------------------------------------------------------------------ #
# One-call entry points                                              #
# ------------------------------------------------------------------ #

def _graph_for(networks: Sequence[Network], context: ContractionContext) -> ContractionGraph:
    if context.cache is not None:
        return context.cache.get_or_build(networks, optimize=context.graph_optimize)
    graph, _ = generate_expression(networks, context.graph_optimize)
    return graph


def batch_tensor_contraction(
    networks: Sequence[Network],
    context: ContractionContext | None = None,
) -> list[DenseTensor]:
    """Contract every network of a batch, sharing common subexpressions.

    Args:
        networks: Networks to contract.
        context:  Contraction context. When it carries a cache, the graph
                  is reused for batches with the same topology.

    Returns:
        One DenseTensor per network.
    """
    context = context or ContractionContext()
    graph = _graph_for(networks, context)
    leaves = ordered_leaves(networks)
    if context.verbose:
        print(f"  Contracting batch of {len(networks)} networks: {graph!r}")
    return evaluate(graph, leaves, context)


def value_and_grad(
    loss: Callable[[list[DenseTensor]], Any],
    networks: Sequence[Network],
    context: ContractionContext | None = None,
) -> tuple[jax.Array, dict[int, DenseTensor]]:
    """Value of a scalar loss of the network outputs and its leaf gradients.

    The loss receives the list of contracted DenseTensors and must return a
    scalar; it is differentiated with ``jax.value_and_grad`` to seed the
    reverse pass through the contraction graph.

    Args:
        loss:     Scalar function of the output tensors.
        networks: Networks to contract.
        context:  Contraction context.

    Returns:
        ``(loss_value, {handle: gradient})``
    """
    context = context or ContractionContext()
    graph = _graph_for(networks, context)
    leaves = ordered_leaves(networks)
    tensors = _leaf_tensors(leaves)

    tape = Tape()
    leaf_slots = [tape.variable(t) for t in tensors]
    out_slots = _run(graph, tape, leaf_slots, context)
    outputs = [tape.value(s) for s in out_slots]
    value, cotangents = jax.value_and_grad(loss)(outputs)
    grads = _backward(tape, tensors, leaf_slots, out_slots, cotangents)
    if context.verbose:
        print(f"  loss = {float(value):.10f} over {len(leaves)} leaves")
    return value, {leaf.handle: g for leaf, g in zip(leaves, grads)}
