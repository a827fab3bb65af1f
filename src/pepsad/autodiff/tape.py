"""Explicit reverse-mode tape over DenseTensor contractions.

Every value on the tape lives in an integer *slot*. Variables receive
gradients, constants do not, and every contraction records its einsum
equation so the backward pass can form vector-Jacobian products directly:
the VJP of ``einsum(s_0, ..., s_n -> o)`` with respect to operand ``k`` is
``einsum(o, s_j (j != k) -> s_k)``. Labels that only appear in ``s_k`` are
broadcast back over the operand's shape.

Gradients follow the real-valued convention (no conjugation).
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any

import jax
import jax.numpy as jnp
import opt_einsum

from pepsad.contraction.contractor import contract_with_subscripts, einsum_equation
from pepsad.core.index import Index
from pepsad.core.tensor import DenseTensor


@dataclass(frozen=True, slots=True)
class _ContractOp:
    inputs: tuple[int, ...]
    output: int
    input_subscripts: tuple[str, ...]
    output_subscript: str


@dataclass(frozen=True, slots=True)
class _ScaleOp:
    input: int
    output: int
    factor: Any


class Tape:
    """Record of forward contractions for a single reverse pass.

    Example:
        >>> tape = Tape()
        >>> a = tape.variable(A)
        >>> b = tape.constant(B)
        >>> out = tape.contract([a, b])
        >>> grads = tape.backward({out: jnp.ones(())})
        >>> grads[a]  # == B.todense() for a full contraction of A and B
    """

    def __init__(self) -> None:
        self._values: list[DenseTensor] = []
        self._requires_grad: list[bool] = []
        self._variables: list[int] = []
        self._ops: list[_ContractOp | _ScaleOp] = []

    def __len__(self) -> int:
        return len(self._values)

    def _push(self, tensor: DenseTensor, requires_grad: bool) -> int:
        self._values.append(tensor)
        self._requires_grad.append(requires_grad)
        return len(self._values) - 1

    # ------------------------------------------------------------------ #
    # Recording                                                          #
    # ------------------------------------------------------------------ #

    def variable(self, tensor: DenseTensor) -> int:
        """Record a differentiable input and return its slot."""
        if not isinstance(tensor, DenseTensor):
            raise TypeError(f"Expected DenseTensor, got {type(tensor).__name__}")
        slot = self._push(tensor, True)
        self._variables.append(slot)
        return slot

    def constant(self, tensor: DenseTensor) -> int:
        """Record an input that receives no gradient and return its slot."""
        if not isinstance(tensor, DenseTensor):
            raise TypeError(f"Expected DenseTensor, got {type(tensor).__name__}")
        return self._push(tensor, False)

    def contract(
        self,
        slots: Sequence[int],
        output_indices: Sequence[Index] | None = None,
        optimize: Any = "auto",
    ) -> int:
        """Contract the tensors in ``slots`` over shared indices.

        Args:
            slots:          Input slots; the same slot may appear twice.
            output_indices: Output order of the free indices.
            optimize:       opt_einsum path strategy.

        Returns:
            Slot of the contracted tensor.
        """
        slots = tuple(slots)
        if not slots:
            raise ValueError("Tape.contract() requires at least one slot")
        tensors = [self._values[s] for s in slots]
        subscripts, out = einsum_equation([t.indices for t in tensors], output_indices)
        lhs, rhs = subscripts.split("->")
        if len(slots) == 1 and lhs == rhs:
            return slots[0]

        result = contract_with_subscripts(tensors, subscripts, out, optimize)
        requires_grad = any(self._requires_grad[s] for s in slots)
        slot = self._push(result, requires_grad)
        if requires_grad:
            self._ops.append(_ContractOp(slots, slot, tuple(lhs.split(",")), rhs))
        return slot

    def scale(self, slot: int, factor: Any) -> int:
        """Multiply the tensor in ``slot`` by a constant factor."""
        result = self._values[slot] * factor
        out = self._push(result, self._requires_grad[slot])
        if self._requires_grad[slot]:
            self._ops.append(_ScaleOp(slot, out, factor))
        return out

    def value(self, slot: int) -> DenseTensor:
        return self._values[slot]

    @property
    def variables(self) -> tuple[int, ...]:
        return tuple(self._variables)

    # ------------------------------------------------------------------ #
    # Reverse pass                                                       #
    # ------------------------------------------------------------------ #

    def _seed(self, slot: int, cotangent: Any) -> jax.Array:
        target = self._values[slot]
        if isinstance(cotangent, DenseTensor):
            cotangent = cotangent.permute(target.indices).todense()
        cotangent = jnp.asarray(cotangent)
        return jnp.broadcast_to(cotangent, target.shape)

    def _operand_vjp(self, op: _ContractOp, k: int, upstream: jax.Array) -> jax.Array:
        target_subs = op.input_subscripts[k]
        others = [j for j in range(len(op.inputs)) if j != k]
        available = set(op.output_subscript)
        for j in others:
            available.update(op.input_subscripts[j])
        kept = "".join(c for c in target_subs if c in available)

        # Scalar operands (and a scalar upstream) are applied as factors so
        # every einsum term has a non-empty subscript.
        factor = upstream if not op.output_subscript else None
        terms: list[jax.Array] = []
        subs: list[str] = []
        if op.output_subscript:
            terms.append(upstream)
            subs.append(op.output_subscript)
        for j in others:
            value = self._values[op.inputs[j]].todense()
            if op.input_subscripts[j]:
                terms.append(value)
                subs.append(op.input_subscripts[j])
            else:
                factor = value if factor is None else factor * value

        lhs = ",".join(subs)
        if not terms:
            grad = jnp.ones((), upstream.dtype)
        elif lhs == kept:
            grad = terms[0]
        else:
            grad = opt_einsum.contract(f"{lhs}->{kept}", *terms, backend="jax")
        if factor is not None:
            grad = grad * factor

        if len(kept) != len(target_subs):
            for pos, c in enumerate(target_subs):
                if c not in available:
                    grad = jnp.expand_dims(grad, pos)
            grad = jnp.broadcast_to(grad, self._values[op.inputs[k]].shape)
        return grad

    def backward(self, cotangents: Mapping[int, Any]) -> dict[int, jax.Array]:
        """Propagate output cotangents back to every variable.

        Args:
            cotangents: ``{slot: cotangent}`` seeds. A cotangent is an array
                in the slot's index order (or a DenseTensor, which is
                aligned by index). Scalars broadcast.

        Returns:
            ``{variable_slot: gradient_array}`` for every variable on the
            tape, zeros where no path reaches the seeds.
        """
        grads: dict[int, jax.Array] = {}
        for slot, ct in cotangents.items():
            seed = self._seed(slot, ct)
            grads[slot] = grads[slot] + seed if slot in grads else seed

        for op in reversed(self._ops):
            upstream = grads.get(op.output)
            if upstream is None:
                continue
            if isinstance(op, _ScaleOp):
                contributions = [(op.input, upstream * op.factor)]
            else:
                contributions = [
                    (s, self._operand_vjp(op, k, upstream))
                    for k, s in enumerate(op.inputs)
                    if self._requires_grad[s]
                ]
            for s, g in contributions:
                grads[s] = grads[s] + g if s in grads else g

        return {
            v: grads.get(v, jnp.zeros(self._values[v].shape, self._values[v].dtype))
            for v in self._variables
        }
