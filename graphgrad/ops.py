from typing import Any, Dict, Hashable, List, Optional, Sequence, Tuple

import numpy as np

from graphgrad.backend import xp_of
from graphgrad.errors import ValidationError
from graphgrad.node import Node


class TensorOp:
    """
    Unit of computation for one operation kind.

    A single instance serves every node bound to its key, so implementations
    keep per-node state in ``node.aux`` and never on ``self``.

    Subclasses implement :meth:`forward_pass` and :meth:`backward_pass`.
    :meth:`ensure_valid` checks arity by default and also runs
    :meth:`output_shape`, which operations may override to report the shape
    they produce so that declared node shapes get checked against it.
    """
    key: str = ""
    arity: int = 1

    def ensure_valid(self, children: Sequence[Node]) -> None:
        """
        Check that the operation can run on ``children``.

        Raises
        ------
        ValidationError
            Naming this operation and the offending nodes.
        """
        if len(children) != self.arity:
            raise ValidationError(
                self.key, children, f"expected {self.arity} operand(s), got {len(children)}"
            )
        self.output_shape(children)

    def output_shape(self, children: Sequence[Node]) -> Optional[Tuple[int, ...]]:
        """
        Shape produced for ``children``, or ``None`` when the operation does not say.

        Raises ``ValidationError`` if the children admit no result.
        """
        return None

    def prep(self, node: Node) -> Node:
        """Attach operation scratch state to ``node.aux``; must not touch tensor contents."""
        return node

    def forward_pass(self, node: Node) -> Node:
        """Write ``node.value`` from the children's values."""
        raise NotImplementedError

    def backward_pass(self, node: Node) -> Node:
        """Add this node's contribution into every child's ``grad``."""
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"{type(self).__name__}(key={self.key!r})"


def trivial_batch_forward_pass(tensor_op: TensorOp, nodes: Sequence[Node]) -> List[Node]:
    return [tensor_op.forward_pass(n) for n in nodes]


def trivial_batch_backward_pass(tensor_op: TensorOp, nodes: Sequence[Node]) -> List[Node]:
    return [tensor_op.backward_pass(n) for n in nodes]


class BatchTensorOp(TensorOp):
    """
    Operation that can evaluate several compatible nodes in one call.

    Nodes with equal :meth:`batch_signature` are handed to
    :meth:`batch_forward_pass` / :meth:`batch_backward_pass` together. The
    defaults fall back to per-node evaluation in list order; overrides must be
    observably equivalent to it.
    """
    def batch_signature(self, node: Node) -> Hashable:
        return (self.key, node.shape, tuple(c.shape for c in node.children))

    def batch_forward_pass(self, signature: Hashable, nodes: Sequence[Node]) -> List[Node]:
        return trivial_batch_forward_pass(self, nodes)

    def batch_backward_pass(self, signature: Hashable, nodes: Sequence[Node]) -> List[Node]:
        return trivial_batch_backward_pass(self, nodes)


def _unbroadcast(x: Any, target_shape: Tuple[int, ...]) -> Any:
    """
    Reduce a broadcasted gradient ``x`` back to ``target_shape`` by summing over broadcasted axes.
    """
    while x.ndim > len(target_shape):
        x = x.sum(axis=0)
    for i, (g, t) in enumerate(zip(x.shape, target_shape)):
        if g != t:
            x = x.sum(axis=i, keepdims=True)

    return x.reshape(target_shape)


def _accumulate_grad(node: Node, grad: Any) -> None:
    """
    Add ``grad`` into ``node.grad`` in place.

    Nodes without a gradient buffer (``input`` and ``constant``) are skipped.
    Accumulation, not assignment: a node may feed its parent through several
    edges.
    """
    if node.grad is not None:
        node.grad += _unbroadcast(grad, node.grad.shape)


def _lift(x: Any, ndim: int) -> Any:
    """Prepend unit axes so ``x`` broadcasts against ``ndim`` dims after stacking."""
    return x.reshape((1,) * (ndim - x.ndim) + tuple(x.shape))


class _BinaryElementwiseOp(BatchTensorOp):
    arity = 2

    def output_shape(self, children: Sequence[Node]) -> Tuple[int, ...]:
        a, b = children
        try:
            return tuple(np.broadcast_shapes(a.shape, b.shape))
        except ValueError:
            raise ValidationError(
                self.key, children, f"shapes {a.shape} and {b.shape} do not broadcast"
            ) from None

    def _apply(self, xp: Any, a: Any, b: Any, out: Any = None) -> Any:
        raise NotImplementedError

    def _partials(self, a: Any, b: Any, g: Any) -> Tuple[Any, Any]:
        raise NotImplementedError

    def forward_pass(self, node: Node) -> Node:
        a, b = node.children
        self._apply(xp_of(node.value), a.value, b.value, out=node.value)
        return node

    def backward_pass(self, node: Node) -> Node:
        a, b = node.children
        ga, gb = self._partials(a.value, b.value, node.grad)
        _accumulate_grad(a, ga)
        _accumulate_grad(b, gb)
        return node

    def _stack_children(self, nodes: Sequence[Node], idx: int) -> Any:
        ndim = len(nodes[0].shape)
        xp = xp_of(nodes[0].value)
        return xp.stack([_lift(n.children[idx].value, ndim) for n in nodes])

    def batch_forward_pass(self, signature: Hashable, nodes: Sequence[Node]) -> List[Node]:
        xp = xp_of(nodes[0].value)
        out = self._apply(xp, self._stack_children(nodes, 0), self._stack_children(nodes, 1))
        for i, n in enumerate(nodes):
            n.value[...] = out[i]
        return list(nodes)

    def batch_backward_pass(self, signature: Hashable, nodes: Sequence[Node]) -> List[Node]:
        xp = xp_of(nodes[0].value)
        g = xp.stack([n.grad for n in nodes])
        ga, gb = self._partials(self._stack_children(nodes, 0), self._stack_children(nodes, 1), g)
        for i, n in enumerate(nodes):
            a, b = n.children
            _accumulate_grad(a, xp.broadcast_to(ga, g.shape)[i])
            _accumulate_grad(b, xp.broadcast_to(gb, g.shape)[i])
        return list(nodes)


class AddOp(_BinaryElementwiseOp):
    key = "add"

    def _apply(self, xp, a, b, out=None):
        return xp.add(a, b, out=out)

    def _partials(self, a, b, g):
        return g, g


class SubOp(_BinaryElementwiseOp):
    key = "sub"

    def _apply(self, xp, a, b, out=None):
        return xp.subtract(a, b, out=out)

    def _partials(self, a, b, g):
        return g, -g


class MulOp(_BinaryElementwiseOp):
    key = "mul"

    def _apply(self, xp, a, b, out=None):
        return xp.multiply(a, b, out=out)

    def _partials(self, a, b, g):
        # product rule
        return g * b, g * a


class MatMulOp(BatchTensorOp):
    """
    Matrix multiply with NumPy semantics for operands of rank >= 2.

    ``(..., m, k) @ (..., k, n) -> (..., m, n)``; leading batch dims broadcast.
    Batched evaluation uses the per-node fallback.
    """
    key = "matmul"
    arity = 2

    def output_shape(self, children):
        a, b = children
        if len(a.shape) < 2 or len(b.shape) < 2:
            raise ValidationError(self.key, children, "operands must have rank >= 2")
        if a.shape[-1] != b.shape[-2]:
            raise ValidationError(
                self.key, children, f"inner dimensions differ: {a.shape[-1]} vs {b.shape[-2]}"
            )
        try:
            batch = tuple(np.broadcast_shapes(a.shape[:-2], b.shape[:-2]))
        except ValueError:
            raise ValidationError(
                self.key, children, f"batch dims {a.shape[:-2]} and {b.shape[:-2]} do not broadcast"
            ) from None
        return batch + (a.shape[-2], b.shape[-1])

    def forward_pass(self, node):
        a, b = node.children
        xp_of(node.value).matmul(a.value, b.value, out=node.value)
        return node

    def backward_pass(self, node):
        a, b = node.children
        xp = xp_of(node.value)
        g = node.grad
        _accumulate_grad(a, xp.matmul(g, xp.swapaxes(b.value, -1, -2)))
        _accumulate_grad(b, xp.matmul(xp.swapaxes(a.value, -1, -2), g))
        return node


class _UnaryElementwiseOp(BatchTensorOp):
    arity = 1

    def output_shape(self, children):
        return tuple(children[0].shape)

    def _apply(self, xp: Any, x: Any, out: Any = None) -> Any:
        raise NotImplementedError

    def _derivative(self, xp: Any, x: Any, y: Any) -> Any:
        """d(out)/d(x) elementwise, given input ``x`` and output ``y``."""
        raise NotImplementedError

    def forward_pass(self, node):
        x = node.children[0].value
        self._apply(xp_of(node.value), x, out=node.value)
        return node

    def backward_pass(self, node):
        child = node.children[0]
        xp = xp_of(node.value)
        _accumulate_grad(child, node.grad * self._derivative(xp, child.value, node.value))
        return node

    def batch_forward_pass(self, signature, nodes):
        xp = xp_of(nodes[0].value)
        out = self._apply(xp, xp.stack([n.children[0].value for n in nodes]))
        for i, n in enumerate(nodes):
            n.value[...] = out[i]
        return list(nodes)

    def batch_backward_pass(self, signature, nodes):
        xp = xp_of(nodes[0].value)
        x = xp.stack([n.children[0].value for n in nodes])
        y = xp.stack([n.value for n in nodes])
        g = xp.stack([n.grad for n in nodes]) * self._derivative(xp, x, y)
        for i, n in enumerate(nodes):
            _accumulate_grad(n.children[0], g[i])
        return list(nodes)


class ExpOp(_UnaryElementwiseOp):
    key = "exp"

    def _apply(self, xp, x, out=None):
        return xp.exp(x, out=out)

    def _derivative(self, xp, x, y):
        return y


class LogOp(_UnaryElementwiseOp):
    key = "log"

    def _apply(self, xp, x, out=None):
        return xp.log(x, out=out)

    def _derivative(self, xp, x, y):
        return 1.0 / x


class TanhOp(_UnaryElementwiseOp):
    key = "tanh"

    def _apply(self, xp, x, out=None):
        return xp.tanh(x, out=out)

    def _derivative(self, xp, x, y):
        return 1 - y * y


class SigmoidOp(_UnaryElementwiseOp):
    key = "sigmoid"

    def _apply(self, xp, x, out=None):
        y = 1 / (1 + xp.exp(-x))
        if out is None:
            return y
        out[...] = y
        return out

    def _derivative(self, xp, x, y):
        return y * (1 - y)


class ReLUOp(_UnaryElementwiseOp):
    key = "relu"

    def _apply(self, xp, x, out=None):
        return xp.maximum(x, 0, out=out)

    def _derivative(self, xp, x, y):
        return (x > 0).astype(y.dtype)


class SumOp(BatchTensorOp):
    """Sum of all elements, producing a scalar of shape ``()``."""
    key = "sum"
    arity = 1

    def output_shape(self, children):
        return ()

    def forward_pass(self, node):
        node.value[...] = node.children[0].value.sum()
        return node

    def backward_pass(self, node):
        child = node.children[0]
        xp = xp_of(node.value)
        _accumulate_grad(child, xp.broadcast_to(node.grad, child.value.shape))
        return node


def default_ops() -> Dict[str, TensorOp]:
    """Fresh registry of the built-in operations, keyed by operation key."""
    ops = [AddOp(), SubOp(), MulOp(), MatMulOp(), ExpOp(), LogOp(), TanhOp(), SigmoidOp(), ReLUOp(), SumOp()]
    return {op.key: op for op in ops}
