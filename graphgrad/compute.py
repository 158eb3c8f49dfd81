"""
Compiled graph execution: tensor binding, forward evaluation and backward
gradient propagation over a DAG of :class:`~graphgrad.node.Node`.

A typical cycle::

    out = forward_pass(target, model, {"x": x})
    loss = float(out.value)
    seed_grad(out, model)
    backward_pass(out)

Per-call buffers come from the factory's :class:`~graphgrad.pool.TensorPool`
and are all returned to it by :func:`backward_pass`. Read any value you need
before calling it.
"""
import logging
from typing import Any, Callable, Dict, Hashable, Iterable, List, Mapping, Optional, Sequence, Tuple

from graphgrad.errors import MissingInputError, UnrecognizedNodeTypeError, ValidationError
from graphgrad.factory import TensorFactory
from graphgrad.graph import bottom_up_walk, post_order_nodes
from graphgrad.node import Node, NodeType
from graphgrad.ops import BatchTensorOp, TensorOp

logger = logging.getLogger(__name__)

_SLOTS = ("value", "grad")


class ReleaseTable:
    """
    Per-call side table pairing pooled buffers with their release callbacks.

    Entries are keyed by ``(ref_name, slot)`` with ``slot`` in
    ``{"value", "grad"}``. Releasing pops the entry, so each callback runs at
    most once and releasing an unknown slot does nothing.
    """
    def __init__(self) -> None:
        self._callbacks: Dict[Tuple[str, str], Callable[[], None]] = {}

    def register(self, ref_name: str, slot: str, release_fn: Callable[[], None]) -> None:
        if slot not in _SLOTS:
            raise ValueError(f"Unknown tensor slot: {slot!r}")
        self._callbacks[(ref_name, slot)] = release_fn

    def release(self, ref_name: str, slot: str) -> bool:
        """Run and forget the callback for ``(ref_name, slot)``. Returns whether one ran."""
        release_fn = self._callbacks.pop((ref_name, slot), None)
        if release_fn is None:
            return False
        release_fn()
        return True

    def __len__(self) -> int:
        return len(self._callbacks)

    def __contains__(self, key: Tuple[str, str]) -> bool:
        return key in self._callbacks


def ensure_tensor_op(factory: TensorFactory, result_node: Node, arg_nodes: Sequence[Node]) -> TensorOp:
    """
    Resolve and validate the operation for ``result_node``.

    Raises
    ------
    UnknownOperationError
        If ``result_node.op_key`` is not registered with ``factory``.
    ValidationError
        If the operation rejects ``arg_nodes`` or reports a shape other than
        the node's declared one.
    """
    tensor_op = factory.get_op(result_node.op_key)
    tensor_op.ensure_valid(arg_nodes)
    shape = tensor_op.output_shape(arg_nodes)
    if shape is not None and tuple(shape) != result_node.shape:
        raise ValidationError(
            result_node.op_key,
            [result_node, *arg_nodes],
            f"produces shape {shape}, node {result_node.ref_name!r} declares {result_node.shape}",
        )
    return tensor_op


def ensure_tensor(node: Node, slot: str, factory: TensorFactory, releases: ReleaseTable) -> Node:
    """
    Bind a pooled buffer to ``node.<slot>`` and record how to give it back.

    Gradient buffers are zero-filled here; pooled buffers come back dirty and
    backward passes only ever add into them.
    """
    t, release_fn = factory.pool.acquire(node.shape)
    if slot == "grad":
        factory.fill(t, 0.0)
    setattr(node, slot, t)
    releases.register(node.ref_name, slot, release_fn)
    node.releases = releases
    return node


def release_tensor(node: Node, slot: str) -> None:
    if node.releases is not None:
        node.releases.release(node.ref_name, slot)


def with_tensors(node: Node, model: Any, releases: ReleaseTable) -> Node:
    factory = model.tensor_factory()
    if node.type == NodeType.INPUT:
        return ensure_tensor(node, "value", factory, releases)
    elif node.type == NodeType.CONSTANT:
        # per-call copy; the template keeps its host array
        node.value = factory.asarray(node.value)
        return node
    elif node.type == NodeType.PARAMS:
        # shared, model-owned tensors
        return model.canonical_node(node.ref_name)
    elif node.type == NodeType.OP:
        node = ensure_tensor(node, "value", factory, releases)
        return ensure_tensor(node, "grad", factory, releases)
    else:
        raise UnrecognizedNodeTypeError(node.type)


def with_tensor_op(node: Node, factory: TensorFactory) -> Node:
    if node.type != NodeType.OP:
        return node
    tensor_op = ensure_tensor_op(factory, node, node.children)
    node = tensor_op.prep(node)
    node.tensor_op = tensor_op
    return node


def compile_node(
    node: Node,
    factory: TensorFactory,
    input_to_vals: Mapping[str, Any],
    model: Any,
    releases: ReleaseTable,
) -> Node:
    """
    Prepare one node for evaluation.

    Binds tensors, binds and validates the operation of ``op`` nodes and copies
    the caller's value into ``input`` nodes. ``params`` nodes come back as the
    model's canonical node.
    """
    node = with_tensors(node, model, releases)
    node = with_tensor_op(node, factory)
    if node.type == NodeType.INPUT:
        try:
            vals = input_to_vals[node.ref_name]
        except KeyError:
            raise MissingInputError(node.ref_name) from None
        factory.copy_from_input(node.value, vals)
    logger.debug("compiled node %r shape=%s", node.ref_name, node.shape)
    return node


def validate_input_keys(nodes: Iterable[Node], input_to_vals: Mapping[str, Any]) -> None:
    """
    Check that every ``input`` node among ``nodes`` has a supplied value.

    Raises
    ------
    MissingInputError
        For the first ``input`` reference name absent from ``input_to_vals``.
    """
    for n in nodes:
        if n.type == NodeType.INPUT and n.ref_name not in input_to_vals:
            raise MissingInputError(n.ref_name)


def _forward_internal(node: Node) -> Node:
    if node.is_leaf:
        # leaf values are bound at compile time
        return node
    return node.tensor_op.forward_pass(node)


def forward_pass(
    target: Node,
    model: Any,
    input_to_vals: Optional[Mapping[str, Any]] = None,
) -> Node:
    """
    Evaluate every node ``target`` depends on, children before parents.

    Each distinct reference name is compiled and computed exactly once, no
    matter how many parents share it.

    Parameters
    ----------
    target : Node
        Root of the graph to evaluate. It is not modified; a decorated copy of
        the graph is returned.
    model : Model
        Provides the tensor factory and the canonical parameter nodes.
    input_to_vals : mapping of str to array-like, optional
        Value for every ``input`` node, keyed by reference name.

    Returns
    -------
    Node
        The evaluated target. Values of any reachable node are available
        through its ``children``.

    Raises
    ------
    MissingInputError
        Before any buffer is acquired, if an ``input`` value is missing.
    UnknownOperationError, ValidationError, UnrecognizedNodeTypeError
        While compiling. Buffers already acquired by the aborted call are not
        returned to the pool.
    """
    input_to_vals = {} if input_to_vals is None else input_to_vals
    nodes = post_order_nodes(target)
    factory = model.tensor_factory()
    validate_input_keys(nodes, input_to_vals)
    releases = ReleaseTable()
    computed_nodes: Dict[str, Node] = {}

    def walk_fn(node: Node) -> Node:
        computed = computed_nodes.get(node.ref_name)
        if computed is not None:
            return computed
        ref_name = node.ref_name
        node = compile_node(node, factory, input_to_vals, model, releases)
        node = _forward_internal(node)
        computed_nodes[ref_name] = node
        return node

    out = bottom_up_walk(target, walk_fn)
    logger.debug("forward pass over %d nodes, %d pooled buffers", len(nodes), len(releases))
    return out


def _release_all(nodes: Iterable[Node]) -> None:
    for n in nodes:
        if n.type == NodeType.INPUT:
            release_tensor(n, "value")
        elif n.type == NodeType.CONSTANT:
            pass
        elif n.type == NodeType.OP:
            release_tensor(n, "value")
            release_tensor(n, "grad")
        elif n.type == NodeType.PARAMS:
            pass
        else:
            raise UnrecognizedNodeTypeError(n.type)


def backward_pass(target: Node) -> None:
    """
    Propagate gradients from ``target`` down to the parameters, then release
    every pooled buffer of the call.

    ``target`` must be the node returned by :func:`forward_pass` and its
    ``grad`` must already be seeded (see :func:`seed_grad`). Gradients are
    accumulated into the canonical parameter nodes of the model.
    """
    nodes = list(reversed(post_order_nodes(target)))
    for n in nodes:
        if n.type == NodeType.OP:
            n.tensor_op.backward_pass(n)
    _release_all(nodes)
    logger.debug("backward pass over %d nodes", len(nodes))


def seed_grad(target: Node, model: Any, scalar: float = 1.0) -> Node:
    """Fill ``target.grad`` with ``scalar``, the usual start of a backward pass."""
    model.tensor_factory().fill(target.grad, scalar)
    return target


def compile_graph(
    target: Node,
    model: Any,
    input_to_vals: Optional[Mapping[str, Any]] = None,
) -> Node:
    """
    Compile every node ``target`` depends on without computing anything.

    Same validation and binding as :func:`forward_pass`; inputs are
    materialized, ``op`` values are left for the caller to compute.
    """
    input_to_vals = {} if input_to_vals is None else input_to_vals
    factory = model.tensor_factory()
    validate_input_keys(post_order_nodes(target), input_to_vals)
    releases = ReleaseTable()
    return bottom_up_walk(target, lambda node: compile_node(node, factory, input_to_vals, model, releases))


def _levels(nodes: Sequence[Node]) -> List[List[Node]]:
    """
    Group post-ordered ``op`` nodes by their longest distance to a leaf.

    Nodes on one level never depend on each other.
    """
    height: Dict[str, int] = {}
    levels: List[List[Node]] = []
    for n in nodes:
        if n.is_leaf:
            height[n.ref_name] = 0
            continue
        h = 1 + max(height[c.ref_name] for c in n.children)
        height[n.ref_name] = h
        if n.type == NodeType.OP:
            while len(levels) < h:
                levels.append([])
            levels[h - 1].append(n)
    return levels


def _batch_groups(level: Sequence[Node]) -> List[Tuple[TensorOp, Hashable, List[Node]]]:
    groups: Dict[Hashable, Tuple[TensorOp, Hashable, List[Node]]] = {}
    for n in level:
        op = n.tensor_op
        if isinstance(op, BatchTensorOp):
            sig = op.batch_signature(n)
            key = (n.op_key, sig)
        else:
            sig = None
            key = ("node", n.ref_name)
        groups.setdefault(key, (op, sig, []))[2].append(n)
    return list(groups.values())


def _run_group(op: TensorOp, sig: Hashable, group: List[Node], backward: bool) -> None:
    if isinstance(op, BatchTensorOp):
        if backward:
            op.batch_backward_pass(sig, group)
        else:
            op.batch_forward_pass(sig, group)
        return
    for n in group:
        if backward:
            op.backward_pass(n)
        else:
            op.forward_pass(n)


def batch_forward_pass(
    target: Node,
    model: Any,
    input_to_vals: Optional[Mapping[str, Any]] = None,
) -> Node:
    """
    Like :func:`forward_pass`, but evaluate compatible nodes in fused calls.

    The whole graph is compiled first. ``op`` nodes are then evaluated level
    by level; within a level, nodes sharing an operation key and batch
    signature go to one ``batch_forward_pass`` call. Results match the
    sequential forward pass.
    """
    out = compile_graph(target, model, input_to_vals)
    levels = _levels(post_order_nodes(out))
    for level in levels:
        for op, sig, group in _batch_groups(level):
            _run_group(op, sig, group, backward=False)
    logger.debug("batched forward pass over %d levels", len(levels))
    return out


def batch_backward_pass(target: Node) -> None:
    """
    Like :func:`backward_pass`, grouping nodes the way
    :func:`batch_forward_pass` does and walking the levels top-down.
    """
    nodes = post_order_nodes(target)
    levels = _levels(nodes)
    for level in reversed(levels):
        for op, sig, group in _batch_groups(level):
            _run_group(op, sig, group, backward=True)
    _release_all(reversed(nodes))
    logger.debug("batched backward pass over %d levels", len(levels))
