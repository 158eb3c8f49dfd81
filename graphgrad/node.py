from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, Optional, Sequence, Tuple

import numpy as np


class NodeType(str, Enum):
    """Closed set of node kinds in a computation graph."""
    INPUT = "input"
    CONSTANT = "constant"
    PARAMS = "params"
    OP = "op"


@dataclass(eq=False)
class Node:
    """
    One vertex of a computation DAG.

    The graph builder fills in the structural fields (``ref_name``, ``type``,
    ``shape``, ``children``, ``op_key``). The compute engine decorates a
    per-call copy of each node with ``value``/``grad`` buffers, the bound
    ``tensor_op`` and operation scratch state in ``aux``.

    Attributes
    ----------
    ref_name : str
        Unique name within one graph instance. Shared subgraphs are
        referenced by name, never duplicated.
    type : NodeType
        One of ``input``, ``constant``, ``params``, ``op``.
    shape : tuple[int, ...]
        Declared shape of the node's value.
    children : tuple[Node, ...]
        Ordered operands. Empty for every non-``op`` node.
    op_key : str or None
        Key used to resolve the operation implementation (``op`` nodes only).
    value, grad : ndarray or None
        Value and gradient buffers.
    tensor_op : TensorOp or None
        Operation bound during compilation (``op`` nodes only).
    aux : dict
        Operation specific scratch state written by ``TensorOp.prep``.

    Notes
    -----
    ``releases`` is out-of-band bookkeeping: the per-call release table that
    pairs every pooled buffer with its release callback. It is not an init
    argument and takes no part in ``repr``.
    """
    ref_name: str
    type: NodeType
    shape: Tuple[int, ...] = ()
    children: Tuple["Node", ...] = ()
    op_key: Optional[str] = None
    value: Any = None
    grad: Any = None
    tensor_op: Any = None
    aux: Dict[str, Any] = field(default_factory=dict)
    releases: Any = field(default=None, init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        self.shape = tuple(int(d) for d in self.shape)
        self.children = tuple(self.children)

    @property
    def is_leaf(self) -> bool:
        return not self.children


def input_node(ref_name: str, shape: Sequence[int]) -> Node:
    """Create an ``input`` node whose value is supplied per call under ``ref_name``."""
    return Node(ref_name, NodeType.INPUT, shape=tuple(shape))


def constant_node(ref_name: str, value: Any, shape: Optional[Sequence[int]] = None) -> Node:
    """
    Create a ``constant`` node carrying an embedded value.

    The value is converted to a ``float32`` array. If ``shape`` is given it
    must equal the value's shape.
    """
    data = value if hasattr(value, "dtype") and hasattr(value, "shape") else np.asarray(value, dtype=np.float32)
    if shape is not None and tuple(shape) != tuple(data.shape):
        raise ValueError(
            f"constant {ref_name!r}: declared shape {tuple(shape)} does not match value shape {tuple(data.shape)}"
        )
    return Node(ref_name, NodeType.CONSTANT, shape=tuple(data.shape), value=data)


def params_node(ref_name: str, shape: Sequence[int]) -> Node:
    """Create a ``params`` placeholder resolved against the model's canonical registry."""
    return Node(ref_name, NodeType.PARAMS, shape=tuple(shape))


def op_node(ref_name: str, op_key: str, children: Iterable[Node], shape: Sequence[int]) -> Node:
    """
    Create an ``op`` node computing ``op_key`` over ``children``.

    Raises
    ------
    ValueError
        If ``children`` is empty or ``op_key`` is missing.
    """
    children = tuple(children)
    if not children:
        raise ValueError(f"op node {ref_name!r} needs at least one child")
    if not op_key:
        raise ValueError(f"op node {ref_name!r} needs an operation key")
    return Node(ref_name, NodeType.OP, shape=tuple(shape), children=children, op_key=op_key)
