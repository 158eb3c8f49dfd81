from typing import Any, Sequence


class GraphExecutionError(RuntimeError):
    """Base class for errors raised while compiling or executing a graph."""


class ValidationError(GraphExecutionError):
    """
    An operation rejected its operands (arity, shape or type mismatch).

    Raised during compilation, before any computation runs.

    Attributes
    ----------
    op_key : str
        Operation key of the rejecting operation.
    nodes : tuple[str, ...]
        Reference names of the offending nodes.
    reason : str
        Human readable explanation.
    """
    def __init__(self, op_key: Any, nodes: Sequence[Any], reason: str) -> None:
        self.op_key = op_key
        self.nodes = tuple(getattr(n, "ref_name", n) for n in nodes)
        self.reason = reason
        super().__init__(f"Operation {op_key!r} cannot run on {list(self.nodes)!r}: {reason}")


class MissingInputError(GraphExecutionError):
    """A required input reference name is absent from the supplied bindings."""
    def __init__(self, key: Any) -> None:
        self.key = key
        super().__init__(f"Missing required input: {key!r}")


class UnknownOperationError(GraphExecutionError):
    """No operation implementation is registered for an operation key."""
    def __init__(self, op_key: Any) -> None:
        self.op_key = op_key
        super().__init__(f"No operation registered for key: {op_key!r}")


class UnrecognizedNodeTypeError(GraphExecutionError):
    """A node's type tag is outside of ``input``/``constant``/``params``/``op``."""
    def __init__(self, node_type: Any) -> None:
        self.node_type = node_type
        super().__init__(f"Unrecognized node type: {node_type!r}")
