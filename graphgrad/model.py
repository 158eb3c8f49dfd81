from typing import Any, Dict, List, Optional, Sequence

import numpy as np

from graphgrad.factory import TensorFactory
from graphgrad.node import Node, NodeType


class Model:
    """
    Owner of the trainable parameters shared by every evaluation of a graph.

    Each parameter is a canonical ``params`` node whose ``value`` and ``grad``
    persist for the model's lifetime. Graph evaluation swaps every ``params``
    node it meets for the canonical node of the same reference name, so
    gradients from all evaluations land in the same buffers until
    :meth:`zero_grad` is called.

    Parameters
    ----------
    factory : TensorFactory or None, optional
        Tensor factory used for evaluation. A CPU ``float32`` factory is
        created if omitted.
    seed : int, default 0
        Seed of the generator used for random parameter initialization.
    """
    def __init__(self, factory: Optional[TensorFactory] = None, seed: int = 0) -> None:
        self._factory = factory if factory is not None else TensorFactory()
        self._params: Dict[str, Node] = {}
        self._rng = np.random.default_rng(seed)

    def tensor_factory(self) -> TensorFactory:
        return self._factory

    def add_params(
        self,
        name: str,
        shape: Sequence[int],
        init: Optional[Any] = None,
        scale: float = 1.0,
    ) -> Node:
        """
        Register a trainable parameter and return its canonical node.

        Parameters
        ----------
        name : str
            Reference name used by ``params`` nodes in graphs.
        shape : sequence of int
            Parameter shape.
        init : array-like or None, optional
            Initial value. If None, values are drawn from ``N(0, scale^2)``.
        scale : float, default 1.0
            Standard deviation of the random initialization.

        Returns
        -------
        Node
            The canonical ``params`` node, with a zero-filled ``grad``.

        Raises
        ------
        ValueError
            If ``name`` is already registered or ``init`` has the wrong shape.
        """
        if name in self._params:
            raise ValueError(f"Parameter {name!r} is already registered")
        shape = tuple(int(d) for d in shape)
        if init is None:
            init = self._rng.standard_normal(shape).astype(np.float32) * scale
        factory = self._factory
        value = factory.asarray(init)
        if tuple(value.shape) != shape:
            raise ValueError(f"Parameter {name!r}: init shape {tuple(value.shape)} != {shape}")
        node = Node(name, NodeType.PARAMS, shape=shape, value=value.copy(), grad=factory.zeros(shape))
        self._params[name] = node
        return node

    def canonical_node(self, ref_name: str) -> Node:
        """
        Return the model-owned node for parameter ``ref_name``.

        Raises
        ------
        KeyError
            If no parameter of that name is registered.
        """
        try:
            return self._params[ref_name]
        except KeyError:
            raise KeyError(f"Unknown parameter: {ref_name!r}") from None

    def params(self) -> List[Node]:
        """Canonical parameter nodes in registration order."""
        return list(self._params.values())

    def zero_grad(self) -> None:
        """Reset every parameter gradient to zero in place."""
        for p in self._params.values():
            self._factory.fill(p.grad, 0.0)

    def __contains__(self, ref_name: str) -> bool:
        return ref_name in self._params

    def __repr__(self) -> str:
        lines = [f"  ({name}): shape={p.shape}" for name, p in self._params.items()]
        return "Model(\n" + "\n".join(lines) + "\n)" if lines else "Model()"
