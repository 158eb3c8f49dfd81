from typing import Any, Dict, Iterable

from graphgrad.backend import xp_of
from graphgrad.node import Node


class Optimizer:
    """
    Base class for all optimizers.

    An optimizer updates canonical parameter nodes in-place based on the
    gradients that backward passes accumulated into them. Subclasses must
    implement :meth:`step`.

    Parameters
    ----------
    params : Iterable[Node]
        Canonical ``params`` nodes to optimize (typically ``model.params()``),
        iterated in the given order.

    Notes
    -----
    - Parameters must expose ``.value`` and ``.grad`` arrays of equal shape.
    - Per-parameter state is keyed by reference name.
    """
    def __init__(self, params: Iterable[Node]) -> None:
        self.params = list(params)

    def zero_grad(self) -> None:
        """Reset gradients of all parameters to zero in place."""
        for p in self.params:
            if p.grad is not None:
                p.grad.fill(0.0)

    def step(self) -> None:
        """
        Perform a single optimization step.

        Subclasses must implement this method to update each parameter using its
        gradient and any optimizer-specific state.
        """
        raise NotImplementedError


class SGD(Optimizer):
    """
    Gradient descent over a model's canonical parameter nodes.

    Supports heavy-ball or Nesterov momentum with dampening and L2 weight decay;
    the update matches ``torch.optim.SGD``.

    Parameters
    ----------
    params : Iterable[Node]
        Parameters to optimize.
    lr : float, default=0.001
        Learning rate.
    momentum : float, default=0.0
        Momentum factor.
    dampening : float, default=0.0
        Dampening for momentum.
    weight_decay : float, default=0.0
        L2 penalty (added to the gradient).
    nesterov : bool, default=False
        If True, enables Nesterov momentum (requires ``momentum > 0``).

    Notes
    -----
    - Canonical parameter nodes outlive every graph call, so momentum buffers
      and the per-parameter scratch direction are allocated once, on the
      parameter's device, and updated in place on later steps.
    - Weight decay is folded into the direction as ``weight_decay * p.value``.
    """
    def __init__(
        self,
        params: Iterable[Node],
        lr: float = 0.001,
        momentum: float = 0.0,
        dampening: float = 0.0,
        weight_decay: float = 0.0,
        nesterov: bool = False,
    ) -> None:
        super().__init__(params)
        if nesterov and momentum <= 0:
            raise ValueError("Nesterov momentum requires a positive momentum")
        self.lr = lr
        self.momentum = momentum
        self.dampening = dampening
        self.weight_decay = weight_decay
        self.nesterov = nesterov
        self.state: Dict[str, Any] = {}
        self._scratch: Dict[str, Any] = {}

    def _direction(self, p: Node) -> Any:
        d_p = self._scratch.get(p.ref_name)
        if d_p is None:
            d_p = self._scratch[p.ref_name] = xp_of(p.grad).empty_like(p.grad)
        d_p[...] = p.grad
        if self.weight_decay > 0:
            d_p += self.weight_decay * p.value
        return d_p

    def _with_momentum(self, name: str, d_p: Any) -> Any:
        buf = self.state.get(name)
        if buf is None:
            buf = self.state[name] = d_p.copy()
        else:
            buf *= self.momentum
            buf += (1 - self.dampening) * d_p
        if not self.nesterov:
            return buf
        d_p += self.momentum * buf
        return d_p

    def step(self) -> None:
        """Move every parameter that has a gradient one step against it."""
        for p in self.params:
            if p.grad is None:
                continue
            d_p = self._direction(p)
            if self.momentum > 0:
                d_p = self._with_momentum(p.ref_name, d_p)
            p.value -= self.lr * d_p
