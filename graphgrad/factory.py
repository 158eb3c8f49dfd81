from typing import Any, Dict, Optional, Sequence

import numpy as np

from graphgrad.backend import _is_cupy_array, backend_for, cp, device_of
from graphgrad.errors import UnknownOperationError
from graphgrad.ops import TensorOp, default_ops
from graphgrad.pool import TensorPool


class TensorFactory:
    """
    Tensor primitives and operation registry for one device.

    The factory resolves operation implementations by key, performs the fill
    and copy primitives the compiler needs, and owns the :class:`TensorPool`
    that per-call buffers come from.

    Parameters
    ----------
    device : {None, 'cpu', 'cuda', 'cuda:N'}, optional
        Target device. ``None`` means CPU.
    dtype : numpy dtype, default numpy.float32
        Element type for every tensor the factory creates.
    pool : TensorPool or None, optional
        Buffer pool. A fresh pool on the same device/dtype is created if omitted.
    ops : dict[str, TensorOp] or None, optional
        Operation registry. Defaults to :func:`graphgrad.ops.default_ops`.

    Raises
    ------
    RuntimeError
        If ``device`` requests CUDA but CuPy is not installed/available.
    ValueError
        If ``pool`` lives on another device or uses another dtype.
    """
    def __init__(
        self,
        device: Optional[str] = None,
        dtype: Any = np.float32,
        pool: Optional[TensorPool] = None,
        ops: Optional[Dict[str, TensorOp]] = None,
    ) -> None:
        self.xp = backend_for(device)
        self.device = device_of(self.xp)
        self.dtype = np.dtype(dtype)
        if pool is None:
            pool = TensorPool(device=self.device, dtype=self.dtype)
        elif pool.backend is not self.xp or np.dtype(pool.dtype) != self.dtype:
            raise ValueError(
                f"pool ({device_of(pool.backend)}, {np.dtype(pool.dtype)}) does not match "
                f"factory ({self.device}, {self.dtype})"
            )
        self.pool = pool
        self._ops: Dict[str, TensorOp] = dict(default_ops() if ops is None else ops)

    def get_op(self, key: str) -> TensorOp:
        """
        Return the operation registered under ``key``.

        Raises
        ------
        UnknownOperationError
            If nothing is registered for ``key``.
        """
        try:
            return self._ops[key]
        except KeyError:
            raise UnknownOperationError(key) from None

    def register_op(self, key: str, op: TensorOp) -> None:
        """Register (or replace) the implementation for ``key``."""
        self._ops[key] = op

    def fill(self, tensor: Any, scalar: float) -> Any:
        """Set every element of ``tensor`` to ``scalar`` in place."""
        tensor.fill(scalar)
        return tensor

    def copy_from_input(self, tensor: Any, value: Any) -> Any:
        """
        Copy an externally supplied value into ``tensor`` in place.

        ``value`` may be a Python scalar/sequence, a NumPy array or a CuPy
        array; it is moved to the factory's device and cast to its dtype.

        Raises
        ------
        ValueError
            If the value's shape differs from the tensor's shape.
        """
        data = self.asarray(value)
        if tuple(data.shape) != tuple(tensor.shape):
            raise ValueError(f"input of shape {tuple(data.shape)} does not fit tensor of shape {tuple(tensor.shape)}")
        tensor[...] = data
        return tensor

    def asarray(self, value: Any) -> Any:
        """Convert ``value`` to an array of the factory's dtype on its device."""
        if self.device == "cpu" and _is_cupy_array(value):
            value = cp.asnumpy(value)
        return self.xp.asarray(value, dtype=self.dtype)

    def zeros(self, shape: Sequence[int]) -> Any:
        return self.xp.zeros(tuple(shape), dtype=self.dtype)

    def __repr__(self) -> str:
        return f"TensorFactory(device='{self.device}', dtype={self.dtype}, ops={sorted(self._ops)})"
