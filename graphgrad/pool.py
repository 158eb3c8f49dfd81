import logging
import threading
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np

from graphgrad.backend import backend_for

logger = logging.getLogger(__name__)


class TensorPool:
    """
    Shape-keyed pool of reusable tensor buffers.

    :meth:`acquire` hands out a buffer together with the function that gives it
    back. Buffers of exactly the same shape are reused; otherwise a fresh
    zero-filled buffer is allocated on the pool's backend.

    Parameters
    ----------
    device : {None, 'cpu', 'cuda', 'cuda:N'}, optional
        Device the buffers live on. ``None`` means CPU.
    dtype : numpy dtype, default numpy.float32
        Element type of every buffer.
    max_free_per_shape : int or None, default None
        Upper bound on idle buffers kept per shape. Buffers released beyond
        the bound are dropped. ``None`` keeps them all.

    Notes
    -----
    - The contents of a reused buffer are whatever its last owner left behind.
    - Free lists are guarded by a lock so that several graph evaluations may
      share one pool.
    """
    def __init__(
        self,
        device: Optional[str] = None,
        dtype: Any = np.float32,
        max_free_per_shape: Optional[int] = None,
    ) -> None:
        self.backend = backend_for(device)
        self.dtype = dtype
        self.max_free_per_shape = max_free_per_shape
        self._free: Dict[Tuple[int, ...], List[Any]] = {}
        self._lock = threading.Lock()
        self.acquired = 0
        self.released = 0
        self.allocated = 0
        self._generation = 0

    @property
    def outstanding(self) -> int:
        """int: Buffers handed out and not yet released."""
        return self.acquired - self.released

    def acquire(self, shape: Sequence[int]) -> Tuple[Any, Callable[[], None]]:
        """
        Take a buffer of ``shape`` out of the pool.

        Returns
        -------
        (tensor, release_fn)
            ``release_fn()`` puts ``tensor`` back. Calling it twice raises
            ``RuntimeError``. After :meth:`reset` it does nothing.
        """
        key = tuple(int(d) for d in shape)
        with self._lock:
            free = self._free.get(key)
            t = free.pop() if free else None
            self.acquired += 1
            generation = self._generation
        if t is None:
            t = self.backend.zeros(key, dtype=self.dtype)
            with self._lock:
                self.allocated += 1
            logger.debug("pool miss: allocated buffer of shape %s", key)

        returned = False

        def release_fn() -> None:
            nonlocal returned
            if returned:
                raise RuntimeError(f"Buffer of shape {key} released twice")
            returned = True
            self._give_back(key, t, generation)

        return t, release_fn

    def _give_back(self, key: Tuple[int, ...], t: Any, generation: int) -> None:
        with self._lock:
            if generation != self._generation:
                # handed out before a reset
                return
            self.released += 1
            free = self._free.setdefault(key, [])
            if self.max_free_per_shape is None or len(free) < self.max_free_per_shape:
                free.append(t)

    def free_count(self, shape: Optional[Sequence[int]] = None) -> int:
        """Number of idle buffers, for one ``shape`` or in total."""
        with self._lock:
            if shape is not None:
                return len(self._free.get(tuple(int(d) for d in shape), ()))
            return sum(len(v) for v in self._free.values())

    def reset(self) -> None:
        """
        Drop every idle buffer and zero the counters.

        This is the safety net after a failed forward pass: buffers still held
        by the aborted call are forgotten, and releasing them later is a no-op
        that leaves the counters untouched.
        """
        with self._lock:
            self._free.clear()
            self.acquired = 0
            self.released = 0
            self.allocated = 0
            self._generation += 1

    def __repr__(self) -> str:
        return (
            f"TensorPool(acquired={self.acquired}, released={self.released}, "
            f"allocated={self.allocated}, free={self.free_count()})"
        )
