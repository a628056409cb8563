"""Tracked numeric buffers with explicit lifetimes.

Every :class:`Tensor` registers itself with a :class:`TensorRegistry` on
creation and unregisters on :meth:`Tensor.dispose`. The registry count is what
``memory()`` reports, which makes leaked intermediates visible in tests and
diagnostics. Operations never mutate their operands; each returns a new
tracked tensor that the caller must dispose (directly or via a
:class:`TensorScope`).
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import numpy as np

from landmarkx.errors import DisposedTensorError

if TYPE_CHECKING:
    from collections.abc import Sequence
    from types import TracebackType

    from numpy.typing import ArrayLike, NDArray


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class MemoryInfo:
    """Snapshot of live tracked buffers."""

    num_tensors: int
    num_bytes: int


class TensorRegistry:
    """Counts live tensors and the bytes they hold."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._num_tensors: int = 0
        self._num_bytes: int = 0

    def register(self, nbytes: int) -> None:
        with self._lock:
            self._num_tensors += 1
            self._num_bytes += nbytes

    def unregister(self, nbytes: int) -> None:
        with self._lock:
            self._num_tensors -= 1
            self._num_bytes -= nbytes

    def memory(self) -> MemoryInfo:
        with self._lock:
            return MemoryInfo(num_tensors=self._num_tensors, num_bytes=self._num_bytes)


_default_registry = TensorRegistry()


def memory() -> MemoryInfo:
    """Return live-buffer counts for the process-wide registry."""
    return _default_registry.memory()


# ---------------------------------------------------------------------------
# Tensor
# ---------------------------------------------------------------------------


def _operand(value: Tensor | ArrayLike) -> NDArray[Any]:
    if isinstance(value, Tensor):
        return value.numpy()
    return np.asarray(value, dtype=np.float32)


class Tensor:
    """A numpy array whose lifetime is released explicitly."""

    __slots__ = ("_data", "_disposed", "_registry")

    def __init__(self, data: ArrayLike, *, registry: TensorRegistry | None = None) -> None:
        self._data: NDArray[Any] = np.array(data, copy=True)
        self._registry = registry if registry is not None else _default_registry
        self._disposed = False
        self._registry.register(self._data.nbytes)

    def __repr__(self) -> str:
        state = "disposed" if self._disposed else "live"
        return f"Tensor(shape={self._data.shape}, dtype={self._data.dtype}, {state})"

    # -- Introspection ------------------------------------------------------

    @property
    def shape(self) -> tuple[int, ...]:
        return tuple(self._data.shape)

    @property
    def rank(self) -> int:
        return self._data.ndim

    @property
    def dtype(self) -> np.dtype[Any]:
        return self._data.dtype

    @property
    def is_disposed(self) -> bool:
        return self._disposed

    # -- Lifetime -----------------------------------------------------------

    def dispose(self) -> None:
        """Release the buffer. Calling this more than once is a no-op."""
        if self._disposed:
            return
        self._disposed = True
        self._registry.unregister(self._data.nbytes)

    def __enter__(self) -> Tensor:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.dispose()

    # -- Reading ------------------------------------------------------------

    def numpy(self) -> NDArray[Any]:
        """Return a read-only view of the underlying data."""
        self._check_live()
        view = self._data.view()
        view.flags.writeable = False
        return view

    async def array(self) -> Any:
        """Resolve the buffer into plain Python numbers (nested lists or a scalar)."""
        self._check_live()
        return self._data.tolist()

    # -- Operations ---------------------------------------------------------

    def _derive(self, data: ArrayLike) -> Tensor:
        return Tensor(data, registry=self._registry)

    def to_float(self) -> Tensor:
        return self._derive(self.numpy().astype(np.float32))

    def expand_dims(self, axis: int = 0) -> Tensor:
        return self._derive(np.expand_dims(self.numpy(), axis))

    def squeeze(self, axis: int | None = None) -> Tensor:
        return self._derive(np.squeeze(self.numpy(), axis=axis))

    def reshape(self, shape: Sequence[int]) -> Tensor:
        return self._derive(self.numpy().reshape(tuple(shape)))

    def slice(self, begin: Sequence[int], size: Sequence[int]) -> Tensor:
        """Take a block starting at ``begin``; a size of -1 runs to the end of that axis."""
        data = self.numpy()
        if len(begin) != len(size) or len(begin) > data.ndim:
            raise ValueError(f"slice begin {list(begin)} / size {list(size)} do not fit shape {data.shape}")
        index = tuple(
            slice(start, None if length == -1 else start + length) for start, length in zip(begin, size, strict=True)
        )
        return self._derive(data[index])

    def add(self, other: Tensor | ArrayLike) -> Tensor:
        return self._derive(np.add(self.numpy(), _operand(other)).astype(np.float32))

    def mul(self, other: Tensor | ArrayLike) -> Tensor:
        return self._derive(np.multiply(self.numpy(), _operand(other)).astype(np.float32))

    def _check_live(self) -> None:
        if self._disposed:
            raise DisposedTensorError(f"Tensor with shape {self._data.shape} has been disposed")


# ---------------------------------------------------------------------------
# Scoped acquisition
# ---------------------------------------------------------------------------


class TensorScope:
    """Disposes every tracked tensor on exit unless it was handed out with :meth:`keep`.

    Usage::

        with TensorScope() as scope:
            batch = scope.track(image.to_float())
            ...
            return scope.keep(result)
    """

    def __init__(self) -> None:
        self._tensors: list[Tensor] = []

    def track(self, tensor: Tensor) -> Tensor:
        self._tensors.append(tensor)
        return tensor

    def keep(self, tensor: Tensor) -> Tensor:
        """Stop tracking ``tensor`` so it outlives the scope."""
        self._tensors = [t for t in self._tensors if t is not tensor]
        return tensor

    def dispose_all(self) -> None:
        while self._tensors:
            self._tensors.pop().dispose()

    def __enter__(self) -> TensorScope:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.dispose_all()
