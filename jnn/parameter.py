import numpy as np

from jnn.tensor import Tensor
from jnn.errors import ShapeMismatchError


class Parameter:
    """
    A named, trainable tensor paired with an accumulated gradient.

    The gradient is allocated lazily by the first `accumulate_gradient` call and
    is only cleared by an explicit `zero_gradient`, so several backward passes
    (micro-batches, or a parameter used on more than one path) add up.
    """

    def __init__(self, value, name=None, requires_grad: bool = True):
        self._value = value.copy() if isinstance(value, Tensor) else Tensor(value)
        self.name = name
        self.requires_grad = requires_grad
        self._grad = None

    @property
    def shape(self):
        return self._value.shape

    @property
    def dtype(self):
        return self._value.dtype

    @property
    def size(self):
        return self._value.size

    @property
    def data(self) -> np.ndarray:
        return self._value.data

    @property
    def grad(self):
        """The accumulated gradient, or None if nothing was accumulated since the last reset."""
        return self._grad

    def value(self) -> Tensor:
        return self._value

    def set_value(self, value) -> None:
        """Overwrite the values in place, keeping shape and dtype."""
        value = value if isinstance(value, Tensor) else Tensor(value, dtype=self.dtype)
        if value.shape != self.shape:
            raise ShapeMismatchError(
                f"Cannot set value of shape {value.shape} on parameter '{self.name}' of shape {self.shape}"
            )
        self._value.copy_(value)

    def accumulate_gradient(self, delta) -> None:
        """Add `delta` into the gradient buffer, allocating a zero buffer first if absent."""
        delta = delta if isinstance(delta, Tensor) else Tensor(delta, dtype=self.dtype)
        if delta.shape != self.shape:
            raise ShapeMismatchError(
                f"Gradient of shape {delta.shape} does not match parameter '{self.name}' of shape {self.shape}"
            )
        if self._grad is None:
            self._grad = Tensor.zeros_like(self._value)
        self._grad.add_(delta)

    def zero_gradient(self) -> None:
        self._grad = None

    def __repr__(self):
        return (f"Parameter(name={self.name!r}, shape={self.shape}, dtype={self.dtype}, "
                f"grad={'set' if self._grad is not None else 'None'})")
