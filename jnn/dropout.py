import numpy as np

from jnn.module import Module, register_module
from jnn.tensor import Tensor


@register_module("Dropout")
class Dropout(Module):
    """Inverted dropout. Identity in eval mode."""

    def __init__(self, p=0.5, seed=None):
        super().__init__()
        if not 0 <= p <= 1:
            raise ValueError(f"Dropout probability must be between 0 and 1, got {p}")
        self.p = float(p)
        self.seed = None if seed is None else int(seed)
        self._rng = np.random.default_rng(seed)

    def forward(self, x: Tensor) -> Tensor:
        x = x if isinstance(x, Tensor) else Tensor(x)
        if not self.training or self.p == 0:
            # During inference or when p=0, return input unchanged
            self.save_for_backward(mask=None)
            return x

        if self.p == 1:
            mask = np.zeros(x.shape, dtype=x.dtype)
        else:
            # We use > instead of < to match PyTorch's behavior
            keep = self._rng.random(x.shape) > self.p
            # Scale by 1/(1-p) to maintain expected value during training
            mask = keep.astype(x.dtype) / (1.0 - self.p)

        self.save_for_backward(mask=mask)
        return Tensor._wrap(x.data * mask)

    def _backward(self, record, grad_output: Tensor) -> Tensor:
        if record.mask is None:
            return grad_output
        # Gradient flows through only the non-dropped elements
        return grad_output * record.mask

    def describe(self):
        return {"p": self.p, "seed": self.seed}
