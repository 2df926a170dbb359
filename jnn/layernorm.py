import numpy as np

from jnn.config import resolve_dtype
from jnn.errors import ShapeMismatchError
from jnn.module import Module, register_module
from jnn.parameter import Parameter
from jnn.tensor import Tensor, unbroadcast


@register_module("LayerNorm")
class LayerNorm(Module):
    """
    Layer normalization over the trailing `normalized_shape` dimensions,
    followed by an optional elementwise affine transform.
    """
    def __init__(self, normalized_shape, eps=1e-5, elementwise_affine=True, dtype=None):
        super().__init__()

        if isinstance(normalized_shape, (int, np.integer)):
            normalized_shape = (normalized_shape,)
        self.normalized_shape = tuple(int(d) for d in normalized_shape)
        self.eps = float(eps)
        self.elementwise_affine = bool(elementwise_affine)
        self.dtype = resolve_dtype(dtype)

        if self.elementwise_affine:
            self.weight = Parameter(Tensor.ones(self.normalized_shape, dtype=self.dtype))
            self.bias = Parameter(Tensor.zeros(self.normalized_shape, dtype=self.dtype))
        else:
            self.weight = None
            self.bias = None

    def forward(self, x: Tensor) -> Tensor:
        x = x if isinstance(x, Tensor) else Tensor(x, dtype=self.dtype)
        n = len(self.normalized_shape)
        if x.ndim < n or x.shape[x.ndim - n:] != self.normalized_shape:
            raise ShapeMismatchError(
                f"LayerNorm over {self.normalized_shape} cannot normalize input of shape {x.shape}"
            )

        # Calculate dimensions to normalize over (last len(normalized_shape) dimensions)
        norm_dims = tuple(range(x.ndim - n, x.ndim))
        mean = np.mean(x.data, axis=norm_dims, keepdims=True)
        var = np.var(x.data, axis=norm_dims, keepdims=True)
        inv_std = 1.0 / np.sqrt(var + self.eps)
        normalized = (x.data - mean) * inv_std

        out = normalized
        # Apply learnable parameters if enabled
        if self.elementwise_affine:
            out = normalized * self.weight.data + self.bias.data

        self.save_for_backward(normalized=normalized, inv_std=inv_std, norm_dims=norm_dims)
        return Tensor._wrap(out.astype(x.dtype, copy=False))

    def _backward(self, record, grad_output: Tensor) -> Tensor:
        x_hat = record.normalized
        if grad_output.shape != x_hat.shape:
            raise ShapeMismatchError(f"LayerNorm expects gradient of shape {x_hat.shape}, got {grad_output.shape}")
        g = grad_output.data
        dims = record.norm_dims

        if self.elementwise_affine:
            # affine parameters are broadcast over every leading dim
            self.weight.accumulate_gradient(unbroadcast(g * x_hat, self.normalized_shape))
            self.bias.accumulate_gradient(unbroadcast(g, self.normalized_shape))
            g = g * self.weight.data

        grad_input = record.inv_std * (
            g
            - np.mean(g, axis=dims, keepdims=True)
            - x_hat * np.mean(g * x_hat, axis=dims, keepdims=True)
        )
        return Tensor._wrap(grad_input.astype(x_hat.dtype, copy=False))

    def describe(self):
        return {
            "normalized_shape": list(self.normalized_shape),
            "eps": self.eps,
            "elementwise_affine": self.elementwise_affine,
            "dtype": self.dtype.name,
        }
