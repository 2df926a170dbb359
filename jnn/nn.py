import numpy as np

from jnn.config import resolve_dtype
from jnn.errors import ShapeMismatchError, IndexOutOfRangeError
from jnn.module import Module, register_module
from jnn.parameter import Parameter
from jnn.tensor import Tensor, unbroadcast
from jnn.activation import Activation


@register_module("Linear")
class Linear(Module):
    """y = x @ weight + bias, with weight of shape (in_features, out_features)."""

    def __init__(self, in_features, out_features, bias: bool = True, dtype=None, rng=None):
        super().__init__()
        self.in_features  = int(in_features)
        self.out_features = int(out_features)
        self.has_bias     = bool(bias)
        self.dtype        = resolve_dtype(dtype)

        # Kaiming (He) initialization for weight
        self.weight = Parameter(Tensor.randn(self.in_features, self.out_features,
                                             scale=np.sqrt(2.0 / self.in_features), rng=rng, dtype=self.dtype))

        # Only create bias if requested
        if self.has_bias:
            self.bias = Parameter(Tensor.zeros(self.out_features, dtype=self.dtype))
        else:
            self.bias = None

    def forward(self, x: Tensor) -> Tensor:
        # x: (..., in_features)
        x = x if isinstance(x, Tensor) else Tensor(x, dtype=self.dtype)
        if x.ndim == 0 or x.shape[-1] != self.in_features:
            raise ShapeMismatchError(
                f"Linear expects input of shape (..., {self.in_features}), got {x.shape}"
            )
        y = x.matmul(self.weight.value())   # shape (..., out_features)
        if self.has_bias:
            # broadcast bias over all leading dims
            y = y + self.bias.value()
        self.save_for_backward(input=x)
        return y

    def _backward(self, record, grad_output: Tensor) -> Tensor:
        x = record.input
        expected = x.shape[:-1] + (self.out_features,)
        if grad_output.shape != expected:
            raise ShapeMismatchError(f"Linear expects gradient of shape {expected}, got {grad_output.shape}")

        # fold every leading dim into one batch dim
        x2 = x.data.reshape(-1, self.in_features)
        g2 = grad_output.data.reshape(-1, self.out_features)
        self.weight.accumulate_gradient(x2.T @ g2)
        if self.has_bias:
            self.bias.accumulate_gradient(unbroadcast(grad_output.data, self.bias.shape))
        return grad_output.matmul(self.weight.value().T)

    def describe(self):
        return {
            "in_features": self.in_features,
            "out_features": self.out_features,
            "bias": self.has_bias,
            "dtype": self.dtype.name,
        }


@register_module("Embedding")
class Embedding(Module):
    """
    Lookup table mapping integer indices to dense vectors.
    An input of shape (B, T) becomes (B, T, embedding_dim).
    """
    def __init__(self, num_embeddings, embedding_dim, dtype=None, rng=None):
        super().__init__()
        self.num_embeddings = int(num_embeddings)
        self.embedding_dim = int(embedding_dim)
        self.dtype = resolve_dtype(dtype)

        # Using Xavier/Glorot initialization
        std = np.sqrt(2.0 / (self.num_embeddings + self.embedding_dim))
        self.weight = Parameter(Tensor.randn(self.num_embeddings, self.embedding_dim,
                                             scale=std, rng=rng, dtype=self.dtype))

    def forward(self, input_ids) -> Tensor:
        raw = input_ids.data if isinstance(input_ids, Tensor) else np.asarray(input_ids)
        indices = raw.astype(np.int64)
        if not np.array_equal(indices, raw):
            raise ValueError("Embedding indices must be integers")

        # Check bounds
        if np.any(indices < 0) or np.any(indices >= self.num_embeddings):
            raise IndexOutOfRangeError(f"Input indices must be in range [0, {self.num_embeddings})")

        out = Tensor._wrap(self.weight.data[indices])
        self.save_for_backward(indices=indices)
        return out

    def _backward(self, record, grad_output: Tensor) -> Tensor:
        indices = record.indices
        expected = indices.shape + (self.embedding_dim,)
        if grad_output.shape != expected:
            raise ShapeMismatchError(f"Embedding expects gradient of shape {expected}, got {grad_output.shape}")

        # repeated indices accumulate
        grad_weight = np.zeros_like(self.weight.data)
        np.add.at(grad_weight, indices.reshape(-1), grad_output.data.reshape(-1, self.embedding_dim))
        self.weight.accumulate_gradient(grad_weight)

        # indices are not differentiable
        return Tensor.zeros_like(indices.astype(self.dtype))

    def describe(self):
        return {
            "num_embeddings": self.num_embeddings,
            "embedding_dim": self.embedding_dim,
            "dtype": self.dtype.name,
        }


@register_module("Sequential")
class Sequential(Module):
    """
    Runs child modules one after another.

    forward threads the tensor through the children in order; backward threads
    the gradient through them in exactly the reverse order, each child
    receiving the gradient produced by its successor.
    """

    is_container = True

    def __init__(self, *modules):
        super().__init__()
        for module in modules:
            self.append(module)

    def append(self, module: Module) -> "Sequential":
        self.add_module(str(len(self._modules)), module)
        return self

    def insert(self, index: int, module: Module) -> "Sequential":
        items = self.children()
        # add_module enforces the attach rules before anything is reordered
        self.add_module(str(len(items)), module)
        items.insert(index, module)
        self._modules = {str(i): m for i, m in enumerate(items)}
        return self

    def __len__(self):
        return len(self._modules)

    def __getitem__(self, index):
        return self.children()[index]

    def __iter__(self):
        return iter(self.children())

    def forward(self, x: Tensor) -> Tensor:
        for module in self._modules.values():
            x = module(x)
        self.save_for_backward()
        return x

    def _backward(self, record, grad_output: Tensor) -> Tensor:
        grad = grad_output
        for module in reversed(self.children()):
            grad = module.backward(grad)
        return grad

    def describe(self):
        return {}

    @classmethod
    def from_config(cls, config):
        return cls()


@register_module("MLP")
class MLP(Module):
    """Fully connected network: Linear layers with an activation between each pair."""

    def __init__(self, sizes, activation="relu", dtype=None, rng=None):
        super().__init__()
        sizes = [int(s) for s in sizes]
        if len(sizes) < 2:
            raise ValueError(f"MLP needs at least an input and an output size, got {sizes}")
        self.sizes = sizes
        self.activation = activation
        self.dtype = resolve_dtype(dtype)

        layers = []
        for i, (n_in, n_out) in enumerate(zip(sizes[:-1], sizes[1:])):
            layers.append(Linear(n_in, n_out, dtype=self.dtype, rng=rng))
            if i < len(sizes) - 2:
                layers.append(Activation(activation))
        self.layers = Sequential(*layers)

    def forward(self, x: Tensor) -> Tensor:
        out = self.layers(x)
        self.save_for_backward()
        return out

    def _backward(self, record, grad_output: Tensor) -> Tensor:
        return self.layers.backward(grad_output)

    def describe(self):
        return {"sizes": list(self.sizes), "activation": self.activation, "dtype": self.dtype.name}
