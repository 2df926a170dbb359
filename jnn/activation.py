import numpy as np

from jnn.module import Module, register_module
from jnn.tensor import Tensor
from jnn.errors import ShapeMismatchError

_GELU_C = np.sqrt(2.0 / np.pi)


def relu(x):
    return np.maximum(x, 0)


def relu_grad(x, y, grad):
    return grad * (x > 0)


def leaky_relu(x, negative_slope=0.01):
    return np.where(x > 0, x, negative_slope * x)


def leaky_relu_grad(x, y, grad, negative_slope=0.01):
    return grad * np.where(x > 0, 1.0, negative_slope)


def sigmoid(x):
    # tanh form does not overflow for large |x|
    return 0.5 * (1.0 + np.tanh(0.5 * x))


def sigmoid_grad(x, y, grad):
    return grad * y * (1.0 - y)


def tanh(x):
    return np.tanh(x)


def tanh_grad(x, y, grad):
    return grad * (1.0 - y * y)


def gelu(x):
    """GELU, tanh approximation."""
    return 0.5 * x * (1.0 + np.tanh(_GELU_C * (x + 0.044715 * x ** 3)))


def gelu_grad(x, y, grad):
    t = np.tanh(_GELU_C * (x + 0.044715 * x ** 3))
    # sech^2 = 1 - tanh^2
    local = 0.5 * (1.0 + t) + 0.5 * x * (1.0 - t * t) * _GELU_C * (1.0 + 3 * 0.044715 * x * x)
    return grad * local


def softmax(x, dim=-1, temperature=1.0):
    """
    Softmax along `dim`; larger temperatures flatten the distribution.
    """
    z = x / temperature
    # Subtract max for numerical stability
    z = z - np.max(z, axis=dim, keepdims=True)
    exp_z = np.exp(z)
    return exp_z / np.sum(exp_z, axis=dim, keepdims=True)


def softmax_grad(x, y, grad, dim=-1, temperature=1.0):
    return y * (grad - np.sum(grad * y, axis=dim, keepdims=True)) / temperature


def log_softmax(x, dim=-1):
    z = x - np.max(x, axis=dim, keepdims=True)
    return z - np.log(np.sum(np.exp(z), axis=dim, keepdims=True))


# name -> (forward, backward, default options)
ACTIVATION_FUNCTIONS = {
    "relu": (relu, relu_grad, {}),
    "leaky_relu": (leaky_relu, leaky_relu_grad, {"negative_slope": 0.01}),
    "sigmoid": (sigmoid, sigmoid_grad, {}),
    "tanh": (tanh, tanh_grad, {}),
    "gelu": (gelu, gelu_grad, {}),
    "softmax": (softmax, softmax_grad, {"dim": -1, "temperature": 1.0}),
}


@register_module("Activation")
class Activation(Module):
    """
    Stateless elementwise non-linearity selected by name.

    backward multiplies the incoming gradient by the derivative evaluated at
    the input (and output) saved by the last forward call.
    """

    def __init__(self, function: str = "relu", **options):
        super().__init__()
        if function not in ACTIVATION_FUNCTIONS:
            raise ValueError(
                f"Unknown activation function {function!r}, expected one of {sorted(ACTIVATION_FUNCTIONS)}"
            )
        _, _, defaults = ACTIVATION_FUNCTIONS[function]
        unknown = set(options) - set(defaults)
        if unknown:
            raise TypeError(f"Unexpected options for {function}: {sorted(unknown)}")
        self.function = function
        # numpy scalars are stored as plain Python values
        options = {k: v.item() if isinstance(v, np.generic) else v for k, v in options.items()}
        self.options = {**defaults, **options}

    def forward(self, x: Tensor) -> Tensor:
        x = x if isinstance(x, Tensor) else Tensor(x)
        fn, _, _ = ACTIVATION_FUNCTIONS[self.function]
        out = Tensor._wrap(fn(x.data, **self.options).astype(x.dtype, copy=False))
        self.save_for_backward(input=x, output=out)
        return out

    def _backward(self, record, grad_output: Tensor) -> Tensor:
        if grad_output.shape != record.output.shape:
            raise ShapeMismatchError(
                f"{self.function} expects gradient of shape {record.output.shape}, got {grad_output.shape}"
            )
        _, grad_fn, _ = ACTIVATION_FUNCTIONS[self.function]
        grad = grad_fn(record.input.data, record.output.data, grad_output.data, **self.options)
        return Tensor._wrap(grad.astype(record.input.dtype, copy=False))

    def describe(self):
        return {"function": self.function, **self.options}


class ReLU(Activation):
    def __init__(self):
        super().__init__("relu")


class LeakyReLU(Activation):
    def __init__(self, negative_slope=0.01):
        super().__init__("leaky_relu", negative_slope=negative_slope)


class Sigmoid(Activation):
    def __init__(self):
        super().__init__("sigmoid")


class Tanh(Activation):
    def __init__(self):
        super().__init__("tanh")


class GELU(Activation):
    def __init__(self):
        super().__init__("gelu")


class Softmax(Activation):
    def __init__(self, dim=-1, temperature=1.0):
        super().__init__("softmax", dim=dim, temperature=temperature)
