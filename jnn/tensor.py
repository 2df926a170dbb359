import numpy as np

from jnn.config import resolve_dtype, SUPPORTED_DTYPES
from jnn.errors import ShapeMismatchError, IndexOutOfRangeError


def _normalize_shape(shape):
    # accept both Tensor.zeros(2, 3) and Tensor.zeros((2, 3))
    if len(shape) == 1 and isinstance(shape[0], (tuple, list)):
        shape = tuple(shape[0])
    shape = tuple(int(d) for d in shape)
    if any(d <= 0 for d in shape):
        raise ValueError(f"Tensor dimensions must be positive integers, got {shape}")
    return shape


def _operand(other):
    return other.data if isinstance(other, Tensor) else other


def _check_broadcast(a_shape, b_shape, op_name):
    try:
        return np.broadcast_shapes(a_shape, b_shape)
    except ValueError:
        raise ShapeMismatchError(
            f"Cannot {op_name} tensors with shapes {tuple(a_shape)} and {tuple(b_shape)}"
        ) from None


def unbroadcast(grad, original_shape):
    """Reverse broadcasting by summing over broadcasted dimensions"""
    if isinstance(grad, Tensor):
        return Tensor._wrap(unbroadcast(grad.data, original_shape))
    original_shape = tuple(original_shape)
    # Handle case where grad has more dimensions than original
    ndims_added = grad.ndim - len(original_shape)
    for _ in range(ndims_added):
        grad = grad.sum(axis=0)

    # Handle case where dimensions were broadcasted from size 1
    for i, (grad_dim, orig_dim) in enumerate(zip(grad.shape, original_shape)):
        if orig_dim == 1 and grad_dim > 1:
            grad = grad.sum(axis=i, keepdims=True)

    if grad.shape != original_shape:
        raise ShapeMismatchError(f"Cannot reduce gradient of shape {grad.shape} to {original_shape}")
    return grad


class Tensor:
    """
    n-dimensional float array backed by a numpy buffer.

    A tensor either owns its buffer or is a view into the buffer of another
    tensor (`base`). Views keep their base alive and share its memory, so an
    in-place method on either one is visible through both.
    """

    __array_priority__ = 1000  # make ndarray <op> Tensor defer to Tensor

    def __init__(self, data, dtype=None):
        if isinstance(data, Tensor):
            data = data.data
        if dtype is None and isinstance(data, np.ndarray) and data.dtype in SUPPORTED_DTYPES:
            dtype = data.dtype
        self.data = np.array(data, dtype=resolve_dtype(dtype))
        self._base = None

    @classmethod
    def _wrap(cls, array, base=None):
        """Wrap an existing ndarray without copying it."""
        out = cls.__new__(cls)
        array = np.asarray(array)
        if array.dtype not in SUPPORTED_DTYPES:
            array = array.astype(resolve_dtype(None))
        out.data = array
        out._base = base
        return out

    def _view(self, array):
        if np.may_share_memory(array, self.data):
            # chain views back to the tensor that owns the buffer
            return Tensor._wrap(array, base=self._base if self._base is not None else self)
        return Tensor._wrap(array)

    # ------------------------------------------------------------------ factories

    @classmethod
    def full(cls, shape, value, dtype=None):
        return cls._wrap(np.full(_normalize_shape((shape,)), value, dtype=resolve_dtype(dtype)))

    @classmethod
    def zeros(cls, *shape, dtype=None):
        return cls._wrap(np.zeros(_normalize_shape(shape), dtype=resolve_dtype(dtype)))

    @classmethod
    def ones(cls, *shape, dtype=None):
        return cls._wrap(np.ones(_normalize_shape(shape), dtype=resolve_dtype(dtype)))

    @classmethod
    def zeros_like(cls, other):
        return cls._wrap(np.zeros_like(_operand(other)))

    @classmethod
    def arange(cls, start, stop=None, step=1, dtype=None):
        if stop is None:
            start, stop = 0, start
        return cls._wrap(np.arange(start, stop, step, dtype=resolve_dtype(dtype)))

    @classmethod
    def randn(cls, *shape, scale=1.0, rng=None, dtype=None):
        """Normally distributed values. `rng` is a numpy Generator; the global numpy state is used if omitted."""
        rng = rng if rng is not None else np.random
        data = rng.standard_normal(size=_normalize_shape(shape)) * scale
        return cls._wrap(data.astype(resolve_dtype(dtype)))

    @classmethod
    def uniform(cls, *shape, low=0.0, high=1.0, rng=None, dtype=None):
        rng = rng if rng is not None else np.random
        data = rng.uniform(low, high, size=_normalize_shape(shape))
        return cls._wrap(data.astype(resolve_dtype(dtype)))

    # ----------------------------------------------------------------- properties

    @property
    def shape(self):
        return self.data.shape

    @property
    def strides(self):
        """Strides measured in elements rather than bytes."""
        return tuple(s // self.data.itemsize for s in self.data.strides)

    @property
    def dtype(self):
        return self.data.dtype

    @property
    def ndim(self):
        return self.data.ndim

    @property
    def size(self):
        return self.data.size

    @property
    def owns_buffer(self):
        return self._base is None

    @property
    def base(self):
        return self._base

    def __len__(self):
        if self.ndim == 0:
            raise TypeError("len() of a 0-d tensor")
        return self.shape[0]

    # ---------------------------------------------------------------------- views

    def reshape(self, *new_shape):
        """Reshape tensor to new shape (a view whenever the layout allows it)"""
        if len(new_shape) == 1 and isinstance(new_shape[0], (tuple, list)):
            new_shape = tuple(new_shape[0])
        try:
            out = self.data.reshape(new_shape)
        except ValueError:
            raise ShapeMismatchError(
                f"Cannot reshape tensor of shape {self.shape} into {tuple(new_shape)}"
            ) from None
        return self._view(out)

    def flatten(self):
        return self.reshape(self.size)

    def transpose(self, axis1=-2, axis2=-1):
        """Transpose tensor along specified axes"""
        if self.ndim < 2:
            return self._view(self.data)
        try:
            return self._view(np.swapaxes(self.data, axis1, axis2))
        except np.exceptions.AxisError as exc:
            raise IndexOutOfRangeError(str(exc)) from None

    @property
    def T(self):
        return self.transpose(-2, -1)

    def __getitem__(self, key):
        if isinstance(key, Tensor):
            key = key.data.astype(np.intp)
        # a trailing Ellipsis keeps full integer indexing as a 0-d view instead of a numpy scalar
        if isinstance(key, tuple):
            if not any(k is Ellipsis for k in key):
                key = key + (Ellipsis,)
        elif key is not Ellipsis:
            key = (key, Ellipsis)
        try:
            return self._view(self.data[key])
        except IndexError as exc:
            raise IndexOutOfRangeError(f"Index {key!r} out of range for shape {self.shape}: {exc}") from None

    def __setitem__(self, key, value):
        """Write into the buffer in place (visible through every view of it)."""
        try:
            self.data[key] = _operand(value)
        except IndexError as exc:
            raise IndexOutOfRangeError(f"Index {key!r} out of range for shape {self.shape}: {exc}") from None
        except ValueError as exc:
            raise ShapeMismatchError(str(exc)) from None

    def item(self, *idx):
        if not idx:
            if self.size != 1:
                raise ShapeMismatchError(f"item() needs a single-element tensor, got shape {self.shape}")
            return self.data.item()
        if len(idx) != self.ndim:
            raise IndexOutOfRangeError(f"Expected {self.ndim} indices, got {len(idx)}")
        for i, (ix, dim) in enumerate(zip(idx, self.shape)):
            if not -dim <= ix < dim:
                raise IndexOutOfRangeError(f"Index {ix} out of range for dimension {i} of size {dim}")
        return self.data[idx].item()

    # ------------------------------------------------------------- elementwise ops

    def _binary(self, other, ufunc, op_name):
        other_data = _operand(other)
        _check_broadcast(self.shape, np.shape(other_data), op_name)
        return Tensor._wrap(ufunc(self.data, other_data))

    def _rbinary(self, other, ufunc, op_name):
        other_data = _operand(other)
        _check_broadcast(np.shape(other_data), self.shape, op_name)
        return Tensor._wrap(ufunc(other_data, self.data))

    def __add__(self, other):
        return self._binary(other, np.add, "add")

    def __radd__(self, other):
        return self._rbinary(other, np.add, "add")

    def __sub__(self, other):
        return self._binary(other, np.subtract, "subtract")

    def __rsub__(self, other):
        return self._rbinary(other, np.subtract, "subtract")

    def __mul__(self, other):
        return self._binary(other, np.multiply, "multiply")

    def __rmul__(self, other):
        return self._rbinary(other, np.multiply, "multiply")

    def __truediv__(self, other):
        return self._binary(other, np.divide, "divide")

    def __rtruediv__(self, other):
        return self._rbinary(other, np.divide, "divide")

    def __neg__(self):
        return Tensor._wrap(-self.data)

    def __pow__(self, power):
        return self._binary(power, np.power, "raise")

    def pow(self, power):
        return self ** power

    def exp(self):
        return Tensor._wrap(np.exp(self.data))

    def log(self):
        return Tensor._wrap(np.log(self.data))

    def sqrt(self):
        return Tensor._wrap(np.sqrt(self.data))

    def tanh(self):
        return Tensor._wrap(np.tanh(self.data))

    def clip(self, min_value, max_value):
        return Tensor._wrap(np.clip(self.data, min_value, max_value))

    def maximum(self, other):
        return self._binary(other, np.maximum, "compare")

    # -------------------------------------------------------------------- matmul

    def matmul(self, other):
        """
        Matrix product with numpy semantics: leading (batch) dimensions broadcast,
        the last dimension of `self` must equal the second to last of `other`.
        """
        other_data = _operand(other)
        other_data = np.asarray(other_data)
        if self.ndim == 0 or other_data.ndim == 0:
            raise ShapeMismatchError("matmul does not accept 0-d tensors")
        inner = other_data.shape[-2] if other_data.ndim > 1 else other_data.shape[0]
        if self.shape[-1] != inner:
            raise ShapeMismatchError(
                f"matmul inner dimensions differ: {self.shape} @ {other_data.shape}"
            )
        try:
            return Tensor._wrap(np.matmul(self.data, other_data))
        except ValueError as exc:
            raise ShapeMismatchError(str(exc)) from None

    __matmul__ = matmul

    def __rmatmul__(self, other):
        return Tensor(other).matmul(self)

    # ---------------------------------------------------------------- reductions

    def _reduce(self, fn, dim, keepdims, **kwargs):
        try:
            return Tensor._wrap(np.asarray(fn(self.data, axis=dim, keepdims=keepdims, **kwargs)))
        except np.exceptions.AxisError as exc:
            raise IndexOutOfRangeError(str(exc)) from None

    def sum(self, dim=None, keepdims=False):
        """Sum over given axis (or all axes if dim=None)."""
        return self._reduce(np.sum, dim, keepdims)

    def mean(self, dim=None, keepdims=False):
        return self._reduce(np.mean, dim, keepdims)

    def var(self, dim=None, keepdims=False):
        return self._reduce(np.var, dim, keepdims)

    def max(self, dim=None, keepdims=False):
        return self._reduce(np.max, dim, keepdims)

    # ------------------------------------------------------------------ in place

    def _inplace(self, other, ufunc, op_name):
        other_data = _operand(other)
        result_shape = _check_broadcast(self.shape, np.shape(other_data), op_name)
        if result_shape != self.shape:
            raise ShapeMismatchError(
                f"In-place {op_name} cannot grow tensor of shape {self.shape} to {result_shape}"
            )
        ufunc(self.data, other_data, out=self.data, casting="unsafe")
        return self

    def add_(self, other):
        """Add `other` into this tensor's buffer. Mutates self; returns self."""
        return self._inplace(other, np.add, "add")

    def sub_(self, other):
        """Subtract `other` from this tensor's buffer. Mutates self; returns self."""
        return self._inplace(other, np.subtract, "subtract")

    def mul_(self, other):
        """Scale this tensor's buffer by `other`. Mutates self; returns self."""
        return self._inplace(other, np.multiply, "multiply")

    def fill_(self, value):
        self.data.fill(value)
        return self

    def copy_(self, source):
        """Overwrite this tensor's values with `source` (same shape). Mutates self."""
        source_data = np.asarray(_operand(source))
        if source_data.shape != self.shape:
            raise ShapeMismatchError(f"Cannot copy shape {source_data.shape} into shape {self.shape}")
        np.copyto(self.data, source_data, casting="unsafe")
        return self

    # --------------------------------------------------------------- conversion

    def copy(self):
        return Tensor._wrap(self.data.copy())

    def astype(self, dtype):
        return Tensor._wrap(self.data.astype(resolve_dtype(dtype)))

    def numpy(self):
        return self.data

    def tolist(self):
        return self.data.tolist()

    def array_equal(self, other):
        return self.shape == np.shape(_operand(other)) and bool(np.array_equal(self.data, _operand(other)))

    def allclose(self, other, rtol=1e-5, atol=1e-8):
        return self.shape == np.shape(_operand(other)) and bool(
            np.allclose(self.data, _operand(other), rtol=rtol, atol=atol)
        )

    def __array__(self, dtype=None, copy=None):
        if dtype is None:
            return self.data
        return self.data.astype(dtype)

    def __repr__(self):
        return f"Tensor(data={self.data}, dtype={self.dtype})"
