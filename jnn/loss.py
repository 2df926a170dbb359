import numpy as np

from jnn.activation import softmax, log_softmax
from jnn.errors import ShapeMismatchError, IndexOutOfRangeError, IllegalStateError
from jnn.module import ComputationRecord
from jnn.tensor import Tensor


class Loss:
    """
    Scalar objective with a hand-written gradient.

    `forward` returns the mean loss as a 0-d tensor and saves what `backward`
    needs; `backward` returns the gradient w.r.t. the prediction, ready to be
    passed to the model's `backward`.
    """

    def __init__(self):
        self._record = None

    def __call__(self, prediction, target) -> Tensor:
        return self.forward(prediction, target)

    def forward(self, prediction, target) -> Tensor:
        raise NotImplementedError

    def backward(self) -> Tensor:
        if self._record is None:
            raise IllegalStateError(f"{type(self).__name__}.backward() called without a preceding forward()")
        grad = self._backward(self._record)
        self._record = None
        return grad

    def _backward(self, record) -> Tensor:
        raise NotImplementedError


class MSELoss(Loss):
    """Mean squared error."""

    def forward(self, prediction, target) -> Tensor:
        prediction = prediction if isinstance(prediction, Tensor) else Tensor(prediction)
        target = target if isinstance(target, Tensor) else Tensor(target, dtype=prediction.dtype)
        if prediction.shape != target.shape:
            raise ShapeMismatchError(
                f"MSELoss needs equal shapes, got {prediction.shape} and {target.shape}"
            )
        diff = prediction.data - target.data
        self._record = ComputationRecord(diff=diff)
        return Tensor._wrap(np.asarray(np.mean(diff * diff)))

    def _backward(self, record) -> Tensor:
        return Tensor._wrap(2.0 * record.diff / record.diff.size)


class CrossEntropyLoss(Loss):
    """
    Softmax cross entropy between logits of shape (..., C) and integer class
    targets of shape (...).
    """

    def forward(self, logits, targets) -> Tensor:
        logits = logits if isinstance(logits, Tensor) else Tensor(logits)
        raw = targets.data if isinstance(targets, Tensor) else np.asarray(targets)
        target_indices = raw.astype(np.int64)
        if logits.ndim == 0 or target_indices.shape != logits.shape[:-1]:
            raise ShapeMismatchError(
                f"CrossEntropyLoss expects targets of shape {logits.shape[:-1]}, got {target_indices.shape}"
            )
        num_classes = logits.shape[-1]
        if np.any(target_indices < 0) or np.any(target_indices >= num_classes):
            raise IndexOutOfRangeError(f"Targets must be class indices in [0, {num_classes})")

        flat_logits = logits.data.reshape(-1, num_classes)
        flat_targets = target_indices.reshape(-1)
        rows = np.arange(flat_targets.size)
        log_probs = log_softmax(flat_logits, dim=-1)
        loss = -np.mean(log_probs[rows, flat_targets])

        self._record = ComputationRecord(
            probs=softmax(flat_logits, dim=-1), targets=flat_targets, shape=logits.shape
        )
        return Tensor._wrap(np.asarray(loss))

    def _backward(self, record) -> Tensor:
        grad = record.probs.copy()
        grad[np.arange(record.targets.size), record.targets] -= 1.0
        grad /= record.targets.size
        return Tensor._wrap(grad.reshape(record.shape))
