import logging

import numpy as np

logger = logging.getLogger(__name__)


class Optimizer:
    """
    Base class for update rules.

    `step` reads each parameter's accumulated gradient and mutates its value in
    place. Parameters without a gradient are skipped. Gradients are never
    cleared by `step`; call `zero_grad` (or the module's `zero_grad`) when the
    accumulation window is over.
    """

    def __init__(self, parameters=(), lr=1e-3):
        if lr <= 0:
            raise ValueError(f"Learning rate must be positive, got {lr}")
        self.lr = lr
        # Convert parameters to list if it's a generator
        self.parameters = list(parameters)

    def step(self, parameters=None):
        """
        Perform a single optimization step.

        Args:
            parameters: Sequence of parameters to update (default: the ones given to the constructor)
        """
        params = self.parameters if parameters is None else list(parameters)
        self._begin_step()
        updated = 0
        for param in params:
            if not param.requires_grad or param.grad is None:
                logger.debug("Skipping parameter %r: no gradient", param.name)
                continue
            self._update(param, param.grad.data)
            updated += 1
        logger.debug("%s step updated %d of %d parameters", type(self).__name__, updated, len(params))
        return updated

    def _begin_step(self):
        pass

    def _update(self, param, grad):
        raise NotImplementedError

    def zero_grad(self):
        """Set gradients of all parameters back to the unallocated state."""
        for param in self.parameters:
            param.zero_gradient()

    def clip_gradients(self, min_value, max_value):
        """Clip the gradients elementwise to [min_value, max_value] to prevent explosion."""
        for param in self.parameters:
            if param.grad is not None:
                np.clip(param.grad.data, min_value, max_value, out=param.grad.data)


class SGD(Optimizer):
    """Stochastic gradient descent with optional momentum and L2 weight decay."""

    def __init__(self, parameters=(), lr=0.01, momentum=0.0, weight_decay=0.0):
        super().__init__(parameters, lr)
        self.momentum = momentum
        self.weight_decay = weight_decay
        self.state = {}

    def _update(self, param, grad):
        if self.weight_decay != 0:
            grad = grad + self.weight_decay * param.data
        if self.momentum != 0:
            velocity = self.state.get(id(param))
            velocity = grad.copy() if velocity is None else self.momentum * velocity + grad
            self.state[id(param)] = velocity
            grad = velocity
        param.value().sub_(self.lr * grad)


class Adam(Optimizer):
    """Adam optimizer implementation following PyTorch style."""

    def __init__(self, parameters=(), lr=0.001, betas=(0.9, 0.999), eps=1e-8, weight_decay=0.0):
        """
        Initialize Adam optimizer.

        Args:
            parameters: Iterable of parameters to optimize (typically model.parameters())
            lr: Learning rate (default: 0.001)
            betas: Coefficients for computing running averages of gradient and its square (default: (0.9, 0.999))
            eps: Term added to denominator for numerical stability (default: 1e-8)
            weight_decay: Weight decay (L2 penalty) (default: 0.0)
        """
        super().__init__(parameters, lr)
        self.beta1, self.beta2 = betas
        self.eps = eps
        self.weight_decay = weight_decay

        # moment estimates per parameter, created on first update
        self.state = {}
        self.t = 0  # time step

    def _begin_step(self):
        self.t += 1

    def _adam_step(self, param, grad):
        param_state = self.state.get(id(param))
        if param_state is None:
            param_state = self.state[id(param)] = {
                'm': np.zeros_like(param.data),  # First moment estimate
                'v': np.zeros_like(param.data),  # Second moment estimate
            }

        # Update biased first and second moment estimates
        m = self.beta1 * param_state['m'] + (1 - self.beta1) * grad
        v = self.beta2 * param_state['v'] + (1 - self.beta2) * (grad * grad)
        param_state['m'] = m
        param_state['v'] = v

        # Bias-corrected estimates
        m_hat = m / (1 - self.beta1 ** self.t)
        v_hat = v / (1 - self.beta2 ** self.t)
        return self.lr * m_hat / (np.sqrt(v_hat) + self.eps)

    def _update(self, param, grad):
        # Add weight decay
        if self.weight_decay != 0:
            grad = grad + self.weight_decay * param.data
        param.value().sub_(self._adam_step(param, grad))


class AdamW(Adam):
    """Adam with decoupled weight decay."""

    def __init__(self, parameters=(), lr=0.001, betas=(0.9, 0.999), eps=1e-8, weight_decay=0.01):
        super().__init__(parameters, lr, betas, eps, weight_decay=0.0)
        self.decoupled_weight_decay = weight_decay

    def _update(self, param, grad):
        decay = self.lr * self.decoupled_weight_decay * param.data
        step = self._adam_step(param, grad)
        param.value().sub_(step + decay)


OPTIMIZERS = {
    "sgd": SGD,
    "adam": Adam,
    "adamw": AdamW,
}


def create_optimizer(name: str, parameters, **options) -> Optimizer:
    """
    Build an optimizer by name ("sgd", "adam" or "adamw").

    The name is required; unknown names raise ValueError.
    """
    try:
        cls = OPTIMIZERS[name.lower()]
    except KeyError:
        raise ValueError(f"Unknown optimizer {name!r}, expected one of {sorted(OPTIMIZERS)}") from None
    return cls(parameters, **options)
