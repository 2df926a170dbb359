import enum
from types import SimpleNamespace

from jnn.tensor import Tensor
from jnn.parameter import Parameter
from jnn.errors import IllegalStateError

# kind tag -> Module subclass, filled by @register_module
MODULE_REGISTRY = {}


def register_module(kind: str):
    """
    Class decorator that makes a Module subclass known to the serializer under `kind`.

    Args:
        kind: The tag written to (and read from) the `kind` field of module documents
    """
    def decorator(cls):
        existing = MODULE_REGISTRY.get(kind)
        if existing is not None and existing is not cls:
            raise ValueError(f"Module kind {kind!r} is already registered to {existing.__name__}")
        cls.kind = kind
        MODULE_REGISTRY[kind] = cls
        return cls
    return decorator


class ModulePhase(enum.Enum):
    IDLE = "idle"
    FORWARD_DONE = "forward_done"
    BACKWARD_DONE = "backward_done"


class ComputationRecord(SimpleNamespace):
    """Tensors a forward call saved for the matching backward call."""


class Module:
    """
    Base class for every unit of computation.

    Assigning a Parameter or a Module to an attribute registers it, in
    assignment order, which fixes the traversal order of `parameters()` and of
    the serialized document. Child modules are owned outright: a module can be
    attached to one parent only and never into its own subtree.

    Subclasses implement `forward` (calling `save_for_backward`), `_backward`
    and `describe`.
    """

    kind = None

    def __init__(self):
        # store child modules and parameters
        self._modules = {}
        self._parameters = {}
        self._attached = False
        self._record = None
        self._phase = ModulePhase.IDLE
        self.training = True

    def __setattr__(self, name, value):
        registry = self.__dict__.get('_parameters')
        if registry is not None:
            # auto-register parameters and submodules, replacing a previous one of the same name
            if isinstance(value, Parameter):
                self.register_parameter(name, value, replace=True)
            elif isinstance(value, Module):
                self.add_module(name, value, replace=True)
            else:
                self._parameters.pop(name, None)
                old = self._modules.pop(name, None)
                if old is not None:
                    old._attached = False
        super().__setattr__(name, value)

    # ------------------------------------------------------------- registration

    def register_parameter(self, name: str, param: Parameter, replace: bool = False) -> Parameter:
        if not isinstance(param, Parameter):
            raise TypeError(f"Expected a Parameter, got {type(param).__name__}")
        if name in self._modules or (name in self._parameters and not replace):
            raise IllegalStateError(f"Name '{name}' is already used in {type(self).__name__}")
        param.name = name
        self._parameters[name] = param
        return param

    def add_module(self, name: str, module: "Module", replace: bool = False) -> "Module":
        if not isinstance(module, Module):
            raise TypeError(f"Expected a Module, got {type(module).__name__}")
        if name in self._parameters or (name in self._modules and not replace):
            raise IllegalStateError(f"Name '{name}' is already used in {type(self).__name__}")
        if module is self or any(m is self for m in module.modules()):
            raise IllegalStateError("Attaching this module would create a cycle")
        previous = self._modules.get(name)
        if previous is module:
            return module
        if module._attached:
            raise IllegalStateError(f"{type(module).__name__} is already attached to another module")
        if previous is not None:
            previous._attached = False
        module._attached = True
        self._modules[name] = module
        return module

    # ---------------------------------------------------------------- traversal

    def parameters(self):
        """All parameters of this module and its children, in attach order."""
        params = list(self._parameters.values())
        for m in self._modules.values():
            params.extend(m.parameters())
        return params

    def named_parameters(self, prefix=''):
        for name, param in self._parameters.items():
            yield (f"{prefix}.{name}" if prefix else name), param
        for name, module in self._modules.items():
            yield from module.named_parameters(f"{prefix}.{name}" if prefix else name)

    def own_parameters(self):
        return list(self._parameters.values())

    def children(self):
        return list(self._modules.values())

    def named_children(self):
        return list(self._modules.items())

    def modules(self):
        """This module followed by all descendants, depth-first in attach order."""
        result = [self]
        for m in self._modules.values():
            result.extend(m.modules())
        return result

    def num_parameters(self) -> int:
        return sum(p.size for p in self.parameters())

    # ---------------------------------------------------------------- lifecycle

    @property
    def phase(self) -> ModulePhase:
        return self._phase

    def save_for_backward(self, **tensors) -> ComputationRecord:
        # last forward wins: an unconsumed record is overwritten
        self._record = ComputationRecord(**tensors)
        self._phase = ModulePhase.FORWARD_DONE
        return self._record

    def zero_grad(self):
        """Clear every gradient in the tree and return finished modules to IDLE."""
        for p in self.parameters():
            p.zero_gradient()
        for m in self.modules():
            if m._phase is ModulePhase.BACKWARD_DONE:
                m._phase = ModulePhase.IDLE

    def train(self, mode: bool = True):
        for m in self.modules():
            m.training = mode
        return self

    def eval(self):
        return self.train(False)

    # -------------------------------------------------------------- computation

    def forward(self, x: Tensor) -> Tensor:
        raise NotImplementedError

    def backward(self, grad_output) -> Tensor:
        """
        Propagate `grad_output` (gradient w.r.t. this module's last output) back
        through the module, accumulating parameter gradients.

        Returns:
            Tensor: gradient w.r.t. the input of the preceding forward call
        """
        record = self._record
        if record is None:
            raise IllegalStateError(
                f"{type(self).__name__}.backward() called without a preceding forward()"
            )
        if not isinstance(grad_output, Tensor):
            grad_output = Tensor(grad_output)
        grad_input = self._backward(record, grad_output)
        self._record = None
        self._phase = ModulePhase.BACKWARD_DONE
        return grad_input

    def _backward(self, record: ComputationRecord, grad_output: Tensor) -> Tensor:
        raise NotImplementedError

    def __call__(self, *args, **kwargs):
        # for x = model(x)
        return self.forward(*args, **kwargs)

    # ------------------------------------------------------------ configuration

    def describe(self) -> dict:
        """Static configuration, enough to rebuild the module with `from_config`."""
        raise NotImplementedError

    @classmethod
    def from_config(cls, config: dict) -> "Module":
        return cls(**config)

    def extra_repr(self) -> str:
        return ", ".join(f"{k}={v!r}" for k, v in self.describe().items())

    def __repr__(self):
        name = type(self).__name__
        if not self._modules:
            return f"{name}({self.extra_repr()})"
        lines = [f"{name}({self.extra_repr()}"]
        for child_name, child in self._modules.items():
            child_repr = repr(child).replace("\n", "\n  ")
            lines.append(f"  ({child_name}): {child_repr}")
        return "\n".join(lines) + "\n)"
