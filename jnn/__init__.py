
from jnn.config import (
    get_default_dtype,
    set_default_dtype,
    default_dtype,
    configure_logging,
)
from jnn.errors import (
    JNNError,
    ShapeMismatchError,
    IndexOutOfRangeError,
    IllegalStateError,
    SerializationError,
    UnknownModuleKindError,
    UnsupportedVersionError,
    MalformedDocumentError,
    IOFailureError,
)
from jnn.tensor import Tensor, unbroadcast
from jnn.parameter import Parameter
from jnn.module import Module, ModulePhase, ComputationRecord, register_module, MODULE_REGISTRY
from jnn.activation import Activation, ReLU, LeakyReLU, Sigmoid, Tanh, GELU, Softmax
from jnn.nn import Linear, Embedding, Sequential, MLP
from jnn.layernorm import LayerNorm
from jnn.dropout import Dropout
from jnn.loss import Loss, MSELoss, CrossEntropyLoss
from jnn.optimizer import Optimizer, SGD, Adam, AdamW, create_optimizer
from jnn.serialization import serialize, deserialize, dumps, loads, FORMAT_VERSION
from jnn.model_state import ModelState, save_module, load_module, module_exists

__version__ = "1.0.0"
