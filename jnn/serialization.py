import json
import logging
from math import prod

import numpy as np

from jnn.config import SUPPORTED_DTYPES
from jnn.errors import (
    SerializationError,
    UnknownModuleKindError,
    UnsupportedVersionError,
    MalformedDocumentError,
    ShapeMismatchError,
)
from jnn.module import Module, MODULE_REGISTRY
from jnn.tensor import Tensor

# Configure module logger
logger = logging.getLogger(__name__)

FORMAT_VERSION = "1.0"
SUPPORTED_MAJOR_VERSION = 1

_PRIMITIVES = (type(None), bool, int, float, str)
_DTYPE_NAMES = {dt.name for dt in SUPPORTED_DTYPES}


# ---------------------------------------------------------------------------
# module -> document
# ---------------------------------------------------------------------------

def serialize(module: Module) -> dict:
    """
    Snapshot a module tree.

    The document is the root node plus a "version" field. Each node holds
    "kind", "config", "parameters" (name, shape, dtype and flat values) and,
    for modules with children, "children" in attach order.

    Args:
        module: Root of the tree

    Returns:
        dict: The document (JSON-compatible)
    """
    document = {"version": FORMAT_VERSION}
    document.update(_serialize_node(module))
    return document


def _serialize_node(module: Module) -> dict:
    kind = module.kind
    if kind is None or kind not in MODULE_REGISTRY:
        raise SerializationError(f"{type(module).__name__} is not a registered module kind")

    config = {key: _config_value(value) for key, value in module.describe().items()}
    for key, value in config.items():
        if not _is_config_value(value):
            raise SerializationError(
                f"Config field {kind}.{key} has non-primitive value {value!r}"
            )

    node = {
        "kind": kind,
        "config": config,
        "parameters": [_serialize_parameter(p) for p in module.own_parameters()],
    }
    children = module.children()
    if children or getattr(module, "is_container", False):
        node["children"] = [_serialize_node(child) for child in children]
    logger.debug("Serialized %s node with %d parameters", kind, len(node["parameters"]))
    return node


def _config_value(value):
    # numpy scalars (np.int64, np.float32, np.bool_) become plain Python values
    if isinstance(value, np.generic):
        return value.item()
    if isinstance(value, list):
        return [v.item() if isinstance(v, np.generic) else v for v in value]
    return value


def _is_config_value(value) -> bool:
    if isinstance(value, _PRIMITIVES):
        return True
    if isinstance(value, list):
        return all(isinstance(v, _PRIMITIVES) for v in value)
    return False


def _serialize_parameter(param) -> dict:
    return {
        "name": param.name,
        "shape": list(param.shape),
        "dtype": param.dtype.name,
        "values": param.data.reshape(-1).tolist(),
    }


def dumps(module: Module, indent=None) -> str:
    return json.dumps(serialize(module), indent=indent)


# ---------------------------------------------------------------------------
# document -> module
# ---------------------------------------------------------------------------

def deserialize(document: dict) -> Module:
    """
    Rebuild a module tree from a document.

    The whole document is validated before the first module is constructed,
    so an unknown kind or an unsupported version anywhere in it fails without
    building anything. An unregistered root kind is reported even when the
    version field is missing or invalid.

    Raises:
        UnsupportedVersionError: The document's major version is newer than this reader
        UnknownModuleKindError: A node's kind is not registered
        MalformedDocumentError: Missing or ill-typed fields, or a node that does not fit its module
        ShapeMismatchError: A stored parameter shape differs from the rebuilt parameter
    """
    _validate_document(document)
    return _build_node(document)


def loads(text: str) -> Module:
    try:
        document = json.loads(text)
    except json.JSONDecodeError as e:
        raise MalformedDocumentError(f"Module document is not valid JSON: {e}") from e
    return deserialize(document)


def parse_version(version) -> tuple:
    if not isinstance(version, str):
        raise MalformedDocumentError(f"Document version must be a string, got {version!r}")
    parts = version.split(".")
    try:
        major, minor = int(parts[0]), int(parts[1]) if len(parts) > 1 else 0
    except ValueError:
        raise MalformedDocumentError(f"Invalid document version {version!r}") from None
    return major, minor


def _validate_document(document):
    if not isinstance(document, dict):
        raise MalformedDocumentError("Module document must be a JSON object")
    # an unknown root kind is reported before any version problem
    kind = document.get("kind")
    if isinstance(kind, str) and kind not in MODULE_REGISTRY:
        raise UnknownModuleKindError(kind)
    if "version" not in document:
        raise MalformedDocumentError("Module document has no 'version' field")
    major, _ = parse_version(document["version"])
    if major > SUPPORTED_MAJOR_VERSION:
        raise UnsupportedVersionError(document["version"], FORMAT_VERSION)
    _validate_node(document, "$")


def _validate_node(node, path):
    if not isinstance(node, dict):
        raise MalformedDocumentError(f"{path}: node must be an object")

    kind = node.get("kind")
    if not isinstance(kind, str):
        raise MalformedDocumentError(f"{path}: missing 'kind'")
    if kind not in MODULE_REGISTRY:
        raise UnknownModuleKindError(kind)

    config = node.get("config")
    if not isinstance(config, dict):
        raise MalformedDocumentError(f"{path}: 'config' must be an object")

    parameters = node.get("parameters")
    if not isinstance(parameters, list):
        raise MalformedDocumentError(f"{path}: 'parameters' must be a list")
    for i, entry in enumerate(parameters):
        _validate_parameter(entry, f"{path}.parameters[{i}]")

    children = node.get("children", [])
    if not isinstance(children, list):
        raise MalformedDocumentError(f"{path}: 'children' must be a list")
    for i, child in enumerate(children):
        _validate_node(child, f"{path}.children[{i}]")


def _validate_parameter(entry, path):
    if not isinstance(entry, dict):
        raise MalformedDocumentError(f"{path}: parameter must be an object")
    if not isinstance(entry.get("name"), str):
        raise MalformedDocumentError(f"{path}: missing parameter 'name'")

    shape = entry.get("shape")
    if not isinstance(shape, list) or not all(type(d) is int and d >= 0 for d in shape):
        raise MalformedDocumentError(f"{path}: 'shape' must be a list of non-negative integers")
    if entry.get("dtype") not in _DTYPE_NAMES:
        raise MalformedDocumentError(f"{path}: unsupported dtype {entry.get('dtype')!r}")

    values = entry.get("values")
    if not isinstance(values, list):
        raise MalformedDocumentError(f"{path}: 'values' must be a list")
    if len(values) != prod(shape):
        raise MalformedDocumentError(
            f"{path}: {len(values)} values do not fill shape {shape}"
        )
    if not all(type(v) in (int, float) for v in values):
        raise MalformedDocumentError(f"{path}: 'values' must contain only numbers")


def _build_node(node) -> Module:
    cls = MODULE_REGISTRY[node["kind"]]
    try:
        module = cls.from_config(dict(node["config"]))
    except (TypeError, ValueError) as e:
        raise MalformedDocumentError(f"Cannot build {node['kind']} from config {node['config']}: {e}") from e

    children = node.get("children", [])
    if getattr(module, "is_container", False):
        for child in children:
            module.append(_build_node(child))
    else:
        # composite modules build their children in the constructor
        _hydrate_children(module, children)

    _restore_parameters(module, node["parameters"])
    return module


def _hydrate_existing(module: Module, node):
    if module.kind != node["kind"]:
        raise MalformedDocumentError(f"Expected a {module.kind} node, found {node['kind']}")
    if module.describe() != node["config"]:
        raise MalformedDocumentError(
            f"{module.kind} config {node['config']} does not match the rebuilt module {module.describe()}"
        )
    _hydrate_children(module, node.get("children", []))
    _restore_parameters(module, node["parameters"])


def _hydrate_children(module: Module, children):
    existing = module.children()
    if len(existing) != len(children):
        raise MalformedDocumentError(
            f"{module.kind} has {len(existing)} child modules but the document lists {len(children)}"
        )
    for child, child_node in zip(existing, children):
        _hydrate_existing(child, child_node)


def _restore_parameters(module: Module, entries):
    owned = module._parameters
    names = [entry["name"] for entry in entries]
    if names != list(owned):
        raise MalformedDocumentError(
            f"{module.kind} owns parameters {list(owned)} but the document lists {names}"
        )
    for entry in entries:
        param = owned[entry["name"]]
        shape = tuple(entry["shape"])
        if shape != param.shape:
            raise ShapeMismatchError(
                f"{module.kind}.{param.name}: stored shape {shape} does not match {param.shape}"
            )
        if entry["dtype"] != param.dtype.name:
            raise MalformedDocumentError(
                f"{module.kind}.{param.name}: stored dtype {entry['dtype']} does not match {param.dtype.name}"
            )
        values = np.asarray(entry["values"], dtype=param.dtype).reshape(shape)
        param.set_value(Tensor._wrap(values))
