import os
import logging
from contextlib import contextmanager

import numpy as np

SUPPORTED_DTYPES = (np.dtype(np.float32), np.dtype(np.float64))

_DTYPE_ALIASES = {
    "f32": "float32",
    "float": "float32",
    "float32": "float32",
    "f64": "float64",
    "double": "float64",
    "float64": "float64",
}

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def resolve_dtype(dtype) -> np.dtype:
    """
    Normalize a dtype name or type to a supported numpy dtype.

    Args:
        dtype: None (use the default), a numpy dtype/type, or a name such as "float32" or "f64"

    Returns:
        np.dtype: float32 or float64
    """
    if dtype is None:
        return _default_dtype
    if isinstance(dtype, str):
        name = _DTYPE_ALIASES.get(dtype.lower())
        if name is None:
            raise ValueError(f"Unsupported dtype {dtype!r}, expected one of float32, float64")
        return np.dtype(name)
    resolved = np.dtype(dtype)
    if resolved not in SUPPORTED_DTYPES:
        raise ValueError(f"Unsupported dtype {resolved}, expected one of float32, float64")
    return resolved


def _env_dtype() -> np.dtype:
    return resolve_dtype(os.environ.get("JNN_DTYPE", "float64"))


_default_dtype = _env_dtype()


def get_default_dtype() -> np.dtype:
    return _default_dtype


def set_default_dtype(dtype) -> np.dtype:
    """Set the process-wide default precision and return the previous one."""
    global _default_dtype
    previous = _default_dtype
    _default_dtype = resolve_dtype(dtype)
    return previous


@contextmanager
def default_dtype(dtype):
    """Temporarily change the default precision inside a `with` block."""
    previous = set_default_dtype(dtype)
    try:
        yield _default_dtype
    finally:
        set_default_dtype(previous)


def configure_logging(level=None) -> logging.Logger:
    """
    Attach a stream handler to the `jnn` logger.

    Args:
        level: Logging level name or number (default: JNN_LOG_LEVEL or INFO)

    Returns:
        logging.Logger: the package logger
    """
    if level is None:
        level = os.getenv('JNN_LOG_LEVEL', 'INFO')
    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)

    logger = logging.getLogger('jnn')
    logger.setLevel(level)
    if not any(getattr(h, '_jnn_handler', False) for h in logger.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._jnn_handler = True
        logger.addHandler(handler)
    return logger
