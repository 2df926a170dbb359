import os
import json
import logging
import tempfile
from contextlib import contextmanager
from typing import Dict, Any, Optional

from jnn.errors import IOFailureError, MalformedDocumentError, SerializationError
from jnn.serialization import serialize, deserialize

logger = logging.getLogger(__name__)


def _current_umask() -> int:
    umask = os.umask(0)
    os.umask(umask)
    return umask


@contextmanager
def _atomic_writer(filepath: str):
    """
    Open a temporary file next to `filepath` for writing and move it over
    `filepath` once the block completes. On any failure the temporary file is
    removed and `filepath` is left untouched.
    """
    dirpath = os.path.dirname(os.path.abspath(filepath))
    fd, tmp_path = tempfile.mkstemp(prefix=".jnn-", suffix=".tmp", dir=dirpath)
    try:
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            yield f
            f.flush()
            os.fsync(f.fileno())
        # mkstemp creates the file as 0600; give it the mode a plain open() would
        os.chmod(tmp_path, 0o666 & ~_current_umask())
        os.replace(tmp_path, filepath)
    except BaseException:
        try:
            os.remove(tmp_path)
        except OSError as cleanup_error:
            logger.warning(f"Could not remove temporary file {tmp_path}: {cleanup_error}")
        raise


class ModelState:
    """Utility class for saving and loading modules"""

    @staticmethod
    def save_module(module, filepath: str, metadata: Optional[Dict[str, Any]] = None) -> None:
        """
        Save a module (topology, configuration and parameter values) to a JSON file.

        Args:
            module: The module to save
            filepath: Path to save the module to
            metadata: Additional JSON-serializable information (like training config)

        Raises:
            SerializationError: The module or metadata cannot be represented
            IOFailureError: The file could not be written
        """
        document = serialize(module)

        # Save additional info if provided
        if metadata:
            document['metadata'] = metadata

        try:
            # Create parent directory if it exists in the path
            dirpath = os.path.dirname(filepath)
            if dirpath:
                os.makedirs(dirpath, exist_ok=True)

            with _atomic_writer(filepath) as f:
                json.dump(document, f, indent=2)
        except (TypeError, ValueError) as e:
            raise SerializationError(f"Cannot encode module document for {filepath}: {e}") from e
        except OSError as e:
            raise IOFailureError(f"Failed to write module to {filepath}: {e}") from e

        logger.info(f"Module saved to {filepath}")

    @staticmethod
    def load_module(filepath: str):
        """
        Load a module from a file written by `save_module`.

        Args:
            filepath: Path to load the module from

        Returns:
            Tuple of (module, metadata)

        Raises:
            IOFailureError: The file does not exist or cannot be read
            SerializationError: The file content is not a valid module document
        """
        if not os.path.exists(filepath):
            raise IOFailureError(f"Module file not found: {filepath}")

        try:
            with open(filepath, 'r', encoding='utf-8') as f:
                document = json.load(f)
        except json.JSONDecodeError as e:
            raise MalformedDocumentError(f"Module file {filepath} is not valid JSON: {e}") from e
        except UnicodeDecodeError as e:
            raise MalformedDocumentError(f"Module file {filepath} is not UTF-8 text: {e}") from e
        except OSError as e:
            raise IOFailureError(f"Failed to read module from {filepath}: {e}") from e

        metadata = document.pop('metadata', {}) if isinstance(document, dict) else {}
        module = deserialize(document)

        logger.info(f"Module loaded from {filepath}")
        return module, metadata

    @staticmethod
    def module_exists(filepath: str) -> bool:
        """Check if a module file exists"""
        return os.path.exists(filepath)


# Utility functions for easy use
def save_module(module, filepath: str, metadata: Optional[Dict[str, Any]] = None) -> None:
    """Convenience function to save a module"""
    ModelState.save_module(module, filepath, metadata)


def load_module(filepath: str):
    """Convenience function to load a module"""
    return ModelState.load_module(filepath)


def module_exists(filepath: str) -> bool:
    """Convenience function to check if a module file exists"""
    return ModelState.module_exists(filepath)
