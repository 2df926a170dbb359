class JNNError(Exception):
    """Base class for every error raised by jnn."""


class ShapeMismatchError(JNNError, ValueError):
    """Operand or parameter shapes are incompatible for the requested operation."""


class IndexOutOfRangeError(JNNError, IndexError):
    """A tensor or embedding index lies outside the valid range."""


class IllegalStateError(JNNError, RuntimeError):
    """A module was used outside its lifecycle (e.g. backward without forward)."""


class SerializationError(JNNError, ValueError):
    """A module document could not be produced or understood."""


class UnknownModuleKindError(SerializationError):
    def __init__(self, kind):
        super().__init__(f"Unknown module kind: {kind!r}")
        self.kind = kind


class UnsupportedVersionError(SerializationError):
    def __init__(self, version, supported):
        super().__init__(
            f"Document version {version} is newer than the supported version {supported}"
        )
        self.version = version
        self.supported = supported


class MalformedDocumentError(SerializationError):
    """The document is structurally invalid or does not fit the module it describes."""


class IOFailureError(JNNError, OSError):
    """Reading or writing a module file failed."""
