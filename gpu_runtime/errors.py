"""Error hierarchy for the GPU runtime and the stage layer.

Every error carries an optional ``context`` dict that is appended to the
message, so shapes and kernel names show up in tracebacks without each raise
site formatting them by hand.
"""

from __future__ import annotations


class GpuRuntimeError(Exception):
    """Base class for all runtime errors."""

    def __init__(self, message: str, context: dict | None = None):
        self.message = message
        self.context = context or {}
        super().__init__(self._format_message())

    def _format_message(self) -> str:
        if not self.context:
            return self.message
        details = ", ".join(f"{key}={value!r}" for key, value in self.context.items())
        return f"{self.message} ({details})"


class InvalidShapeError(GpuRuntimeError, ValueError):
    """Bad tensor extents, or a tensor whose shape does not fit the stage."""


class ShapeMismatchError(InvalidShapeError):
    """Element counts of two shapes that must agree do not agree."""


class TypeMismatchError(GpuRuntimeError, TypeError):
    """A stage received an input that is not a Tensor."""


class InvalidKernelShapeError(GpuRuntimeError, ValueError):
    """Normalization kernel is not odd-sized or has channel depth != 1."""


class InvalidParameterError(GpuRuntimeError, ValueError):
    """A stage construction parameter is out of range."""


class CompilationError(GpuRuntimeError):
    """Device kernel build failed. Fatal for the stage that needs the kernel."""

    def __init__(self, message: str, log: str = "", source: str = "", entry: str = ""):
        self.log = log
        self.source = source
        self.entry = entry
        super().__init__(message, {"source": source, "entry": entry})

    def _format_message(self) -> str:
        text = super()._format_message()
        if self.log:
            text += "\n" + self.log
        return text


class InvalidWorkSizeError(GpuRuntimeError, ValueError):
    """Illegal global/local work partition for a launch."""


class KernelArgumentError(GpuRuntimeError):
    """Arguments bound to the current kernel are incomplete or bound too early."""


class ReleasedTensorError(GpuRuntimeError):
    """A tensor's device buffer was used after release()."""


class BackendUnavailableError(GpuRuntimeError):
    """The requested device backend cannot be created on this machine."""


class ModelFormatError(GpuRuntimeError):
    """Malformed model file."""


class TruncatedFileError(ModelFormatError):
    """Fewer bytes are available than the record header declares."""


class UnknownStageTypeError(ModelFormatError):
    """A record carries a stage type tag with no registered loader."""
