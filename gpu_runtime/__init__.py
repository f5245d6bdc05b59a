"""GPU runtime: device tensors, kernel cache and dispatcher."""

from gpu_runtime.backend import Backend, DeviceLimits, LaunchGeometry, LocalMemory
from gpu_runtime.config import DEFAULT_CONFIG, RuntimeConfig
from gpu_runtime.context import DeviceContext, default_context, set_default_context, shutdown
from gpu_runtime.dispatcher import Dispatcher
from gpu_runtime.errors import (
    BackendUnavailableError,
    CompilationError,
    GpuRuntimeError,
    InvalidKernelShapeError,
    InvalidParameterError,
    InvalidShapeError,
    InvalidWorkSizeError,
    KernelArgumentError,
    ModelFormatError,
    ReleasedTensorError,
    ShapeMismatchError,
    TruncatedFileError,
    TypeMismatchError,
    UnknownStageTypeError,
)
from gpu_runtime.host_backend import HostBackend, host_kernel
from gpu_runtime.kernel_cache import KERNEL_CACHE, KernelCache, KernelSource
from gpu_runtime.profiler import ProfileResult, profile
from gpu_runtime.tensor import Tensor
from gpu_runtime.work_partition import matvec_partition, validate_work_size

__all__ = [
    "Backend",
    "DeviceLimits",
    "LaunchGeometry",
    "LocalMemory",
    "RuntimeConfig",
    "DEFAULT_CONFIG",
    "DeviceContext",
    "default_context",
    "set_default_context",
    "shutdown",
    "Dispatcher",
    "HostBackend",
    "host_kernel",
    "KERNEL_CACHE",
    "KernelCache",
    "KernelSource",
    "Tensor",
    "profile",
    "ProfileResult",
    "matvec_partition",
    "validate_work_size",
    "GpuRuntimeError",
    "InvalidShapeError",
    "ShapeMismatchError",
    "TypeMismatchError",
    "InvalidKernelShapeError",
    "InvalidParameterError",
    "CompilationError",
    "InvalidWorkSizeError",
    "KernelArgumentError",
    "ReleasedTensorError",
    "BackendUnavailableError",
    "ModelFormatError",
    "TruncatedFileError",
    "UnknownStageTypeError",
]
