"""Host backend: numpy buffers and numpy reference kernels.

Kernel sources are still resolved and "compiled": the program is scanned
for ``__global__ void <entry>(`` declarations, and each entry point must also
have a numpy reference implementation registered with ``host_kernel``.
Launches run the reference implementation synchronously, so ``blocking`` has
no effect here. Device limits are configurable, which makes this backend the
stand-in device for tests of work partitioning and argument binding.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass

import numpy as np

from gpu_runtime.backend import Backend, DeviceLimits, LaunchGeometry, LocalMemory
from gpu_runtime.errors import CompilationError

logger = logging.getLogger(__name__)

HostKernelFn = Callable[..., None]

# entry name -> reference implementation, called as fn(geometry, *args)
_HOST_KERNELS: dict[str, HostKernelFn] = {}

_ENTRY_RE = re.compile(r"__global__\s+void\s+(\w+)\s*\(")


def host_kernel(entry: str) -> Callable[[HostKernelFn], HostKernelFn]:
    """Register ``fn`` as the host implementation of kernel ``entry``."""
    def decorator(fn: HostKernelFn) -> HostKernelFn:
        _HOST_KERNELS[entry] = fn
        return fn
    return decorator


def registered_host_kernels() -> list[str]:
    return sorted(_HOST_KERNELS)


@dataclass(frozen=True)
class HostProgram:
    source_key: str
    entries: frozenset[str]


@dataclass(frozen=True)
class HostKernel:
    entry: str
    fn: HostKernelFn


class HostBackend(Backend):
    """Backend executing kernels as numpy code on the calling thread."""

    def __init__(
        self,
        limits: DeviceLimits | None = None,
        kernel_max_workgroup_size: int | None = None,
    ):
        self._limits = limits or DeviceLimits()
        self._kernel_max = kernel_max_workgroup_size or self._limits.max_workgroup_size
        self.synchronize_count = 0

    @property
    def name(self) -> str:
        return "host"

    @property
    def limits(self) -> DeviceLimits:
        return self._limits

    def allocate_zeros(self, size: int) -> np.ndarray:
        return np.zeros(size, dtype=np.float32)

    def upload(self, buffer: np.ndarray, data: np.ndarray) -> None:
        buffer[:] = data

    def download(self, buffer: np.ndarray) -> np.ndarray:
        return buffer.copy()

    def copy(self, dst: np.ndarray, src: np.ndarray) -> None:
        dst[:] = src

    def compile_program(self, source_text: str, source_key: str) -> HostProgram:
        entries = frozenset(_ENTRY_RE.findall(source_text))
        if not entries:
            raise CompilationError(
                f"Program build failed for {source_key}",
                log=f"{source_key}: error: no __global__ entry points declared",
                source=source_key,
            )
        logger.debug("Host program %s declares %s", source_key, sorted(entries))
        return HostProgram(source_key, entries)

    def get_kernel(self, program: HostProgram, entry: str) -> HostKernel:
        if entry not in program.entries:
            raise CompilationError(
                f"Kernel {entry!r} not found in {program.source_key}",
                log=f'{program.source_key}: error: identifier "{entry}" is undefined',
                source=program.source_key,
                entry=entry,
            )
        fn = _HOST_KERNELS.get(entry)
        if fn is None:
            raise CompilationError(
                f"No host implementation registered for kernel {entry!r}",
                log=f"registered host kernels: {', '.join(registered_host_kernels()) or '<none>'}",
                source=program.source_key,
                entry=entry,
            )
        return HostKernel(entry, fn)

    def kernel_max_workgroup_size(self, kernel: HostKernel) -> int:
        return self._kernel_max

    def launch(self, kernel: HostKernel, geometry: LaunchGeometry, args: list, blocking: bool) -> None:
        # Work-group scratch is private to the reference implementation.
        data_args = [a for a in args if not isinstance(a, LocalMemory)]
        kernel.fn(geometry, *data_args)

    def synchronize(self) -> None:
        self.synchronize_count += 1
