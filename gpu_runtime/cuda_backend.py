"""CUDA backend: CuPy buffers and NVRTC-compiled kernels.

Launch geometry arrives in work-items (global size) and work-group shape
(local size); CUDA wants a grid of blocks, so the grid is global / local
per dimension. Without a local size the block shape comes from the config
and the grid is rounded up, so kernels bounds-check their indices.
Work-group scratch requests become dynamic shared memory.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import numpy as np

from gpu_runtime.backend import Backend, DeviceLimits, LaunchGeometry, LocalMemory
from gpu_runtime.config import DEFAULT_CONFIG, RuntimeConfig
from gpu_runtime.errors import BackendUnavailableError, CompilationError

try:
    import cupy as cp

    HAS_CUPY = True
except ImportError:
    cp = None
    HAS_CUPY = False

logger = logging.getLogger(__name__)

_NVRTC_OPTIONS = ("--std=c++11",)


@dataclass
class CUDAProgram:
    source_key: str
    module: Any


class CUDABackend(Backend):
    """CUDA GPU backend using CuPy."""

    def __init__(self, device_id: int = 0, config: RuntimeConfig | None = None):
        if not HAS_CUPY:
            raise BackendUnavailableError("CuPy is not installed. Install with: pip install .[cuda]")
        self._config = config or DEFAULT_CONFIG
        self._device_id = device_id
        try:
            self._cp_device = cp.cuda.Device(device_id)
            attrs = self._cp_device.attributes
        except cp.cuda.runtime.CUDARuntimeError as e:
            raise BackendUnavailableError(f"CUDA device {device_id} unavailable: {e}") from e
        self._limits = DeviceLimits(
            max_workgroup_size=attrs["MaxThreadsPerBlock"],
            max_workitem_sizes=(attrs["MaxBlockDimX"], attrs["MaxBlockDimY"], attrs["MaxBlockDimZ"]),
        )
        logger.info("CUDA device %d: %s", device_id, self._limits)

    @property
    def name(self) -> str:
        return f"cuda:{self._device_id}"

    @property
    def limits(self) -> DeviceLimits:
        return self._limits

    def allocate_zeros(self, size: int) -> Any:
        with self._cp_device:
            return cp.zeros(size, dtype=cp.float32)

    def upload(self, buffer: Any, data: np.ndarray) -> None:
        with self._cp_device:
            buffer.set(np.ascontiguousarray(data, dtype=np.float32))

    def download(self, buffer: Any) -> np.ndarray:
        with self._cp_device:
            return cp.asnumpy(buffer)

    def copy(self, dst: Any, src: Any) -> None:
        with self._cp_device:
            cp.copyto(dst, src)

    def compile_program(self, source_text: str, source_key: str) -> CUDAProgram:
        with self._cp_device:
            module = cp.RawModule(code=source_text, options=_NVRTC_OPTIONS)
            try:
                module.compile()
            except cp.cuda.compiler.CompileException as e:
                raise CompilationError(
                    f"NVRTC build failed for {source_key}", log=str(e), source=source_key,
                ) from e
        return CUDAProgram(source_key, module)

    def get_kernel(self, program: CUDAProgram, entry: str) -> Any:
        with self._cp_device:
            try:
                return program.module.get_function(entry)
            except cp.cuda.driver.CUDADriverError as e:
                raise CompilationError(
                    f"Kernel {entry!r} not found in {program.source_key}",
                    log=str(e), source=program.source_key, entry=entry,
                ) from e

    def kernel_max_workgroup_size(self, kernel: Any) -> int:
        return int(kernel.max_threads_per_block)

    def launch(self, kernel: Any, geometry: LaunchGeometry, args: list, blocking: bool) -> None:
        shared_mem = sum(a.nbytes for a in args if isinstance(a, LocalMemory))
        kernel_args = tuple(a for a in args if not isinstance(a, LocalMemory))
        grid, block = self._grid_and_block(geometry)
        with self._cp_device:
            kernel(grid, block, kernel_args, shared_mem=shared_mem)
            if blocking:
                cp.cuda.get_current_stream().synchronize()

    def synchronize(self) -> None:
        self._cp_device.synchronize()

    def _grid_and_block(self, geometry: LaunchGeometry) -> tuple[tuple[int, ...], tuple[int, ...]]:
        global_size = geometry.global_size
        if geometry.local_size is not None:
            block = geometry.local_size
            grid = tuple(g // b for g, b in zip(global_size, block))
            return grid, block
        if geometry.dims == 1:
            defaults = (self._config.block_1d,)
        elif geometry.dims == 2:
            defaults = self._config.block_2d
        else:
            defaults = self._config.block_3d
        block = tuple(min(g, d) for g, d in zip(global_size, defaults))
        grid = tuple((g + b - 1) // b for g, b in zip(global_size, block))
        return grid, block
