"""Device context: one backend, its dispatcher, and a bounded host worker pool.

Tensors and stages take a context explicitly; when they are given none they
use the process-wide default context, created on first use and torn down at
interpreter exit.
"""

from __future__ import annotations

import atexit
import logging
import threading
from concurrent.futures import ThreadPoolExecutor

from gpu_runtime.backend import Backend
from gpu_runtime.config import RuntimeConfig
from gpu_runtime.dispatcher import Dispatcher
from gpu_runtime.errors import BackendUnavailableError
from gpu_runtime.host_backend import HostBackend
from gpu_runtime.kernel_cache import KERNEL_CACHE, KernelCache

logger = logging.getLogger(__name__)


def create_backend(config: RuntimeConfig) -> Backend:
    """Instantiate the backend named by ``config.backend``.

    ``auto`` prefers CUDA and uses the host backend when no CUDA device is
    usable.
    """
    if config.backend == "host":
        return HostBackend()

    from gpu_runtime.cuda_backend import CUDABackend

    if config.backend == "cuda":
        return CUDABackend(config.device_id, config)
    try:
        return CUDABackend(config.device_id, config)
    except BackendUnavailableError as e:
        logger.info("CUDA backend unavailable (%s); using host backend", e)
        return HostBackend()


class DeviceContext:
    """Everything stages need to allocate tensors and dispatch kernels."""

    def __init__(
        self,
        config: RuntimeConfig | None = None,
        backend: Backend | None = None,
        cache: KernelCache | None = None,
    ):
        self.config = config or RuntimeConfig.from_env()
        self.backend = backend or create_backend(self.config)
        self.cache = cache if cache is not None else KERNEL_CACHE
        self.dispatcher = Dispatcher(self.backend, self.cache, self.config.kernel_root)
        self._host_pool: ThreadPoolExecutor | None = None
        self._pool_lock = threading.Lock()
        logger.info("Device context on backend %s", self.backend.name)

    @property
    def host_pool(self) -> ThreadPoolExecutor:
        """Worker pool for host-side bulk work. Never used to submit kernels."""
        with self._pool_lock:
            if self._host_pool is None:
                self._host_pool = ThreadPoolExecutor(
                    max_workers=self.config.host_workers,
                    thread_name_prefix="gpu-runtime-host",
                )
            return self._host_pool

    def finish(self) -> None:
        self.dispatcher.finish()

    def close(self) -> None:
        self.finish()
        with self._pool_lock:
            if self._host_pool is not None:
                self._host_pool.shutdown(wait=True)
                self._host_pool = None

    def __enter__(self) -> DeviceContext:
        return self

    def __exit__(self, *exc) -> None:
        self.close()


_default_context: DeviceContext | None = None
_default_lock = threading.Lock()


def default_context() -> DeviceContext:
    """Return the process-wide context, creating it on first use."""
    global _default_context
    with _default_lock:
        if _default_context is None:
            _default_context = DeviceContext()
        return _default_context


def set_default_context(context: DeviceContext | None) -> None:
    global _default_context
    with _default_lock:
        _default_context = context


def shutdown() -> None:
    """Close the default context and drop every compiled kernel."""
    global _default_context
    with _default_lock:
        if _default_context is not None:
            _default_context.close()
            _default_context = None
    KERNEL_CACHE.clear()


atexit.register(shutdown)
