"""Runtime configuration for device contexts."""

from __future__ import annotations

import os
from dataclasses import dataclass, replace

_PACKAGE_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))

# Kernel sources referenced by file path live here unless overridden.
DEFAULT_KERNEL_ROOT = os.path.join(_PACKAGE_ROOT, "gpu_stages", "kernels")

_BACKENDS = ("auto", "host", "cuda")
_LINEAR_STRATEGIES = ("threads", "simple")
_ENV_PREFIX = "GPU_RUNTIME_"


@dataclass(frozen=True)
class RuntimeConfig:
    """Settings shared by every stage running on one device context."""
    backend: str = "auto"
    device_id: int = 0
    kernel_root: str = DEFAULT_KERNEL_ROOT
    linear_parallelism: int = 16
    linear_strategy: str = "threads"
    host_workers: int = 4
    # Block sizes picked by the CUDA backend when a launch gives no local size.
    block_1d: int = 256
    block_2d: tuple[int, int] = (16, 16)
    block_3d: tuple[int, int, int] = (8, 8, 4)

    def __post_init__(self):
        if self.backend not in _BACKENDS:
            raise ValueError(f"backend must be one of {_BACKENDS}, got {self.backend!r}")
        if self.linear_strategy not in _LINEAR_STRATEGIES:
            raise ValueError(
                f"linear_strategy must be one of {_LINEAR_STRATEGIES}, got {self.linear_strategy!r}"
            )
        if self.linear_parallelism < 1:
            raise ValueError("linear_parallelism must be >= 1")
        if self.host_workers < 1:
            raise ValueError("host_workers must be >= 1")

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None, **overrides) -> RuntimeConfig:
        """Build a config from ``GPU_RUNTIME_*`` environment variables.

        Recognised variables: ``GPU_RUNTIME_BACKEND``, ``GPU_RUNTIME_DEVICE_ID``,
        ``GPU_RUNTIME_KERNEL_ROOT``, ``GPU_RUNTIME_LINEAR_STRATEGY`` and
        ``GPU_RUNTIME_HOST_WORKERS``. Keyword overrides win over the environment.
        """
        env = os.environ if environ is None else environ
        prefix = _ENV_PREFIX
        values: dict[str, object] = {}
        if f"{prefix}BACKEND" in env:
            values["backend"] = env[f"{prefix}BACKEND"].lower()
        if f"{prefix}DEVICE_ID" in env:
            values["device_id"] = int(env[f"{prefix}DEVICE_ID"])
        if f"{prefix}KERNEL_ROOT" in env:
            values["kernel_root"] = env[f"{prefix}KERNEL_ROOT"]
        if f"{prefix}LINEAR_STRATEGY" in env:
            values["linear_strategy"] = env[f"{prefix}LINEAR_STRATEGY"].lower()
        if f"{prefix}HOST_WORKERS" in env:
            values["host_workers"] = int(env[f"{prefix}HOST_WORKERS"])
        values.update(overrides)
        return cls(**values)

    def with_options(self, **changes) -> RuntimeConfig:
        return replace(self, **changes)


DEFAULT_CONFIG = RuntimeConfig()
