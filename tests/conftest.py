"""Shared fixtures and numpy references for stage tests.

Every test runs on the host backend with its own kernel cache, so compile
counts start from zero and nothing leaks between tests.
"""

import io

import numpy as np
import pytest

import gpu_stages  # noqa: F401  (registers stages and host kernels)
from gpu_runtime.backend import DeviceLimits
from gpu_runtime.config import RuntimeConfig
from gpu_runtime.context import DeviceContext
from gpu_runtime.host_backend import HostBackend
from gpu_runtime.kernel_cache import KernelCache
from gpu_stages import serialization
from gpu_stages.stage import StageType


@pytest.fixture
def make_context():
    """Factory for host contexts with custom limits or config options."""
    contexts = []

    def _make(limits=None, kernel_max_workgroup_size=None, **options):
        config = RuntimeConfig(backend="host", **options)
        backend = HostBackend(limits, kernel_max_workgroup_size)
        context = DeviceContext(config, backend=backend, cache=KernelCache())
        contexts.append(context)
        return context

    yield _make
    for context in contexts:
        context.close()


@pytest.fixture
def context(make_context):
    """Host context with default device limits."""
    return make_context()


@pytest.fixture
def small_limits():
    """Tiny device, so work partitions hit their limits quickly."""
    return DeviceLimits(max_workgroup_size=64, max_workitem_sizes=(64, 8, 4))


@pytest.fixture
def rng():
    return np.random.default_rng(1234)


# ---------------------------------------------------------------------------
# Model record builders
# ---------------------------------------------------------------------------

def linear_record(weights, biases):
    weights = np.asarray(weights, dtype=np.float32)
    stream = io.BytesIO()
    serialization.write_int32(stream, StageType.LINEAR)
    serialization.write_int32(stream, weights.shape[0])
    serialization.write_int32(stream, weights.shape[1])
    serialization.write_float32_array(stream, weights)
    serialization.write_float32_array(stream, biases)
    return stream.getvalue()


def identity_record():
    stream = io.BytesIO()
    serialization.write_int32(stream, StageType.IDENTITY)
    return stream.getvalue()


def reshape_record(shape):
    stream = io.BytesIO()
    serialization.write_int32(stream, StageType.RESHAPE)
    serialization.write_int32(stream, len(shape))
    serialization.write_int32_array(stream, shape)
    return stream.getvalue()


def up_sampling_record(scale):
    stream = io.BytesIO()
    serialization.write_int32(stream, StageType.SPATIAL_UP_SAMPLING_NEAREST)
    serialization.write_int32(stream, scale)
    return stream.getvalue()


def sdn_record(kernel, threshold):
    kernel = np.asarray(kernel, dtype=np.float32)
    outer, inner = (1, kernel.shape[0]) if kernel.ndim == 1 else kernel.shape
    stream = io.BytesIO()
    serialization.write_int32(stream, StageType.SPATIAL_DIVISIVE_NORMALIZATION)
    serialization.write_int32(stream, inner)
    serialization.write_int32(stream, outer)
    serialization.write_float32_array(stream, kernel)
    serialization.write_float32(stream, threshold)
    return stream.getvalue()


def sequential_record(*records):
    stream = io.BytesIO()
    serialization.write_int32(stream, StageType.SEQUENTIAL)
    serialization.write_int32(stream, len(records))
    for record in records:
        stream.write(record)
    return stream.getvalue()


# ---------------------------------------------------------------------------
# numpy references
# ---------------------------------------------------------------------------

def sdn_reference(x, kernel, threshold):
    """Direct per-pixel divisive normalization in float64."""
    x = np.asarray(x, dtype=np.float64)
    squeeze = x.ndim == 2
    if squeeze:
        x = x[None]
    n_feats, height, width = x.shape
    kernel = np.asarray(kernel, dtype=np.float64)
    if kernel.ndim == 1:
        k = kernel / (kernel.sum() * np.sqrt(n_feats))
        k2 = np.outer(k, k)
    else:
        k2 = kernel / (kernel.sum() * n_feats)
    rad_v, rad_u = (k2.shape[0] - 1) // 2, (k2.shape[1] - 1) // 2

    filtered = np.zeros(x.shape)
    coef = np.zeros((height, width))
    for v in range(height):
        for u in range(width):
            for j in range(-rad_v, rad_v + 1):
                for i in range(-rad_u, rad_u + 1):
                    if 0 <= v + j < height and 0 <= u + i < width:
                        w = k2[j + rad_v, i + rad_u]
                        filtered[:, v, u] += w * x[:, v + j, u + i] ** 2
                        coef[v, u] += w
    coef /= n_feats
    std = np.sqrt(filtered.sum(axis=0)) / coef
    std = np.maximum(std, threshold)
    out = x / std
    return out[0] if squeeze else out
