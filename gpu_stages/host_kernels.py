"""numpy reference implementations of the stage kernels.

Each function is registered under the entry point name it implements and is
called by the host backend as ``fn(geometry, *args)`` with the same data
arguments as the device kernel (work-group scratch excluded). Buffers are
flat float32 arrays and are written in place.
"""

from __future__ import annotations

import numpy as np

from gpu_runtime.backend import LaunchGeometry
from gpu_runtime.host_backend import host_kernel


def _column_major(a: np.ndarray, rows: int, cols: int) -> np.ndarray:
    """``A[i + rows * k]`` as a ``(rows, cols)`` matrix."""
    return a[: rows * cols].reshape(cols, rows).T


# -- Linear --

@host_kernel("MatVecMultSimple")
def mat_vec_mult_simple(geometry: LaunchGeometry, a, x, y, m, n) -> None:
    m, n = int(m), int(n)
    y[:m] = _column_major(a, m, n) @ x[:n]


@host_kernel("MatVecMultThreads")
def mat_vec_mult_threads(geometry: LaunchGeometry, a, x, y, m, n) -> None:
    # Each work-group holds rows_per_group rows by p strided column slices. The
    # p partial sums of a row are folded pairwise in scratch, as on the device.
    m, n = int(m), int(n)
    rows_per_group, p = geometry.local_size or (1, geometry.global_size[1])
    matrix = _column_major(a, m, n)
    width = 1
    while width < p:
        width <<= 1
    for start in range(0, m, rows_per_group):
        block = matrix[start:start + rows_per_group]
        work = np.empty((p, block.shape[0]), dtype=np.float32)
        for jj in range(p):
            work[jj] = block[:, jj:n:p] @ x[jj:n:p]
        stride = width >> 1
        while stride > 0:
            active = min(stride, p - stride)
            if active > 0:
                work[:active] += work[stride:stride + active]
            stride >>= 1
        y[start:start + block.shape[0]] = work[0]


@host_kernel("Accum")
def accum(geometry: LaunchGeometry, output, biases, n) -> None:
    n = int(n)
    output[:n] += biases[:n]


# -- SpatialDivisiveNormalization --

def _filter_axis(volume: np.ndarray, kernel: np.ndarray, filt_rad: int, axis: int) -> np.ndarray:
    """Zero-padded correlation of ``volume`` with ``kernel`` along ``axis``."""
    out = np.zeros_like(volume)
    extent = volume.shape[axis]
    for i in range(-filt_rad, filt_rad + 1):
        lo, hi = max(0, -i), min(extent, extent - i)
        if lo >= hi:
            continue
        dst = [slice(None)] * volume.ndim
        src = [slice(None)] * volume.ndim
        dst[axis] = slice(lo, hi)
        src[axis] = slice(lo + i, hi + i)
        out[tuple(dst)] += kernel[i + filt_rad] * volume[tuple(src)]
    return out


def _shift_rows(volume: np.ndarray, offset: int) -> np.ndarray:
    """``result[:, v] = volume[:, v + offset]``, zero where out of range."""
    shifted = np.zeros_like(volume)
    height = volume.shape[1]
    lo, hi = max(0, -offset), min(height, height - offset)
    if lo < hi:
        shifted[:, lo:hi] = volume[:, lo + offset:hi + offset]
    return shifted


@host_kernel("SpatialDivisiveNormalizationHoriz")
def sdn_horiz(geometry: LaunchGeometry, input, output, kernel, filt_rad, width, height, feats) -> None:
    shape = (int(feats), int(height), int(width))
    volume = input[: np.prod(shape)].reshape(shape)
    output[: volume.size] = _filter_axis(volume * volume, kernel, int(filt_rad), axis=2).ravel()


@host_kernel("SpatialDivisiveNormalizationVert")
def sdn_vert(geometry: LaunchGeometry, input, output, kernel, filt_rad, width, height, feats) -> None:
    shape = (int(feats), int(height), int(width))
    volume = input[: np.prod(shape)].reshape(shape)
    output[: volume.size] = _filter_axis(volume, kernel, int(filt_rad), axis=1).ravel()


@host_kernel("SpatialDivisiveNormalization2D")
def sdn_2d(geometry: LaunchGeometry, input, output, kernel,
           filt_rad_u, filt_rad_v, width, height, feats) -> None:
    shape = (int(feats), int(height), int(width))
    rad_u, rad_v = int(filt_rad_u), int(filt_rad_v)
    volume = input[: np.prod(shape)].reshape(shape)
    squared = volume * volume
    kernel_2d = kernel[: (2 * rad_v + 1) * (2 * rad_u + 1)].reshape(2 * rad_v + 1, 2 * rad_u + 1)
    out = np.zeros_like(squared)
    for j in range(-rad_v, rad_v + 1):
        out += _filter_axis(_shift_rows(squared, j), kernel_2d[j + rad_v], rad_u, axis=2)
    output[: out.size] = out.ravel()


@host_kernel("SpatialDivisiveNormalizationAccumDiv")
def sdn_accum_div(geometry: LaunchGeometry, filtered, std_out, std_coef,
                  feats, threshold, width, height) -> None:
    plane = int(height) * int(width)
    total = filtered[: int(feats) * plane].reshape(int(feats), plane).sum(axis=0)
    std_val = np.sqrt(total) / std_coef[:plane]
    std_out[:plane] = np.where(std_val > threshold, std_val, threshold)


@host_kernel("SpatialDivisiveNormalization")
def sdn_normalize(geometry: LaunchGeometry, input, output, std_map, width, height, feats) -> None:
    shape = (int(feats), int(height), int(width))
    n = int(np.prod(shape))
    volume = input[:n].reshape(shape)
    output[:n] = (volume / std_map[: shape[1] * shape[2]].reshape(shape[1:])).ravel()


# -- SpatialUpSamplingNearest --

@host_kernel("SpatialUpSamplingNearest")
def up_sampling_nearest(geometry: LaunchGeometry, input, output, scale,
                        out_width, out_height, feats) -> None:
    scale = int(scale)
    in_shape = (int(feats), int(out_height) // scale, int(out_width) // scale)
    volume = input[: np.prod(in_shape)].reshape(in_shape)
    result = volume.repeat(scale, axis=1).repeat(scale, axis=2)
    output[: result.size] = result.ravel()
