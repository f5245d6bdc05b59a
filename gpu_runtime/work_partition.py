"""Work partition validation and the matrix-vector occupancy heuristic."""

from __future__ import annotations

from collections.abc import Sequence

import numpy as np

from gpu_runtime.backend import DeviceLimits
from gpu_runtime.errors import InvalidWorkSizeError


def validate_work_size(
    dims: int,
    global_size: Sequence[int],
    local_size: Sequence[int] | None,
    limits: DeviceLimits,
    kernel_max_workgroup_size: int,
) -> tuple[tuple[int, ...], tuple[int, ...] | None]:
    """Check a launch request against device and kernel limits.

    Returns the sizes as int tuples. Raises InvalidWorkSizeError when the
    dimensionality is outside [1, 3], a size is not positive, a local size does
    not evenly divide its global size, or a work-group exceeds the per-dimension,
    device or kernel maximum.
    """
    if dims not in (1, 2, 3):
        raise InvalidWorkSizeError("Launch dimensionality must be 1, 2 or 3", {"dims": dims})
    global_size = tuple(int(g) for g in global_size)
    if len(global_size) != dims:
        raise InvalidWorkSizeError(
            "Global size rank does not match dims", {"dims": dims, "global_size": global_size}
        )
    if any(g <= 0 for g in global_size):
        raise InvalidWorkSizeError("Global sizes must be positive", {"global_size": global_size})
    if local_size is None:
        return global_size, None

    local_size = tuple(int(s) for s in local_size)
    context = {"global_size": global_size, "local_size": local_size}
    if len(local_size) != dims:
        raise InvalidWorkSizeError("Local size rank does not match dims", context)
    if any(s <= 0 for s in local_size):
        raise InvalidWorkSizeError("Local sizes must be positive", context)
    for dim, (g, s) in enumerate(zip(global_size, local_size)):
        if g % s != 0:
            raise InvalidWorkSizeError(f"Local size does not divide global size in dim {dim}", context)
        if s > limits.max_workitem_size(dim):
            raise InvalidWorkSizeError(
                f"Local size exceeds device work-item maximum in dim {dim}",
                {**context, "max_workitem_size": limits.max_workitem_size(dim)},
            )
    group = int(np.prod(local_size))
    if group > limits.max_workgroup_size:
        raise InvalidWorkSizeError(
            "Work-group exceeds device maximum",
            {**context, "max_workgroup_size": limits.max_workgroup_size},
        )
    if group > kernel_max_workgroup_size:
        raise InvalidWorkSizeError(
            "Work-group exceeds kernel maximum",
            {**context, "kernel_max_workgroup_size": kernel_max_workgroup_size},
        )
    return global_size, local_size


def matvec_partition(
    n_rows: int,
    limits: DeviceLimits,
    kernel_max_workgroup_size: int,
    parallelism: int = 16,
) -> tuple[tuple[int, int], tuple[int, int]]:
    """Pick global/local sizes for the row-parallel matrix-vector kernel.

    Dimension 0 runs over output rows, dimension 1 over ``p`` column slices
    whose partial sums are reduced in work-group scratch memory. The row factor
    starts as large as the device allows (both the work-group total and the
    dimension-0 work-item maximum) and shrinks until it divides
    ``n_rows`` and the work-group fits the kernel; at 1 every work-group holds a
    single row.

    Returns:
        ``((n_rows, p), (row_factor, p))``.
    """
    p = min(parallelism, limits.max_workitem_size(1), kernel_max_workgroup_size)
    rows = min(n_rows // p + 1, limits.max_workgroup_size // p)
    rows = max(min(rows, limits.max_workitem_size(0)), 1)
    while (n_rows % rows != 0 or rows * p > kernel_max_workgroup_size) and rows > 1:
        rows -= 1
    return (n_rows, p), (rows, p)
