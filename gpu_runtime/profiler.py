"""Profiler: measure forward-pass time of a stage or pipeline."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import TYPE_CHECKING

from gpu_runtime.tensor import Tensor

if TYPE_CHECKING:
    from gpu_stages.stage import Stage


@dataclass
class ProfileResult:
    """Average wall time per forward pass, device work included."""
    total_ms: float
    iterations: int


def profile(
    stage: Stage,
    input: Tensor,
    warmup: int = 3,
    iterations: int = 10,
) -> ProfileResult:
    """Profile ``stage.forward(input)``.

    Warmup runs also trigger kernel compilation and buffer allocation, so the
    measured runs only see the steady state. The device is drained before the
    clock starts and stops.
    """
    if iterations < 1:
        raise ValueError("iterations must be >= 1")
    context = input.context

    for _ in range(warmup):
        stage.forward(input)
    context.finish()

    start = time.perf_counter()
    for _ in range(iterations):
        stage.forward(input)
    context.finish()
    end = time.perf_counter()

    return ProfileResult(
        total_ms=(end - start) / iterations * 1000,
        iterations=iterations,
    )
