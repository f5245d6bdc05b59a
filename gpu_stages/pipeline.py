"""Sequential: an ordered chain of stages, each feeding the next."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator
from typing import BinaryIO

from gpu_runtime.context import DeviceContext
from gpu_runtime.tensor import Tensor
from gpu_stages.registry import load_stage, register_stage
from gpu_stages.serialization import read_count
from gpu_stages.stage import Stage, StageType

logger = logging.getLogger(__name__)


@register_stage
class Sequential(Stage):
    """Owns its stages and runs them in order.

    The first failing stage aborts the pass; its error propagates unchanged.
    """

    stage_type = StageType.SEQUENTIAL

    def __init__(self, stages: Iterable[Stage] = (), context: DeviceContext | None = None):
        super().__init__(context)
        self._stages: list[Stage] = []
        for stage in stages:
            self.add(stage)

    def add(self, stage: Stage) -> Sequential:
        if not isinstance(stage, Stage):
            raise TypeError(f"Sequential holds Stage instances, got {type(stage).__name__}")
        self._stages.append(stage)
        return self

    def __len__(self) -> int:
        return len(self._stages)

    def __getitem__(self, index: int) -> Stage:
        return self._stages[index]

    def __iter__(self) -> Iterator[Stage]:
        return iter(self._stages)

    def _forward(self, input: Tensor) -> None:
        data = input
        for index, stage in enumerate(self._stages):
            logger.debug("Stage %d: %s", index, stage.name)
            data = stage.forward(data)
        self.output = data

    @classmethod
    def load_from_file(cls, stream: BinaryIO, context: DeviceContext | None = None) -> Sequential:
        n_stages = read_count(stream, "n_stages")
        stages = [load_stage(stream, context) for _ in range(n_stages)]
        return cls(stages, context)

    def __repr__(self) -> str:
        inner = ", ".join(repr(s) for s in self._stages)
        return f"Sequential([{inner}])"


Pipeline = Sequential
